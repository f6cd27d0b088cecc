"""
WebSocket routes for real-time batch job updates.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import asyncio
import json
import logging
from datetime import datetime

from slidebatch.services.events import Subscription
from slidebatch.services.orchestrator import get_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


async def _forward_events(websocket: WebSocket, subscription: Subscription):
    """Relay every event for the job to the client as it is published."""
    async for event in subscription:
        await websocket.send_text(json.dumps(event.to_message()))


async def _handle_client(websocket: WebSocket, job_id: str):
    """Answer client messages until the client goes away."""
    while True:
        data = await websocket.receive_text()
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON received from WebSocket for job {job_id}")
            continue

        if message.get("type") == "ping":
            await websocket.send_text(json.dumps({
                "type": "pong",
                "timestamp": datetime.now().isoformat()
            }))


@router.websocket("/ws/batch/{job_id}")
async def websocket_endpoint(websocket: WebSocket, job_id: str):
    """
    WebSocket endpoint for batch job updates.

    Accepts connections on /ws/batch/{job_id} and streams the job's events:
    - job_started / job_paused / job_resumed
    - progress (after every chunk)
    - job_completed / job_failed / job_cancelled
    """
    orchestrator = get_orchestrator()
    if orchestrator is None or orchestrator.get_job_status(job_id) is None:
        await websocket.close(code=4004, reason="Unknown job_id")
        return

    await websocket.accept()
    subscription = orchestrator.events.subscribe(job_id)
    logger.info(f"WebSocket connected for batch job {job_id}")

    forwarder = None
    client = None
    try:
        job = orchestrator.get_job_status(job_id)
        await websocket.send_text(json.dumps({
            "type": "connected",
            "job_id": job_id,
            "timestamp": datetime.now().isoformat(),
            "message": "Connected to batch job updates",
            "data": job.summary()
        }))

        forwarder = asyncio.create_task(_forward_events(websocket, subscription))
        client = asyncio.create_task(_handle_client(websocket, job_id))
        done, _ = await asyncio.wait({forwarder, client}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"WebSocket error for batch job {job_id}: {exc}")

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for batch job {job_id}: {e}")
    finally:
        subscription.close()
        for task in (forwarder, client):
            if task is not None and not task.done():
                task.cancel()
        logger.info(f"WebSocket disconnected for batch job {job_id}")
