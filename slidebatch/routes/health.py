from fastapi import APIRouter
from datetime import datetime
import logging

from slidebatch.services.orchestrator import get_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/healthz")
async def health_check():
    """
    Health check endpoint
    Returns OK while the batch orchestrator is running
    """
    logger.debug("Health check requested")
    orchestrator = get_orchestrator()
    return {
        "status": "OK" if orchestrator is not None else "STARTING",
        "timestamp": datetime.now().isoformat(),
        "service": "slidebatch-orchestrator",
        "jobs": len(orchestrator.registry) if orchestrator is not None else 0
    }
