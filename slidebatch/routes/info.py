from fastapi import APIRouter
from datetime import datetime, timezone
import logging
import platform
import sys

from slidebatch import __version__
from slidebatch.services.orchestrator import get_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/server/info")
async def server_info():
    """
    Server information endpoint
    Returns server details and the default batch configuration
    """
    logger.info("Server info requested")
    orchestrator = get_orchestrator()
    return {
        "service": "slidebatch-orchestrator",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "system": {
            "platform": platform.platform(),
            "python_version": sys.version,
            "architecture": platform.architecture()[0]
        },
        "batch_defaults": orchestrator.default_config.model_dump() if orchestrator is not None else None,
        "status": "running" if orchestrator is not None else "starting"
    }
