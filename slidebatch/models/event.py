"""
Event message models published by the batch orchestrator.
"""

from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime
from typing import Any, Dict


class BatchEventType(str, Enum):
    """Event types emitted over a job's lifetime."""
    JOB_CREATED = "job_created"
    JOB_STARTED = "job_started"
    PROGRESS = "progress"
    JOB_PAUSED = "job_paused"
    JOB_RESUMED = "job_resumed"
    JOB_CANCELLED = "job_cancelled"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"


class BatchEvent(BaseModel):
    """Event envelope, shaped like the websocket messages sent to clients."""

    type: BatchEventType
    job_id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> dict:
        return self.model_dump(mode="json")
