import asyncio
import logging
from datetime import datetime
from typing import Optional

from slidebatch.models.job import BatchJob, JobStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class InvalidTransitionError(ValueError):
    """Raised when a status change is not an edge of the job state machine"""


class JobStateMachine:
    """Validates and applies job status transitions with audit history."""

    VALID_TRANSITIONS = {
        JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED},
        JobStatus.RUNNING: {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
        JobStatus.PAUSED: {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED},
        JobStatus.COMPLETED: set(),
        JobStatus.FAILED: set(),
        JobStatus.CANCELLED: set(),
    }

    @staticmethod
    def can_transition(job: BatchJob, new_status: JobStatus) -> bool:
        return new_status in JobStateMachine.VALID_TRANSITIONS.get(job.status, set())

    @staticmethod
    def transition(job: BatchJob, new_status: JobStatus, reason: Optional[str] = None):
        if not JobStateMachine.can_transition(job, new_status):
            raise InvalidTransitionError(f"Invalid transition: {job.status.value} -> {new_status.value}")

        now = datetime.now()
        job.history.append({
            "from": job.status.value,
            "to": new_status.value,
            "timestamp": now.isoformat(),
            "reason": reason or ""
        })

        job.status = new_status
        if new_status == JobStatus.RUNNING and job.start_time is None:
            job.start_time = now
        if new_status in TERMINAL_STATUSES:
            job.end_time = now
            # Anything not settled by now will never be recorded
            job.progress.skipped += job.progress.total - job.processed
        job.updated_at = now


class JobControl:
    """Per-job pause gate and cancel flag shared by callers and the processing loop."""

    def __init__(self):
        self._runnable = asyncio.Event()
        self._runnable.set()
        self._cancelled = False
        self.cancel_reason: Optional[str] = None

    @property
    def paused(self) -> bool:
        return not self._runnable.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def pause(self):
        self._runnable.clear()

    def resume(self):
        self._runnable.set()

    def cancel(self, reason: str = "user_cancel"):
        if not self._cancelled:
            self._cancelled = True
            self.cancel_reason = reason
        # Wake a loop blocked on the pause gate so it can observe the cancel
        self._runnable.set()

    async def wait_until_runnable(self):
        """Block while paused; returns on resume or cancel."""
        await self._runnable.wait()
