import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from slidebatch.models.job import BatchJob, JobStatus
from slidebatch.services.persistence import PersistenceMirror

logger = logging.getLogger(__name__)


class JobRegistry:
    """Owns every in-memory BatchJob, keyed by id.

    Mutations of a single job are serialized through lock(job_id). When a
    persistence mirror is attached, creates and updates are mirrored to it
    best-effort.
    """

    def __init__(self, mirror: Optional[PersistenceMirror] = None,
                 retention_seconds: float = 3600.0):
        self.jobs: Dict[str, BatchJob] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._issued_ids: Set[str] = set()
        self.mirror = mirror
        self.retention_seconds = retention_seconds

    def create(self, job: BatchJob) -> str:
        if job.id in self._issued_ids:
            raise ValueError(f"Job id {job.id} has already been used")
        self._issued_ids.add(job.id)
        self.jobs[job.id] = job
        self._locks[job.id] = asyncio.Lock()
        if self.mirror is not None:
            self.mirror.create(job.id, job.model_dump())
        return job.id

    def get(self, job_id: str) -> Optional[BatchJob]:
        return self.jobs.get(job_id)

    def list(self, status: Optional[JobStatus] = None, job_type: Optional[str] = None,
             limit: Optional[int] = None, offset: int = 0) -> List[BatchJob]:
        """Jobs in creation order, newest first, optionally filtered."""
        jobs = sorted(self.jobs.values(), key=lambda j: j.created_at, reverse=True)
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        if job_type is not None:
            jobs = [j for j in jobs if j.type == job_type]
        jobs = jobs[offset:]
        if limit is not None:
            jobs = jobs[:limit]
        return jobs

    def lock(self, job_id: str) -> asyncio.Lock:
        return self._locks[job_id]

    def mirror_update(self, job: BatchJob):
        """Push the mutable part of a job to the mirror."""
        job.updated_at = datetime.now()
        if self.mirror is None:
            return
        self.mirror.update(job.id, {
            "status": job.status.value,
            "progress": job.progress.model_dump(),
            "metrics": job.metrics.model_dump(),
            "errors": [e.model_dump() for e in job.errors],
            "warnings": list(job.warnings),
            "history": list(job.history),
            "start_time": job.start_time,
            "end_time": job.end_time,
            "updated_at": job.updated_at,
        })

    def remove(self, job_id: str) -> bool:
        job = self.jobs.pop(job_id, None)
        self._locks.pop(job_id, None)
        return job is not None

    def purge_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Drop terminal jobs whose end_time is older than the retention window."""
        now = now or datetime.now()
        cutoff = now - timedelta(seconds=self.retention_seconds)
        expired = [
            job_id for job_id, job in self.jobs.items()
            if job.is_terminal and job.end_time is not None and job.end_time < cutoff
        ]
        for job_id in expired:
            self.remove(job_id)
        if expired:
            logger.info("Purged %d expired job(s) from registry", len(expired))
        return expired

    def __len__(self) -> int:
        return len(self.jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self.jobs
