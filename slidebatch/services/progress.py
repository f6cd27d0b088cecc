from datetime import datetime
from typing import Optional

from slidebatch.models.job import BatchJob


def update_progress(job: BatchJob, now: Optional[datetime] = None) -> BatchJob:
    """Recompute percentage, throughput and ETA from the job's counters.

    Stateless: the result depends only on the counters, start_time and now.
    """
    progress = job.progress
    total = progress.total
    processed = job.processed

    progress.percentage = round(processed / total * 100) if total > 0 else 100

    if job.start_time is not None:
        now = now or datetime.now()
        elapsed_seconds = (now - job.start_time).total_seconds()
        progress.tasks_per_second = processed / elapsed_seconds if elapsed_seconds > 0 else 0.0
        job.metrics.throughput = progress.tasks_per_second

        remaining = total - processed
        if progress.tasks_per_second > 0:
            progress.estimated_remaining_ms = remaining / progress.tasks_per_second * 1000
        else:
            progress.estimated_remaining_ms = None

    retried = sum(1 for task in job.tasks if task.retry_count > 0)
    job.metrics.retry_rate_percent = retried / total * 100 if total > 0 else 0.0
    return job
