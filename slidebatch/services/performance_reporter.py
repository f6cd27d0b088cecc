import logging
from datetime import datetime
from typing import List, Optional

from slidebatch.models.job import BatchJob
from slidebatch.models.report import (
    Bottleneck,
    ConcurrencyUsage,
    MemoryUsage,
    PerformanceReport,
    Reliability,
    ReportPerformance,
    ReportSummary,
)

logger = logging.getLogger(__name__)

SLOW_TASK_THRESHOLD_MS = 10_000
HIGH_RETRY_RATE_PERCENT = 10.0
MEMORY_WARNING_RATIO = 0.8
FAILURE_RATE_WARNING = 0.05
LARGE_BATCH_TASKS = 100
LOW_UTILIZATION_PERCENT = 50.0


def _total_time_ms(job: BatchJob, now: datetime) -> float:
    if job.start_time is None:
        return 0.0
    end = job.end_time or now
    return (end - job.start_time).total_seconds() * 1000


def _utilization(job: BatchJob) -> float:
    return job.metrics.average_concurrency / job.config.max_concurrency * 100


def generate_recommendations(job: BatchJob) -> List[str]:
    """Advisory tuning hints derived from the job's counters and metrics."""
    recommendations = []
    total = max(job.progress.total, 1)
    failure_rate = job.progress.failed / total

    if job.metrics.retry_rate_percent > HIGH_RETRY_RATE_PERCENT:
        recommendations.append(
            "High retry rate detected. Consider improving task reliability or increasing retry_delay_ms."
        )
    if job.metrics.peak_memory_mb > job.config.memory_threshold_mb * MEMORY_WARNING_RATIO:
        recommendations.append(
            "High memory usage detected. Consider reducing chunk_size."
        )
    if failure_rate > FAILURE_RATE_WARNING:
        recommendations.append(
            "High failure rate detected. Review error patterns and improve error handling."
        )
    if failure_rate > 0.2:
        recommendations.append(
            "Failure rate above 20%. Consider validating items before batch processing."
        )
    if failure_rate > 0.5:
        recommendations.append(
            "Failure rate above 50%. Consider processing items individually to identify systematic issues."
        )
    if job.progress.total > LARGE_BATCH_TASKS:
        recommendations.append(
            "Large batch. Subscribe to progress events rather than polling job status."
        )
    return recommendations


def identify_bottlenecks(job: BatchJob) -> List[Bottleneck]:
    bottlenecks = []

    if job.metrics.average_task_time_ms > SLOW_TASK_THRESHOLD_MS:
        bottlenecks.append(Bottleneck(
            type="slow_tasks",
            description="Tasks are taking longer than expected to complete",
            impact="high",
            recommendation="Profile task execution to identify performance bottlenecks",
        ))

    # Only meaningful once at least one full chunk could have saturated the limiter
    if (job.progress.total > job.config.max_concurrency
            and job.metrics.average_concurrency > 0
            and _utilization(job) < LOW_UTILIZATION_PERCENT):
        bottlenecks.append(Bottleneck(
            type="low_concurrency_utilization",
            description=f"Average concurrency {job.metrics.average_concurrency:.1f} "
                        f"of {job.config.max_concurrency} allowed",
            impact="medium",
            recommendation="Increase chunk_size or lower max_concurrency to match the workload",
        ))

    return bottlenecks


def generate_report(job: BatchJob, current_memory_mb: float,
                    now: Optional[datetime] = None) -> PerformanceReport:
    """Aggregate a job's counters and metrics into a performance report."""
    now = now or datetime.now()
    total = max(job.progress.total, 1)

    report = PerformanceReport(
        job_id=job.id,
        status=job.status.value,
        generated_at=now,
        summary=ReportSummary(
            total_tasks=job.progress.total,
            completed_tasks=job.progress.completed,
            failed_tasks=job.progress.failed,
            skipped_tasks=job.progress.skipped,
            total_time_ms=_total_time_ms(job, now),
            average_task_time_ms=job.metrics.average_task_time_ms,
            throughput=job.metrics.throughput,
        ),
        performance=ReportPerformance(
            memory_usage=MemoryUsage(
                peak=job.metrics.peak_memory_mb,
                average=job.metrics.average_memory_mb,
                current=current_memory_mb,
            ),
            concurrency=ConcurrencyUsage(
                max_concurrent=job.config.max_concurrency,
                peak_concurrent=job.metrics.peak_concurrency,
                average_concurrent=job.metrics.average_concurrency,
                utilization_rate=_utilization(job),
            ),
            reliability=Reliability(
                success_rate=job.progress.completed / total * 100,
                retry_rate=job.metrics.retry_rate_percent,
                error_rate=job.progress.failed / total * 100,
            ),
        ),
        recommendations=generate_recommendations(job),
        bottlenecks=identify_bottlenecks(job),
    )
    logger.debug("Generated performance report for job %s", job.id)
    return report
