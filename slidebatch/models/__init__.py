from slidebatch.models.job import (
    BatchConfig,
    BatchJob,
    JobError,
    JobMetrics,
    JobProgress,
    JobStatus,
    TaskUnit,
    TERMINAL_STATUSES,
)
from slidebatch.models.report import Bottleneck, PerformanceReport, SystemMetrics
from slidebatch.models.event import BatchEvent, BatchEventType
