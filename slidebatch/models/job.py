from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List, Mapping, Union
from enum import Enum
from datetime import datetime
import uuid


class JobStatus(str, Enum):
    """Job status enumeration"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class TaskUnit(BaseModel):
    """One item of work inside a batch job."""

    id: str
    payload: Any = None
    # Submission index; lower values are processed first
    priority: int = 0
    retry_count: int = 0
    estimated_time_ms: float = 100.0
    estimated_memory_mb: float = 1.0


class BatchConfig(BaseModel):
    """Per-job orchestration settings."""

    model_config = ConfigDict(extra="forbid")

    max_concurrency: int = Field(default=5, ge=1)
    chunk_size: int = Field(default=100, ge=1)
    memory_threshold_mb: float = Field(default=500.0, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: float = Field(default=1000.0, ge=0)
    # None disables the watchdog
    job_timeout_ms: Optional[float] = Field(default=30 * 60 * 1000.0, gt=0)
    monitoring_interval_ms: float = Field(default=10000.0, gt=0)
    memory_cooldown_ms: float = Field(default=5000.0, ge=0)

    def merged(self, overrides: Union["BatchConfig", Mapping[str, Any], None] = None) -> "BatchConfig":
        """Return a copy with the given fields replaced and re-validated."""
        if overrides is None:
            return self.model_copy()
        if isinstance(overrides, BatchConfig):
            overrides = overrides.model_dump(exclude_unset=True)
        return BatchConfig.model_validate({**self.model_dump(), **dict(overrides)})


class JobProgress(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    percentage: int = 0
    tasks_per_second: float = 0.0
    estimated_remaining_ms: Optional[float] = None


class JobMetrics(BaseModel):
    peak_memory_mb: float = 0.0
    current_memory_mb: float = 0.0
    average_memory_mb: float = 0.0
    memory_samples: int = 0
    average_task_time_ms: float = 0.0
    retry_rate_percent: float = 0.0
    throughput: float = 0.0
    concurrent_tasks_running: int = 0
    peak_concurrency: int = 0
    average_concurrency: float = 0.0


class JobError(BaseModel):
    task_id: str
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    retry_count: int = 0
    context: Any = None


class BatchJob(BaseModel):
    """Aggregate state of one batch submission."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    tasks: List[TaskUnit] = Field(default_factory=list)
    config: BatchConfig = Field(default_factory=BatchConfig)
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = Field(default_factory=JobProgress)
    metrics: JobMetrics = Field(default_factory=JobMetrics)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: List[JobError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    history: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.progress.completed + self.progress.failed + self.progress.skipped

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def summary(self) -> Dict[str, Any]:
        """Compact view without the task list, used for listings and mirroring."""
        return self.model_dump(mode="json", exclude={"tasks"})
