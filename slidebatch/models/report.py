from pydantic import BaseModel, Field
from typing import List, Literal
from datetime import datetime


class Bottleneck(BaseModel):
    type: str
    description: str
    impact: Literal["low", "medium", "high"]
    recommendation: str


class ReportSummary(BaseModel):
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    total_time_ms: float
    average_task_time_ms: float
    throughput: float


class MemoryUsage(BaseModel):
    peak: float
    average: float
    current: float


class ConcurrencyUsage(BaseModel):
    max_concurrent: int
    peak_concurrent: int
    average_concurrent: float
    utilization_rate: float


class Reliability(BaseModel):
    success_rate: float
    retry_rate: float
    error_rate: float


class ReportPerformance(BaseModel):
    memory_usage: MemoryUsage
    concurrency: ConcurrencyUsage
    reliability: Reliability


class PerformanceReport(BaseModel):
    """Post-hoc performance report for one batch job."""

    job_id: str
    status: str
    generated_at: datetime = Field(default_factory=datetime.now)
    summary: ReportSummary
    performance: ReportPerformance
    recommendations: List[str] = Field(default_factory=list)
    bottlenecks: List[Bottleneck] = Field(default_factory=list)


class SystemMetrics(BaseModel):
    active_jobs: int
    total_concurrency: int
    system_memory_usage: float
    average_throughput: float
