import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from slidebatch.config import settings
from slidebatch.models.event import BatchEventType
from slidebatch.models.job import (
    BatchConfig,
    BatchJob,
    JobError,
    JobProgress,
    JobStatus,
    TaskUnit,
)
from slidebatch.models.report import PerformanceReport, SystemMetrics
from slidebatch.services.chunker import chunk_tasks
from slidebatch.services.concurrency import SKIPPED, ConcurrencyLimiter
from slidebatch.services.events import EventBus
from slidebatch.services.lifecycle import JobControl, JobStateMachine
from slidebatch.services.memory_guard import MemoryGuard
from slidebatch.services.performance_reporter import generate_report
from slidebatch.services.persistence import PersistenceMirror, SQLiteDocumentStore
from slidebatch.services.progress import update_progress
from slidebatch.services.registry import JobRegistry
from slidebatch.services.retry import Processor, RetryExecutor, TaskOutcome, update_average_task_time

logger = logging.getLogger(__name__)

TaskInput = Union[TaskUnit, Mapping[str, Any]]


def _payload_size(payload: Any) -> int:
    return len(json.dumps(payload, default=str))


def estimate_task_time_ms(payload: Any) -> float:
    return max(100.0, _payload_size(payload) / 1000)


def estimate_task_memory_mb(payload: Any) -> float:
    return max(1.0, _payload_size(payload) / 1024 / 1024)


def build_task_units(tasks: Iterable[TaskInput]) -> List[TaskUnit]:
    """Normalize caller input into TaskUnits ordered by priority (FIFO by default)."""
    units = []
    seen: Set[str] = set()
    for index, item in enumerate(tasks):
        if isinstance(item, TaskUnit):
            task_id, payload, priority = item.id, item.payload, index
        else:
            if "id" not in item:
                raise ValueError(f"Task at position {index} has no id")
            task_id, payload = str(item["id"]), item.get("payload")
            priority = int(item.get("priority", index))
        if task_id in seen:
            raise ValueError(f"Duplicate task id: {task_id}")
        seen.add(task_id)
        units.append(TaskUnit(
            id=task_id,
            payload=payload,
            priority=priority,
            estimated_time_ms=estimate_task_time_ms(payload),
            estimated_memory_mb=estimate_task_memory_mb(payload),
        ))
    units.sort(key=lambda t: t.priority)
    return units


def config_from_settings() -> BatchConfig:
    return BatchConfig(
        max_concurrency=settings.batch_max_concurrency,
        chunk_size=settings.batch_chunk_size,
        memory_threshold_mb=settings.batch_memory_threshold_mb,
        retry_attempts=settings.batch_retry_attempts,
        retry_delay_ms=settings.batch_retry_delay_ms,
        job_timeout_ms=settings.batch_job_timeout_ms,
        monitoring_interval_ms=settings.batch_monitoring_interval_ms,
        memory_cooldown_ms=settings.batch_memory_cooldown_ms,
    )


class BatchOrchestrator:
    """Runs batch jobs chunk by chunk under bounded concurrency.

    One processing loop per job. Pause, resume and cancel are cooperative and
    honoured at chunk boundaries; every mutation of a job goes through the
    registry's per-job lock.
    """

    def __init__(self, default_config: Optional[BatchConfig] = None,
                 memory_guard: Optional[MemoryGuard] = None,
                 retry_executor: Optional[RetryExecutor] = None,
                 events: Optional[EventBus] = None,
                 mirror: Optional[PersistenceMirror] = None,
                 retention_seconds: float = 3600.0):
        self.default_config = default_config or BatchConfig()
        self.memory_guard = memory_guard or MemoryGuard()
        self.retry_executor = retry_executor or RetryExecutor()
        self.events = events or EventBus()
        self.mirror = mirror
        self.registry = JobRegistry(mirror=mirror, retention_seconds=retention_seconds)
        self._controls: Dict[str, JobControl] = {}
        self._active_limits: Dict[str, ConcurrencyLimiter] = {}
        self._job_tasks: Dict[str, asyncio.Task] = {}
        self._terminal_events: Dict[str, asyncio.Event] = {}
        self._timeouts: Dict[str, asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()
        self._monitor_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle of the orchestrator itself
    # ------------------------------------------------------------------

    async def start(self):
        if self._started:
            return
        logger.info("Starting batch orchestrator (max_concurrency=%d, memory_threshold=%.0f MB)",
                    self.default_config.max_concurrency, self.default_config.memory_threshold_mb)
        self._started = True
        self._stop_event.clear()
        if self.mirror is not None:
            await self.mirror.start()
        self._monitor_task = asyncio.create_task(self._monitoring_loop())

    async def stop(self):
        """Cancel live jobs, let their loops drain, and stop background work."""
        if not self._started:
            return
        logger.info("Stopping batch orchestrator")
        for job in list(self.registry.jobs.values()):
            if not job.is_terminal:
                await self._cancel(job.id, reason="shutdown")
        if self._job_tasks:
            await asyncio.gather(*self._job_tasks.values(), return_exceptions=True)
        self._stop_event.set()
        if self._monitor_task is not None:
            await self._monitor_task
            self._monitor_task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self.mirror is not None:
            await self.mirror.stop()
        self._started = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_job(self, job_type: str, tasks: Iterable[TaskInput], processor: Processor,
                         config: Union[BatchConfig, Mapping[str, Any], None] = None) -> str:
        """Register a job and start processing it in the background. Returns the job id."""
        if not job_type:
            raise ValueError("Job type is required")
        units = build_task_units(tasks)
        job_config = self.default_config.merged(config)

        await self.start()

        job = BatchJob(
            type=job_type,
            tasks=units,
            config=job_config,
            progress=JobProgress(total=len(units)),
        )
        self.registry.create(job)
        self._controls[job.id] = JobControl()
        self._terminal_events[job.id] = asyncio.Event()

        logger.info("Batch job created: job=%s type=%s tasks=%d max_concurrency=%d",
                    job.id, job_type, len(units), job_config.max_concurrency)
        self.events.publish(BatchEventType.JOB_CREATED, job.id, {
            "type": job_type,
            "total": len(units),
            "status": job.status.value,
        })

        self._job_tasks[job.id] = asyncio.create_task(self._process_job(job.id, processor))
        return job.id

    async def pause_job(self, job_id: str) -> bool:
        job = self.registry.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False
        async with self.registry.lock(job_id):
            if job.status != JobStatus.RUNNING:
                return False
            JobStateMachine.transition(job, JobStatus.PAUSED, reason="user_pause")
            self._controls[job_id].pause()
            self.registry.mirror_update(job)

        logger.info("Batch job paused: %s", job_id)
        self.events.publish(BatchEventType.JOB_PAUSED, job_id, {"status": job.status.value})
        return True

    async def resume_job(self, job_id: str) -> bool:
        job = self.registry.get(job_id)
        if job is None or job.status != JobStatus.PAUSED:
            return False
        async with self.registry.lock(job_id):
            if job.status != JobStatus.PAUSED:
                return False
            JobStateMachine.transition(job, JobStatus.RUNNING, reason="user_resume")
            self._controls[job_id].resume()
            self.registry.mirror_update(job)

        logger.info("Batch job resumed: %s", job_id)
        self.events.publish(BatchEventType.JOB_RESUMED, job_id, {"status": job.status.value})
        return True

    async def cancel_job(self, job_id: str) -> bool:
        return await self._cancel(job_id, reason="user_cancel")

    def get_job_status(self, job_id: str) -> Optional[BatchJob]:
        return self.registry.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, job_type: Optional[str] = None,
                  limit: Optional[int] = None, offset: int = 0) -> List[BatchJob]:
        return self.registry.list(status=status, job_type=job_type, limit=limit, offset=offset)

    def generate_performance_report(self, job_id: str) -> Optional[PerformanceReport]:
        job = self.registry.get(job_id)
        if job is None:
            return None
        return generate_report(job, self.memory_guard.current_memory_mb())

    def get_system_metrics(self) -> SystemMetrics:
        active = self.registry.list(status=JobStatus.RUNNING)
        return SystemMetrics(
            active_jobs=len(active),
            total_concurrency=sum(job.config.max_concurrency for job in active),
            system_memory_usage=self.memory_guard.current_memory_mb(),
            average_throughput=sum(job.metrics.throughput for job in active) / max(len(active), 1),
        )

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> Optional[BatchJob]:
        """Wait until the job reaches a terminal status; returns the job or None if unknown."""
        job = self.registry.get(job_id)
        if job is None:
            return None
        if not job.is_terminal:
            await asyncio.wait_for(self._terminal_events[job_id].wait(), timeout=timeout)
        return job

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    async def _process_job(self, job_id: str, processor: Processor):
        job = self.registry.get(job_id)
        control = self._controls[job_id]
        lock = self.registry.lock(job_id)

        try:
            async with lock:
                if job.is_terminal:
                    return
                JobStateMachine.transition(job, JobStatus.RUNNING, reason="processing_started")
                self.registry.mirror_update(job)

            limiter = ConcurrencyLimiter(job.config.max_concurrency)
            self._active_limits[job_id] = limiter
            self._arm_timeout(job)

            chunks = chunk_tasks(job.tasks, job.config.chunk_size)
            logger.info("Starting batch job processing: job=%s tasks=%d chunks=%d",
                        job_id, len(job.tasks), len(chunks))
            self.events.publish(BatchEventType.JOB_STARTED, job_id, {
                "status": job.status.value,
                "chunks": len(chunks),
            })

            for index, chunk in enumerate(chunks):
                await control.wait_until_runnable()
                if control.cancelled:
                    break

                await self._apply_memory_guard(job, control)
                # A pause may land during the cooldown; the chunk is not dispatched yet
                await control.wait_until_runnable()
                if control.cancelled:
                    break

                await self._process_chunk(job, chunk, processor, limiter, control)
                if control.cancelled:
                    break

                async with lock:
                    job.metrics.peak_concurrency = limiter.peak_active
                    job.metrics.average_concurrency = limiter.average_active
                    update_progress(job)
                    self.registry.mirror_update(job)

                self.events.publish(BatchEventType.PROGRESS, job_id, {
                    "chunk": index + 1,
                    "chunks": len(chunks),
                    "progress": job.progress.model_dump(mode="json"),
                    "metrics": job.metrics.model_dump(mode="json"),
                })

            # A pause requested during the last chunk still holds completion
            if not control.cancelled:
                await control.wait_until_runnable()
            if control.cancelled:
                return

            async with lock:
                if job.is_terminal:
                    return
                final_status = JobStatus.COMPLETED if job.progress.failed == 0 else JobStatus.FAILED
                JobStateMachine.transition(job, final_status, reason="all_chunks_processed")
                update_progress(job)
                self.registry.mirror_update(job)

            logger.info("Batch job finished: job=%s status=%s completed=%d failed=%d",
                        job_id, job.status.value, job.progress.completed, job.progress.failed)
            event_type = BatchEventType.JOB_COMPLETED if final_status == JobStatus.COMPLETED else BatchEventType.JOB_FAILED
            self.events.publish(event_type, job_id, {
                "status": job.status.value,
                "progress": job.progress.model_dump(mode="json"),
                "errors": len(job.errors),
            })
            self._notify_terminal(job_id)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Batch job %s failed: %s", job_id, e)
            async with lock:
                if job.is_terminal or not JobStateMachine.can_transition(job, JobStatus.FAILED):
                    return
                job.errors.append(JobError(task_id="system", message=str(e) or type(e).__name__))
                JobStateMachine.transition(job, JobStatus.FAILED, reason="orchestration_error")
                update_progress(job)
                self.registry.mirror_update(job)
            self.events.publish(BatchEventType.JOB_FAILED, job_id, {
                "status": job.status.value,
                "error": str(e),
            })
            self._notify_terminal(job_id)
        finally:
            self._active_limits.pop(job_id, None)
            self._disarm_timeout(job_id)

    async def _process_chunk(self, job: BatchJob, chunk: List[TaskUnit], processor: Processor,
                             limiter: ConcurrencyLimiter, control: JobControl):
        """Run one chunk; returns once every task in it has settled."""

        async def _run_task(task: TaskUnit):
            if control.cancelled:
                return SKIPPED
            outcome = await self.retry_executor.execute(
                task, processor, job.config,
                should_continue=lambda: not control.cancelled,
            )
            await self._record_outcome(job, outcome)
            return outcome

        results = await asyncio.gather(
            *(limiter.run(_run_task, task) for task in chunk),
            return_exceptions=True,
        )
        for result in results:
            # Task errors are already captured in TaskOutcome; anything here escaped the retry path
            if isinstance(result, BaseException):
                raise result

    async def _record_outcome(self, job: BatchJob, outcome: TaskOutcome):
        async with self.registry.lock(job.id):
            if job.is_terminal:
                logger.debug("Discarding result of task %s, job %s is %s",
                             outcome.task.id, job.id, job.status.value)
                return
            if outcome.succeeded:
                job.metrics.average_task_time_ms = update_average_task_time(
                    job.metrics.average_task_time_ms, job.progress.completed, outcome.elapsed_ms
                )
                job.progress.completed += 1
            else:
                job.progress.failed += 1
                job.errors.append(JobError(
                    task_id=outcome.task.id,
                    message=str(outcome.error) or type(outcome.error).__name__,
                    retry_count=outcome.task.retry_count,
                    context=outcome.task.payload,
                ))

    # ------------------------------------------------------------------
    # Cancellation and timeout
    # ------------------------------------------------------------------

    async def _cancel(self, job_id: str, reason: str, warning: Optional[str] = None) -> bool:
        """Move the job to cancelled at once and drop its queued tasks.

        Every unsettled task, including one still in flight, is counted as
        skipped, and results that arrive afterwards are discarded. Late results
        are deliberately not tallied into completed/failed so the record never
        changes after reaching a terminal state.
        """
        job = self.registry.get(job_id)
        if job is None or job.is_terminal:
            return False
        async with self.registry.lock(job_id):
            if job.is_terminal:
                return False
            if warning:
                job.warnings.append(warning)
            JobStateMachine.transition(job, JobStatus.CANCELLED, reason=reason)
            self._controls[job_id].cancel(reason)
            limiter = self._active_limits.pop(job_id, None)
            if limiter is not None:
                limiter.clear_queue()
            update_progress(job)
            self.registry.mirror_update(job)

        self._disarm_timeout(job_id)
        logger.info("Batch job cancelled: job=%s reason=%s skipped=%d",
                    job_id, reason, job.progress.skipped)
        self.events.publish(BatchEventType.JOB_CANCELLED, job_id, {
            "status": job.status.value,
            "reason": reason,
            "progress": job.progress.model_dump(mode="json"),
        })
        self._notify_terminal(job_id)
        return True

    def _arm_timeout(self, job: BatchJob):
        if job.config.job_timeout_ms is None:
            return
        loop = asyncio.get_running_loop()
        self._timeouts[job.id] = loop.call_later(
            job.config.job_timeout_ms / 1000, self._on_timeout, job.id
        )

    def _disarm_timeout(self, job_id: str):
        handle = self._timeouts.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timeout(self, job_id: str):
        self._timeouts.pop(job_id, None)
        job = self.registry.get(job_id)
        if job is None or job.is_terminal:
            return
        timeout_ms = job.config.job_timeout_ms
        logger.warning("Batch job %s exceeded timeout of %.0f ms, cancelling", job_id, timeout_ms)
        task = asyncio.create_task(self._cancel(
            job_id, reason="timeout",
            warning=f"Job exceeded timeout of {timeout_ms:.0f} ms and was cancelled",
        ))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify_terminal(self, job_id: str):
        event = self._terminal_events.get(job_id)
        if event is not None:
            event.set()

    # ------------------------------------------------------------------
    # Memory and monitoring
    # ------------------------------------------------------------------

    def _sample_memory(self, job: BatchJob, current_mb: float):
        metrics = job.metrics
        metrics.current_memory_mb = current_mb
        metrics.peak_memory_mb = max(metrics.peak_memory_mb, current_mb)
        metrics.average_memory_mb = (
            (metrics.average_memory_mb * metrics.memory_samples + current_mb) / (metrics.memory_samples + 1)
        )
        metrics.memory_samples += 1

    async def _apply_memory_guard(self, job: BatchJob, control: JobControl):
        """Checkpoint between chunks: sample memory and cool down when over threshold."""
        threshold = job.config.memory_threshold_mb
        async with self.registry.lock(job.id):
            self._sample_memory(job, self.memory_guard.current_memory_mb())

        if not self.memory_guard.should_throttle(threshold):
            return

        await self.memory_guard.cooldown(job.config.memory_cooldown_ms, job.id)
        after = self.memory_guard.current_memory_mb()
        async with self.registry.lock(job.id):
            if job.is_terminal or control.cancelled:
                return
            self._sample_memory(job, after)
            if after > threshold:
                job.warnings.append(
                    f"Memory {after:.1f} MB still above threshold {threshold:.0f} MB after cleanup; continuing"
                )

    def monitor_performance(self):
        """Sample memory into every running job and refresh live concurrency."""
        current = self.memory_guard.current_memory_mb()
        for job in self.registry.list(status=JobStatus.RUNNING):
            self._sample_memory(job, current)
            limiter = self._active_limits.get(job.id)
            if limiter is not None:
                job.metrics.concurrent_tasks_running = limiter.active_count

    def purge_expired_jobs(self) -> List[str]:
        expired = self.registry.purge_expired()
        for job_id in expired:
            self._controls.pop(job_id, None)
            self._terminal_events.pop(job_id, None)
            self._job_tasks.pop(job_id, None)
        return expired

    async def _monitoring_loop(self):
        interval = self.default_config.monitoring_interval_ms / 1000
        while not self._stop_event.is_set():
            try:
                self.monitor_performance()
                self.purge_expired_jobs()
            except Exception as e:
                logger.error("Error in batch monitoring loop: %s", e)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


# Global orchestrator instance for app
orchestrator: Optional[BatchOrchestrator] = None


async def init_orchestrator():
    global orchestrator
    if orchestrator is None:
        mirror = None
        if settings.persistence_enabled:
            mirror = PersistenceMirror(
                SQLiteDocumentStore(settings.database_path),
                collection=settings.batch_collection,
            )
        orchestrator = BatchOrchestrator(
            default_config=config_from_settings(),
            mirror=mirror,
            retention_seconds=settings.batch_job_retention_seconds,
        )
        await orchestrator.start()


async def shutdown_orchestrator():
    global orchestrator
    if orchestrator is not None:
        await orchestrator.stop()
        orchestrator = None


def get_orchestrator() -> Optional[BatchOrchestrator]:
    return orchestrator
