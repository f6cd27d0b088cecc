import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from slidebatch.models.job import BatchConfig, TaskUnit

logger = logging.getLogger(__name__)

Processor = Callable[[TaskUnit], Union[Any, Awaitable[Any]]]


@dataclass
class TaskOutcome:
    """Result of running one task through the retry executor"""
    task: TaskUnit
    result: Any = None
    error: Optional[BaseException] = None
    elapsed_ms: float = 0.0
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None


def backoff_delay_ms(base_delay_ms: float, retry_number: int) -> float:
    """Delay before retry number retry_number (1-indexed): base * 2^(n-1)."""
    return base_delay_ms * (2 ** (retry_number - 1))


def update_average_task_time(average_ms: float, completed_so_far: int, elapsed_ms: float) -> float:
    """Incremental mean over successful tasks."""
    return (average_ms * completed_so_far + elapsed_ms) / (completed_so_far + 1)


class RetryExecutor:
    """Runs a task with bounded retries and exponential backoff."""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep

    async def _call(self, processor: Processor, task: TaskUnit) -> Any:
        if inspect.iscoroutinefunction(processor):
            return await processor(task)
        # Blocking processors go to the default thread pool so the loop keeps running
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, processor, task)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def execute(self, task: TaskUnit, processor: Processor, config: BatchConfig,
                      should_continue: Optional[Callable[[], bool]] = None) -> TaskOutcome:
        """Run processor(task), retrying up to config.retry_attempts times.

        task.retry_count counts retries actually performed and never exceeds
        retry_attempts. Returns the last error once retries are exhausted or
        should_continue() turns false.
        """
        attempts = 0
        while True:
            attempts += 1
            started = time.monotonic()
            try:
                result = await self._call(processor, task)
            except Exception as e:
                elapsed_ms = (time.monotonic() - started) * 1000
                if task.retry_count >= config.retry_attempts:
                    logger.warning("Task %s failed after %d attempt(s): %s", task.id, attempts, e)
                    return TaskOutcome(task=task, error=e, elapsed_ms=elapsed_ms, attempts=attempts)
                if should_continue is not None and not should_continue():
                    logger.info("Task %s not retried, job no longer running", task.id)
                    return TaskOutcome(task=task, error=e, elapsed_ms=elapsed_ms, attempts=attempts)

                task.retry_count += 1
                delay_ms = backoff_delay_ms(config.retry_delay_ms, task.retry_count)
                logger.warning("Task retry: task=%s attempt=%d/%d delay=%.0fms error=%s",
                               task.id, task.retry_count, config.retry_attempts, delay_ms, e)
                await self._sleep(delay_ms / 1000)
                if should_continue is not None and not should_continue():
                    logger.info("Task %s not retried, job stopped during backoff", task.id)
                    return TaskOutcome(task=task, error=e, elapsed_ms=elapsed_ms, attempts=attempts)
                continue

            elapsed_ms = (time.monotonic() - started) * 1000
            return TaskOutcome(task=task, result=result, elapsed_ms=elapsed_ms, attempts=attempts)
