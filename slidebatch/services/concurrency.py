import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class _Skipped:
    """Sentinel returned for calls dropped by clear_queue()."""

    def __repr__(self) -> str:
        return "SKIPPED"


SKIPPED = _Skipped()


class ConcurrencyLimiter:
    """Bounds the number of coroutines running at once for one job."""

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._cleared = False
        self.active_count = 0
        self.pending_count = 0
        self.peak_active = 0
        self._active_samples = 0
        self._active_total = 0

    @property
    def cleared(self) -> bool:
        return self._cleared

    @property
    def average_active(self) -> float:
        """Mean number of running calls, sampled each time a call starts."""
        if not self._active_samples:
            return 0.0
        return self._active_total / self._active_samples

    async def run(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run fn(*args) once a slot is free, or return SKIPPED if the queue was cleared."""
        if self._cleared:
            return SKIPPED
        self.pending_count += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.pending_count -= 1
        try:
            if self._cleared:
                return SKIPPED
            self.active_count += 1
            self.peak_active = max(self.peak_active, self.active_count)
            self._active_samples += 1
            self._active_total += self.active_count
            try:
                return await fn(*args)
            finally:
                self.active_count -= 1
        finally:
            self._semaphore.release()

    def clear_queue(self) -> int:
        """Drop every call still waiting for a slot. Running calls are left alone."""
        dropped = self.pending_count
        self._cleared = True
        if dropped:
            logger.info("Cleared %d queued task(s) from limiter", dropped)
        return dropped
