import asyncio
import gc
import logging
from typing import Awaitable, Callable, Optional, Protocol

import psutil

logger = logging.getLogger(__name__)


class MemorySampler(Protocol):
    """Source of the current process memory figure, in MB"""

    def current_memory_mb(self) -> float:
        ...


class PsutilMemorySampler:
    """Samples resident set size of this process via psutil"""

    def __init__(self, pid: Optional[int] = None):
        self._process = psutil.Process(pid)

    def current_memory_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)


class MemoryGuard:
    """Advisory backpressure between chunks.

    The guard never blocks a job indefinitely: after one cooldown the caller
    proceeds even if memory is still above the threshold.
    """

    def __init__(self, sampler: Optional[MemorySampler] = None,
                 reclaim: Optional[Callable[[], object]] = gc.collect,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.sampler = sampler or PsutilMemorySampler()
        self._reclaim = reclaim
        self._sleep = sleep

    def current_memory_mb(self) -> float:
        return self.sampler.current_memory_mb()

    def should_throttle(self, threshold_mb: float) -> bool:
        return self.current_memory_mb() > threshold_mb

    async def cooldown(self, cooldown_ms: float, job_id: Optional[str] = None) -> bool:
        """Request reclamation, wait cooldown_ms, return True if memory went down."""
        before = self.current_memory_mb()
        logger.warning("Pausing job %s for memory cleanup (current: %.1f MB)", job_id, before)
        if self._reclaim is not None:
            self._reclaim()
        await self._sleep(cooldown_ms / 1000)
        after = self.current_memory_mb()
        logger.info("Memory cleanup completed for job %s (%.1f MB -> %.1f MB)", job_id, before, after)
        return after < before
