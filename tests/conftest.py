"""
Shared fixtures for the batch orchestrator tests.
"""

import asyncio
from typing import Iterable, List, Optional

import pytest
import pytest_asyncio

from slidebatch.models.job import BatchConfig
from slidebatch.services.memory_guard import MemoryGuard
from slidebatch.services.orchestrator import BatchOrchestrator


class FakeMemorySampler:
    """Returns scripted memory readings, then repeats the last one."""

    def __init__(self, readings: Iterable[float] = (100.0,)):
        self.readings: List[float] = list(readings)
        self.calls = 0

    def current_memory_mb(self) -> float:
        self.calls += 1
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        await asyncio.sleep(0)


def make_tasks(count: int, prefix: str = "task", payload: Optional[dict] = None) -> List[dict]:
    return [{"id": f"{prefix}-{i}", "payload": dict(payload or {}, index=i)} for i in range(count)]


def drain(subscription) -> list:
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


@pytest.fixture
def memory_sampler():
    return FakeMemorySampler()


@pytest.fixture
def fast_config():
    """Defaults that keep retries and cooldowns in the millisecond range."""
    return BatchConfig(
        max_concurrency=3,
        chunk_size=10,
        memory_threshold_mb=500,
        retry_attempts=3,
        retry_delay_ms=1,
        job_timeout_ms=None,
        monitoring_interval_ms=50,
        memory_cooldown_ms=0,
    )


@pytest_asyncio.fixture
async def orchestrator(fast_config, memory_sampler):
    orch = BatchOrchestrator(
        default_config=fast_config,
        memory_guard=MemoryGuard(sampler=memory_sampler, reclaim=None),
    )
    await orch.start()
    yield orch
    await orch.stop()
