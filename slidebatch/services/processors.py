import asyncio
import logging
from typing import Dict, List

from slidebatch.models.job import TaskUnit
from slidebatch.services.retry import Processor

logger = logging.getLogger(__name__)


class UnknownProcessorError(KeyError):
    """No processor is registered for the requested job type"""


class ProcessorRegistry:
    """Maps a job type to the function that processes one of its tasks."""

    def __init__(self):
        self._processors: Dict[str, Processor] = {}

    def register(self, job_type: str, processor: Processor, replace: bool = False):
        if job_type in self._processors and not replace:
            raise ValueError(f"Processor already registered for job type '{job_type}'")
        self._processors[job_type] = processor
        logger.info("Registered processor for job type %s", job_type)

    def get(self, job_type: str) -> Processor:
        try:
            return self._processors[job_type]
        except KeyError:
            raise UnknownProcessorError(job_type) from None

    def types(self) -> List[str]:
        return sorted(self._processors)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._processors


async def echo_processor(task: TaskUnit):
    """Return the task payload.

    Dict payloads may carry ``delay_ms`` to simulate I/O and ``fail: true``
    to raise, which is handy for exercising the orchestrator end to end.
    """
    payload = task.payload if isinstance(task.payload, dict) else {}
    delay_ms = payload.get("delay_ms", 0)
    if delay_ms:
        await asyncio.sleep(delay_ms / 1000)
    if payload.get("fail"):
        raise RuntimeError(f"Task {task.id} failed on request")
    return task.payload


def default_processor_registry() -> ProcessorRegistry:
    registry = ProcessorRegistry()
    registry.register("echo", echo_processor)
    return registry
