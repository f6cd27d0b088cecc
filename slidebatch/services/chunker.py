from typing import List, Sequence, TypeVar

T = TypeVar("T")


def chunk_tasks(tasks: Sequence[T], chunk_size: int) -> List[List[T]]:
    """Split tasks into consecutive groups of at most chunk_size, keeping order.

    Each group boundary is a checkpoint where the orchestrator evaluates
    pause, cancel and memory pressure.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    return [list(tasks[i:i + chunk_size]) for i in range(0, len(tasks), chunk_size)]
