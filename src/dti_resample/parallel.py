"""
Explicit parallel-for over contiguous index ranges.

The thread count is an argument, never global state. Work items must write
to disjoint parts of their output; numpy and scipy release the GIL in the
heavy kernels, so threads give real speedups on large grids.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple


def default_num_threads() -> int:
    """Number of threads used when none is requested (all cores)."""
    return os.cpu_count() or 1


def resolve_num_threads(num_threads: Optional[int]) -> int:
    if num_threads is None:
        return default_num_threads()
    if num_threads < 1:
        raise ValueError(f"Number of threads must be >= 1, got {num_threads}")
    return int(num_threads)


def partition(num_items: int, num_parts: int) -> List[Tuple[int, int]]:
    """
    Split ``range(num_items)`` into at most ``num_parts`` contiguous ranges.

    Returns:
        List of (start, stop) pairs covering the range exactly once.
    """
    num_parts = max(1, min(num_parts, num_items))
    base, extra = divmod(num_items, num_parts)
    ranges = []
    start = 0
    for part in range(num_parts):
        stop = start + base + (1 if part < extra else 0)
        if stop > start:
            ranges.append((start, stop))
        start = stop
    return ranges


def parallel_for(
    num_items: int,
    function: Callable[[int, int], None],
    num_threads: Optional[int] = None,
) -> None:
    """
    Call ``function(start, stop)`` on partitions of ``range(num_items)``.

    Args:
        num_items: Length of the index range (e.g. the first grid axis).
        function: Worker writing only inside its own [start, stop) range.
        num_threads: Worker count; None uses all cores.

    Raises:
        Any exception raised by a worker, after all workers finished.
    """
    if num_items <= 0:
        return

    num_threads = resolve_num_threads(num_threads)
    ranges = partition(num_items, num_threads)

    if len(ranges) == 1:
        function(*ranges[0])
        return

    with ThreadPoolExecutor(max_workers=len(ranges)) as executor:
        futures = [executor.submit(function, start, stop) for start, stop in ranges]
        # result() re-raises worker exceptions
        for future in futures:
            future.result()
