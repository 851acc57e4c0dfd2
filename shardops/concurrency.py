"""
Concurrency primitives used across the topology operations.

- concurrent_each: one thread per item, join all, collect every failure.
- bounded_each: at most K workers pulling items from a shared cursor.
- partition_range / in_chunks: split an inclusive ID range into contiguous
  pieces and process them through a bounded pool.
"""

import threading
from typing import Any, Callable, Iterable, List, Optional, Tuple

from .errors import AggregateError


def concurrent_each(
    items: Iterable[Any],
    fn: Callable[[Any], Any],
    action: str = "concurrent operation",
) -> List[Any]:
    """
    Run fn(item) for every item on its own thread and wait for all of them.

    Args:
        items: Items to process
        fn: Callable invoked once per item
        action: Description used in the aggregate error message

    Returns:
        Results in the same order as items

    Raises:
        AggregateError: after every item finished, if any of them raised
    """
    items = list(items)
    results: List[Any] = [None] * len(items)
    errors: List[Optional[BaseException]] = [None] * len(items)

    def run(index: int, item: Any) -> None:
        try:
            results[index] = fn(item)
        except Exception as exc:
            errors[index] = exc

    threads = [
        threading.Thread(target=run, args=(i, item), name=f"fanout-{i}", daemon=True)
        for i, item in enumerate(items)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    failures = [(items[i], exc) for i, exc in enumerate(errors) if exc is not None]
    if failures:
        raise AggregateError(failures, action)
    return results


def bounded_each(
    items: Iterable[Any],
    fn: Callable[[Any], Any],
    max_workers: int,
    ceiling: Optional[int] = None,
    action: str = "bounded operation",
) -> List[Any]:
    """
    Run fn(item) for every item using at most max_workers threads.

    Workers pull the next item from a shared, lock-guarded cursor and keep
    going until it is exhausted. A failing item does not stop its worker.

    Args:
        items: Items to process
        fn: Callable invoked once per item
        max_workers: Requested worker count
        ceiling: Optional global concurrency cap applied on top of max_workers
        action: Description used in the aggregate error message

    Returns:
        Results in the same order as items

    Raises:
        AggregateError: after every item finished, if any of them raised
    """
    items = list(items)
    if not items:
        return []

    workers = max(1, int(max_workers))
    if ceiling is not None:
        workers = min(workers, max(1, int(ceiling)))
    workers = min(workers, len(items))

    results: List[Any] = [None] * len(items)
    errors: List[Optional[BaseException]] = [None] * len(items)
    cursor = {"next": 0}
    lock = threading.Lock()

    def worker() -> None:
        while True:
            with lock:
                index = cursor["next"]
                if index >= len(items):
                    return
                cursor["next"] = index + 1
            try:
                results[index] = fn(items[index])
            except Exception as exc:
                errors[index] = exc

    threads = [threading.Thread(target=worker, name=f"worker-{i}", daemon=True) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    failures = [(items[i], exc) for i, exc in enumerate(errors) if exc is not None]
    if failures:
        raise AggregateError(failures, action)
    return results


def partition_range(min_id: int, max_id: int, chunks: int) -> List[Tuple[int, int]]:
    """
    Split the inclusive range [min_id, max_id] into contiguous sub-ranges.

    Pieces are as even as possible, with the remainder handed to the earliest
    pieces. Returns fewer than `chunks` pieces when the range is smaller.

    >>> partition_range(1, 100, 3)
    [(1, 34), (35, 67), (68, 100)]
    """
    min_id, max_id, chunks = int(min_id), int(max_id), int(chunks)
    if min_id > max_id:
        raise ValueError(f"Invalid range {min_id}..{max_id}")
    if chunks < 1:
        raise ValueError("chunks must be at least 1")

    total = max_id - min_id + 1
    count = min(chunks, total)
    base, remainder = divmod(total, count)

    ranges = []
    current = min_id
    for i in range(count):
        size = base + (1 if i < remainder else 0)
        ranges.append((current, current + size - 1))
        current += size
    return ranges


def in_chunks(
    min_id: int,
    max_id: int,
    chunks: int,
    fn: Callable[[int, int], Any],
    max_workers: Optional[int] = None,
    ceiling: Optional[int] = None,
    action: str = "chunked operation",
) -> List[Any]:
    """Call fn(min, max) for each piece of partition_range() through a bounded pool."""
    pieces = partition_range(min_id, max_id, chunks)
    workers = max_workers if max_workers is not None else len(pieces)
    return bounded_each(pieces, lambda piece: fn(*piece), workers, ceiling=ceiling, action=action)
