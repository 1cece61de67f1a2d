"""
Process-wide worker pool for data-parallel split scans.

The pool is created lazily the first time more than one worker is requested
and grows when a larger worker count is asked for later. Tasks must treat
their inputs as read-only; results come back in submission order so the
caller's reduction is deterministic.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, TypeVar
import logging
import threading

from joblib import effective_n_jobs

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_lock = threading.Lock()
_executor: Optional[ThreadPoolExecutor] = None
_executor_size = 0


def resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate joblib-style n_jobs (None, -1, ...) into a worker count."""
    if n_jobs is None:
        return 1
    return max(1, int(effective_n_jobs(n_jobs)))


def _sized_executor(n_workers: int) -> ThreadPoolExecutor:
    # Caller holds _lock.
    global _executor, _executor_size
    if _executor is None or _executor_size < n_workers:
        previous = _executor
        _executor = ThreadPoolExecutor(max_workers=n_workers,
                                       thread_name_prefix="gbmboost")
        _executor_size = n_workers
        logger.debug(f"Worker pool sized to {n_workers} threads")
        if previous is not None:
            # Tasks already submitted to the old pool still run to completion.
            previous.shutdown(wait=False)
    return _executor


def get_executor(n_workers: int) -> ThreadPoolExecutor:
    """Return the shared executor, resizing it if fewer than n_workers threads."""
    with _lock:
        return _sized_executor(n_workers)


def parallel_map(fn: Callable[[T], R], items: Iterable[T], n_jobs: Optional[int] = 1) -> List[R]:
    """
    Apply fn to every item, using the shared pool when n_jobs > 1.

    Results are returned in the order of ``items``.
    """
    items = list(items)
    n_workers = resolve_n_jobs(n_jobs)
    if n_workers <= 1 or len(items) < 2:
        return [fn(item) for item in items]
    with _lock:
        futures = [_sized_executor(n_workers).submit(fn, item) for item in items]
    return [future.result() for future in futures]


def pool_size() -> int:
    """Number of threads in the live shared pool (0 if none)."""
    with _lock:
        return _executor_size if _executor is not None else 0


def shutdown() -> None:
    """Release the shared pool; a later parallel_map recreates it."""
    global _executor, _executor_size
    with _lock:
        if _executor is not None:
            _executor.shutdown(wait=True)
        _executor = None
        _executor_size = 0
