"""
Pool — a fixed number of workers pulling from one shared cursor.

Each worker loops on ``SharedCursor.claim()`` until the cursor is
exhausted.  The cursor hands out every item exactly once; the lock inside
it is the only synchronisation between workers.  A worker stops at its
first exception, its siblings keep going, and every exception is returned
to the caller once all workers have joined.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Generic, Iterable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXHAUSTED = object()


class SharedCursor(Generic[T]):
    """Mutex-guarded iterator; ``claim()`` returns each item once."""

    def __init__(self, items: Iterable[T]):
        self._it = iter(items)
        self._lock = threading.Lock()

    def claim(self) -> Tuple[bool, Optional[T]]:
        with self._lock:
            item = next(self._it, _EXHAUSTED)
        if item is _EXHAUSTED:
            return False, None
        return True, item  # type: ignore[return-value]


def _worker(cursor: SharedCursor[T], fn: Callable[[T], None]) -> Optional[BaseException]:
    while True:
        claimed, item = cursor.claim()
        if not claimed:
            return None
        try:
            fn(item)  # type: ignore[arg-type]
        except Exception as e:
            logger.debug(f"worker stopped: {e}")
            return e


def run_pool(items: Iterable[T], fn: Callable[[T], None], workers: int) -> List[BaseException]:
    """Run *fn* over *items* on *workers* threads; return collected errors."""
    cursor: SharedCursor[T] = SharedCursor(items)
    workers = max(1, workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ci-worker") as pool:
        futures = [pool.submit(_worker, cursor, fn) for _ in range(workers)]
    errors = [f.result() for f in futures]
    return [e for e in errors if e is not None]
