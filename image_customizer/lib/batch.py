from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_THROTTLE = 4
DEFAULT_CANCEL_GRACE = 10.0


@dataclass(frozen=True)
class BatchOutcome(Generic[T]):
    index: int
    item: T
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    incomplete: bool = False
    elapsed: float = 0.0


class ResultCollector:
    """Append-only, thread-safe sink shared by the workers."""

    def __init__(self) -> None:
        self._items: List[BatchOutcome] = []
        self._lock = threading.Lock()

    def append(self, outcome: BatchOutcome) -> None:
        with self._lock:
            self._items.append(outcome)

    def snapshot(self) -> List[BatchOutcome]:
        with self._lock:
            return list(self._items)


def run_batch(
    items: Sequence[T],
    fn: Callable[[T, threading.Event], Any],
    *,
    throttle: int = DEFAULT_THROTTLE,
    batch_timeout: Optional[float] = None,
    cancel_grace: float = DEFAULT_CANCEL_GRACE,
) -> List[BatchOutcome[T]]:
    """Run fn over items with at most ``throttle`` in flight.

    Per-item exceptions are recorded, never retried or re-raised. When the
    batch deadline passes, the shared cancel event is set (fn is expected to
    hand it to run_operation so its external process is killed). Running
    workers get up to ``cancel_grace`` seconds to kill their processes before
    the call returns, and every item without a recorded outcome is reported
    incomplete. Outcomes come back in input order.
    """

    if throttle < 1:
        raise ValueError("throttle must be >= 1")

    collector = ResultCollector()
    cancel = threading.Event()

    def worker(index: int, item: T) -> None:
        if cancel.is_set():
            return
        started = time.monotonic()
        try:
            value = fn(item, cancel)
        except Exception as e:
            collector.append(
                BatchOutcome(index=index, item=item, ok=False, error=e, elapsed=time.monotonic() - started)
            )
            return
        collector.append(BatchOutcome(index=index, item=item, ok=True, value=value, elapsed=time.monotonic() - started))

    ex = ThreadPoolExecutor(max_workers=throttle, thread_name_prefix="batch")
    try:
        futures = [ex.submit(worker, i, item) for i, item in enumerate(items)]
        _, not_done = wait(futures, timeout=batch_timeout)
        # Snapshot before cancelling so killed items are not mistaken for failures.
        finished = {o.index: o for o in collector.snapshot()}
        if not_done:
            logger.warning(
                "Batch deadline (%.0fs) reached with %d item(s) unfinished", batch_timeout or 0, len(not_done)
            )
            cancel.set()
            running = [f for f in not_done if not f.cancel()]
            # Workers kill their process trees on the cancel event; let them get that far.
            _, stuck = wait(running, timeout=cancel_grace)
            if stuck:
                logger.warning("%d batch worker(s) still running %.0fs after cancel", len(stuck), cancel_grace)
    finally:
        ex.shutdown(wait=not cancel.is_set(), cancel_futures=True)

    return [
        finished.get(i) or BatchOutcome(index=i, item=item, ok=False, incomplete=True)
        for i, item in enumerate(items)
    ]
