"""
Bounded work queue.

Runs a worker function over a growable list of items with at most
``concurrency`` invocations in flight. Items wait in FIFO order. Once
``close()`` has been called and every pushed item has been processed, the
queue is drained: ``wait()`` returns and each ``on_drained`` callback runs
exactly once.

A failing item never stops the queue. Workers are expected to record their
own failures; an exception escaping a worker is logged and the item counts as
processed.

Worker threads are not daemons, so the interpreter waits for running items
before it exits. ``abort()`` drops the items still waiting; callers interrupted
during ``wait()`` use it so that only the running items hold up the exit.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkQueue(Generic[T]):
    def __init__(
        self,
        worker: Callable[[T], None],
        concurrency: int,
        name: str = "work-queue",
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be a positive integer, got {concurrency}")
        self.worker = worker
        self.concurrency = concurrency
        self.name = name

        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._pending = 0
        self._processed = 0
        self._closed = False
        self._drained = threading.Event()
        self._listeners: List[Callable[[], None]] = []

    @property
    def pending(self) -> int:
        """Items pushed but not yet processed (queued or running)."""
        with self._lock:
            return self._pending

    @property
    def processed(self) -> int:
        with self._lock:
            return self._processed

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def drained(self) -> bool:
        return self._drained.is_set()

    def push(self, items: Iterable[T]) -> None:
        """Queue a batch of items. Raises RuntimeError once the queue is closed."""
        batch = list(items)
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} is closed; cannot push more items")
            self._pending += len(batch)
        for item in batch:
            self._executor.submit(self._run, item)

    def close(self) -> None:
        """Signal that no more items will be pushed."""
        with self._lock:
            self._closed = True
        self._maybe_drain()

    def abort(self) -> None:
        """
        Close the queue and drop every item that has not started yet.

        Items already running are left to finish on their own. A dropped
        item is never processed, so an aborted queue with dropped items
        does not drain.
        """
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("%s aborted with %d item(s) pending", self.name, self.pending)

    def on_drained(self, callback: Callable[[], None]) -> None:
        """Register a callback fired once the queue drains (immediately if it already has)."""
        with self._lock:
            if not self._drained.is_set():
                self._listeners.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is drained. Returns False if the timeout expired first."""
        return self._drained.wait(timeout)

    def _run(self, item: T) -> None:
        try:
            self.worker(item)
        except Exception:
            logger.exception("%s: worker raised while processing %r", self.name, item)
        finally:
            with self._lock:
                self._pending -= 1
                self._processed += 1
            self._maybe_drain()

    def _maybe_drain(self) -> None:
        with self._lock:
            if not self._closed or self._pending or self._drained.is_set():
                return
            self._drained.set()
            listeners, self._listeners = self._listeners, []
            processed = self._processed

        logger.debug("%s drained after %d item(s)", self.name, processed)
        self._executor.shutdown(wait=False)
        for callback in listeners:
            callback()
