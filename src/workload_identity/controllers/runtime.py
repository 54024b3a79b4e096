"""Work queue and controller loop that drive the reconcilers.

The queue de-duplicates keys and never hands the same key to two workers
at once: a key re-added while it is being processed is parked and handed
out again after ``done()``.  Failed keys come back with per-key
exponential backoff; the only non-error delay is an explicit
``requeue_after`` from a reconciler.

All state is in-memory and thread-safe via a single condition variable.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from workload_identity.errors import ConfigurationError
from workload_identity.models import ReconcileResult
from workload_identity.storage.store import Source, split_key

logger = logging.getLogger(__name__)

BASE_BACKOFF_SECONDS = 0.005
MAX_BACKOFF_SECONDS = 1000.0
WATCH_RESTART_SECONDS = 5.0


class WorkQueue:
    """De-duplicating, per-key serialised queue with delayed adds."""

    def __init__(
        self,
        base_backoff: float = BASE_BACKOFF_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff
        self._clock = _clock or time.monotonic
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._delayed: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._failures: dict[str, int] = {}
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.backoff(key))

    def backoff(self, key: str) -> float:
        """Record a failure for *key* and return the delay before its next try."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self._base_backoff * (2 ** failures), self._max_backoff)

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> str | None:
        """Return the next key, waiting up to *timeout* seconds.

        Returns None on timeout or after shutdown.  ``timeout=0`` never
        blocks.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key

                wait = None
                if self._delayed:
                    wait = max(self._delayed[0][0] - self._clock(), 0.0)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    # --- Private ---

    def _add_locked(self, key: str) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.append(key)
            self._cond.notify()

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)


class Controller:
    """Feeds keys from a source through a reconcile function.

    Runs one watch thread, one resync thread and ``workers`` worker
    threads.  Reconcile errors are retried with backoff, except
    ``ConfigurationError``, which is logged and left to the next resync.
    """

    def __init__(
        self,
        name: str,
        reconcile: Callable[[str, str], ReconcileResult],
        source: Source,
        workers: int = 1,
        resync_period: float = 600.0,
        queue: WorkQueue | None = None,
    ) -> None:
        self.name = name
        self._reconcile = reconcile
        self._source = source
        self._workers = max(workers, 1)
        self._resync_period = resync_period
        self.queue = queue or WorkQueue()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        targets = [("watch", self._watch_loop), ("resync", self._resync_loop)]
        targets += [(f"worker-{i}", self._worker_loop) for i in range(self._workers)]
        for suffix, target in targets:
            thread = threading.Thread(target=target, name=f"{self.name}-{suffix}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started controller %s with %d worker(s)", self.name, self._workers)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info("Stopped controller %s", self.name)

    def wait(self) -> None:
        """Block until ``stop()`` is called."""
        self._stop.wait()

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one key from the queue.  Returns False if none came."""
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            self._handle(key)
        finally:
            self.queue.done(key)
        return True

    def _handle(self, key: str) -> None:
        namespace, name = split_key(key)
        try:
            result = self._reconcile(namespace, name)
        except ConfigurationError as exc:
            logger.error("%s: configuration error on %s, not retrying: %s", self.name, key, exc)
            self.queue.forget(key)
            return
        except Exception:
            delay = self.queue.backoff(key)
            logger.exception("%s: reconcile of %s failed, retrying in %.3fs", self.name, key, delay)
            self.queue.add_after(key, delay)
            return

        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(key)

    # --- Threads ---

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            self.process_next()

    def _watch_loop(self) -> None:
        while not self._stop.is_set():
            try:
                for key in self._source.watch_keys(self._stop):
                    self.queue.add(key)
            except Exception:
                logger.exception("%s: watch failed, restarting", self.name)
            self._stop.wait(WATCH_RESTART_SECONDS)

    def _resync_loop(self) -> None:
        while not self._stop.is_set():
            try:
                for key in self._source.list_keys():
                    self.queue.add(key)
            except Exception:
                logger.exception("%s: resync failed", self.name)
            self._stop.wait(self._resync_period)
