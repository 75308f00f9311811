"""Bounded worker pool and per-message serialization for the indexing path."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from message_search.errors import OverloadedError
from message_search.obs.logging import get_logger
from message_search.resilience.clock import Clock, Deadline, SystemClock
from message_search.types import MessageRecord

logger = get_logger(__name__)


class JobKind(str, Enum):
    INDEX = "index"
    DELETE = "delete"


@dataclass(slots=True)
class IndexJob:
    kind: JobKind
    message_id: str
    record: MessageRecord | None = None

    def __post_init__(self) -> None:
        if self.kind is JobKind.INDEX and self.record is None:
            raise ValueError(f"index job for {self.message_id} has no record")


@dataclass(slots=True)
class _KeyedLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLocks:
    """One lock per key, created on demand and dropped when unused.

    Serializes work on the same message id without a global lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyedLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_STOP = object()


class IndexingWorkerPool:
    """Fixed-size thread pool fed by a bounded queue.

    ``submit`` never blocks: a full queue raises ``OverloadedError`` and the
    event source is expected to redeliver. Each job gets a fresh deadline
    when a worker picks it up. ``stop(cancel=True)`` cancels in-flight
    deadlines and runs whatever is still queued with an already-cancelled
    deadline, so every job reaches the handler and can record its outcome.
    """

    def __init__(
        self,
        handler: Callable[[IndexJob, Deadline], None],
        *,
        workers: int,
        queue_capacity: int,
        deadline_seconds: float,
        clock: Clock | None = None,
    ) -> None:
        self._handler = handler
        self._workers = workers
        self._deadline_seconds = deadline_seconds
        self._clock = clock or SystemClock()
        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_capacity)
        self._threads: list[threading.Thread] = []
        self._inflight: set[Deadline] = set()
        self._inflight_lock = threading.Lock()
        self._cancelling = threading.Event()
        self._accepting = False

    @property
    def running(self) -> bool:
        return bool(self._threads)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._threads:
            return
        self._cancelling.clear()
        self._accepting = True
        for index in range(self._workers):
            thread = threading.Thread(
                target=self._run, name=f"indexing-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info("indexing_pool_started", workers=self._workers, capacity=self._queue.maxsize)

    def submit(self, job: IndexJob) -> None:
        if not self._accepting:
            raise OverloadedError("indexing pool is not accepting work")
        try:
            self._queue.put_nowait(job)
        except queue.Full as exc:
            logger.warning("indexing_queue_full", message_id=job.message_id, kind=job.kind.value)
            raise OverloadedError() from exc

    def join(self) -> None:
        """Block until every submitted job has been handled."""
        self._queue.join()

    def stop(self, *, cancel: bool = False, timeout: float | None = None) -> None:
        if not self._threads:
            return
        self._accepting = False
        if cancel:
            with self._inflight_lock:
                self._cancelling.set()
                for deadline in self._inflight:
                    deadline.cancel()
        for _ in self._threads:
            self._queue.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("indexing_pool_stopped", cancelled=cancel)

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                if isinstance(job, IndexJob):
                    self._handle(job)
            finally:
                self._queue.task_done()

    def _handle(self, job: IndexJob) -> None:
        deadline = Deadline.after(self._clock, self._deadline_seconds)
        with self._inflight_lock:
            if self._cancelling.is_set():
                deadline.cancel()
            self._inflight.add(deadline)
        try:
            self._handler(job, deadline)
        except Exception:
            logger.exception(
                "indexing_job_crashed", message_id=job.message_id, kind=job.kind.value
            )
        finally:
            with self._inflight_lock:
                self._inflight.discard(deadline)
