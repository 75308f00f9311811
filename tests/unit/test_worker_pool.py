import threading
import time

import pytest
from fakes import FakeClock

from message_search.errors import OverloadedError
from message_search.ingest.workers import IndexingWorkerPool, IndexJob, JobKind, KeyedLocks
from message_search.resilience.clock import Deadline


def _job(message_id: str) -> IndexJob:
    return IndexJob(kind=JobKind.DELETE, message_id=message_id)


def test_submit_before_start_is_rejected() -> None:
    pool = IndexingWorkerPool(
        lambda job, deadline: None, workers=1, queue_capacity=1, deadline_seconds=1.0
    )

    with pytest.raises(OverloadedError):
        pool.submit(_job("m-1"))


def test_full_queue_raises_overloaded() -> None:
    gate = threading.Event()
    started = threading.Event()

    def handler(job: IndexJob, deadline: Deadline) -> None:
        started.set()
        gate.wait(timeout=5.0)

    pool = IndexingWorkerPool(handler, workers=1, queue_capacity=1, deadline_seconds=1.0)
    pool.start()
    try:
        pool.submit(_job("m-1"))
        assert started.wait(timeout=5.0)
        pool.submit(_job("m-2"))

        with pytest.raises(OverloadedError):
            pool.submit(_job("m-3"))
    finally:
        gate.set()
        pool.stop()


def test_jobs_are_handled_and_join_waits_for_them() -> None:
    handled: list[str] = []
    lock = threading.Lock()

    def handler(job: IndexJob, deadline: Deadline) -> None:
        with lock:
            handled.append(job.message_id)

    pool = IndexingWorkerPool(
        handler, workers=3, queue_capacity=16, deadline_seconds=1.0, clock=FakeClock()
    )
    pool.start()
    for index in range(10):
        pool.submit(_job(f"m-{index}"))
    pool.join()
    pool.stop()

    assert sorted(handled) == sorted(f"m-{index}" for index in range(10))
    assert pool.running is False


def test_handler_crash_does_not_kill_the_worker() -> None:
    handled: list[str] = []

    def handler(job: IndexJob, deadline: Deadline) -> None:
        if job.message_id == "boom":
            raise RuntimeError("unexpected")
        handled.append(job.message_id)

    pool = IndexingWorkerPool(handler, workers=1, queue_capacity=4, deadline_seconds=1.0)
    pool.start()
    pool.submit(_job("boom"))
    pool.submit(_job("ok"))
    pool.join()
    pool.stop()

    assert handled == ["ok"]


def test_stop_with_cancel_cancels_in_flight_deadlines() -> None:
    seen: list[Deadline] = []
    started = threading.Event()

    def handler(job: IndexJob, deadline: Deadline) -> None:
        seen.append(deadline)
        started.set()
        while not deadline.cancelled:
            time.sleep(0.01)

    pool = IndexingWorkerPool(handler, workers=1, queue_capacity=4, deadline_seconds=30.0)
    pool.start()
    pool.submit(_job("m-1"))
    assert started.wait(timeout=5.0)

    pool.stop(cancel=True, timeout=5.0)

    assert seen[0].cancelled is True


def test_jobs_picked_up_after_cancelling_stop_get_cancelled_deadlines() -> None:
    seen: dict[str, Deadline] = {}
    started = threading.Event()

    def handler(job: IndexJob, deadline: Deadline) -> None:
        seen[job.message_id] = deadline
        started.set()
        while job.message_id == "m-1" and not deadline.cancelled:
            time.sleep(0.01)

    pool = IndexingWorkerPool(handler, workers=1, queue_capacity=4, deadline_seconds=30.0)
    pool.start()
    pool.submit(_job("m-1"))
    pool.submit(_job("m-2"))
    assert started.wait(timeout=5.0)

    pool.stop(cancel=True, timeout=5.0)

    assert seen["m-1"].cancelled is True
    assert seen["m-2"].cancelled is True


def test_index_job_requires_a_record() -> None:
    with pytest.raises(ValueError):
        IndexJob(kind=JobKind.INDEX, message_id="m-1")


def test_keyed_locks_serialize_same_key_only() -> None:
    locks = KeyedLocks()
    order: list[str] = []
    inside = threading.Event()
    release = threading.Event()

    def hold_a() -> None:
        with locks.hold("a"):
            order.append("first-a")
            inside.set()
            release.wait(timeout=5.0)
        order.append("first-a-done")

    def second_a() -> None:
        with locks.hold("a"):
            order.append("second-a")

    worker = threading.Thread(target=hold_a)
    worker.start()
    assert inside.wait(timeout=5.0)

    with locks.hold("b"):
        order.append("b")

    follower = threading.Thread(target=second_a)
    follower.start()
    time.sleep(0.05)
    assert "second-a" not in order

    release.set()
    worker.join(timeout=5.0)
    follower.join(timeout=5.0)

    assert order.index("b") < order.index("second-a")
    assert order.index("first-a") < order.index("second-a")
    assert len(locks) == 0
