import time
from collections.abc import Callable

from agent_engine.engine.worker import Worker


def _wait_until(predicate: Callable[[], bool], timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_background_worker_processes_queue(make_engine) -> None:
    engine, _ = make_engine(default="DONE")
    task_ids = [engine.create_task("alice", f"goal {index}").task_id for index in range(3)]

    status = engine.start_worker()
    try:
        assert status["running"] is True
        assert _wait_until(
            lambda: all(engine.get_task(task_id).status == "completed" for task_id in task_ids)
        )
    finally:
        stopped = engine.stop_worker()

    assert stopped["running"] is False
    assert stopped["active_tasks"] == 0


def test_start_is_idempotent_and_stop_without_start_is_noop(make_engine) -> None:
    engine, _ = make_engine(default="DONE")

    engine.worker.stop()
    engine.start_worker()
    first_thread = engine.worker._thread
    engine.start_worker()

    assert engine.worker._thread is first_thread
    engine.stop_worker()
    assert engine.worker_status()["running"] is False


def test_poll_once_requires_started_worker(make_engine) -> None:
    engine, _ = make_engine(default="DONE")
    engine.create_task("alice", "goal")

    assert engine.worker.poll_once() == []


def test_run_task_claims_specific_task(make_engine) -> None:
    engine, _ = make_engine(default="DONE")
    first = engine.create_task("alice", "first")
    second = engine.create_task("alice", "second", priority=10)

    outcome = engine.worker.run_task(first.task_id)

    assert outcome is not None
    assert outcome.status == "completed"
    assert engine.get_task(first.task_id).status == "completed"
    assert engine.get_task(second.task_id).status == "pending"
    assert engine.worker.run_task(first.task_id) is None


def test_run_pending_respects_priority_and_limit(make_engine) -> None:
    engine, _ = make_engine(default="DONE")
    low = engine.create_task("alice", "low", priority=1)
    high = engine.create_task("alice", "high", priority=90)

    assert engine.worker.run_pending(max_tasks=1) == [high.task_id]
    assert engine.get_task(low.task_id).status == "pending"
    assert engine.run_pending() == [low.task_id]


def test_unexpected_loop_error_fails_the_task(make_engine) -> None:
    engine, _ = make_engine([RuntimeError("model exploded")])
    task = engine.create_task("alice", "goal")

    with engine.subscribe(task.task_id) as subscription:
        engine.run_pending()
        events = subscription.drain()

    task = engine.get_task(task.task_id)
    assert task.status == "failed"
    assert task.error_type == "RuntimeError"
    assert task.error == "RuntimeError: model exploded"
    assert events[-1].type == "task_failed"
    assert engine.worker_status()["active_tasks"] == 0


def test_two_workers_never_run_the_same_task(make_engine) -> None:
    engine, llm = make_engine(default="DONE")
    task_ids = [engine.create_task("alice", f"goal {index}").task_id for index in range(8)]
    workers = [
        Worker(queue=engine.queue, loop=engine.loop, poll_interval_s=0.01, max_concurrent=2)
        for _ in range(2)
    ]

    for worker in workers:
        worker.start()
    try:
        assert _wait_until(
            lambda: all(engine.get_task(task_id).status == "completed" for task_id in task_ids)
        )
    finally:
        for worker in workers:
            worker.stop()

    assert len(llm.calls) == len(task_ids)
    for task_id in task_ids:
        assert len(engine.get_steps(task_id)) == 1
