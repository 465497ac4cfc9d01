import threading
from unittest.mock import Mock, patch

import pytest

from forgewatch_engine.exceptions import BuildFailedError, JobConfigError, QueueError
from forgewatch_engine.work_queue import WorkQueue, sample_system_load


@pytest.fixture
def make_queue():
    queues = []

    def _make(executor=None, load=10.0, **kwargs):
        queue = WorkQueue(executor or Mock(return_value={"status": "success"}), load_sampler=lambda: load,
                          **kwargs)
        queues.append(queue)
        return queue
    yield _make
    for queue in queues:
        queue.stop(wait=True)


def run_once(queue):
    future = queue.process_queue()
    assert future is not None
    future.result(timeout=5)


def test_priority_order(make_queue):
    queue = make_queue()
    queue.add_job("a", "low", "low")
    queue.add_job("b", "high", "high")
    queue.add_job("c", "medium", "medium")
    queue.add_job("d", "medium-2", "medium")
    assert [e["name"] for e in queue.get_status()["queue"]] == ["high", "medium", "medium-2", "low"]


def test_dequeue_order_follows_priority(make_queue):
    seen = []
    queue = make_queue(executor=lambda entry: seen.append(entry.name))
    for name in ("low", "high", "medium"):
        queue.add_job(name, name, name)
    for _ in range(3):
        run_once(queue)
    assert seen == ["high", "medium", "low"]


def test_high_load_blocks_admission(make_queue):
    executor = Mock()
    queue = make_queue(executor=executor, load=85.0, resource_threshold=70)
    queue.add_job("job", "urgent", "high")
    assert queue.process_queue() is None
    assert queue.get_stats()["queue_length"] == 1
    executor.assert_not_called()


def test_concurrency_limit(make_queue):
    release = threading.Event()
    started = threading.Event()

    def slow(entry):
        started.set()
        release.wait(5)

    queue = make_queue(executor=slow, max_concurrent_jobs=1)
    queue.add_job("a")
    queue.add_job("b")
    first = queue.process_queue()
    assert started.wait(5)
    assert queue.process_queue() is None
    assert queue.get_stats()["running_jobs"] == 1
    release.set()
    first.result(timeout=5)
    run_once(queue)
    assert queue.get_stats()["total_completed"] == 2


def test_completed_entry(make_queue):
    queue = make_queue()
    queue.add_job("job", metadata={"source": "api"})
    run_once(queue)
    status = queue.get_status()
    assert status["completed"][0]["result"] == {"status": "success"}
    assert status["completed"][0]["status"] == "completed"
    stats = queue.get_stats()
    assert stats["total_queued"] == 1
    assert stats["total_completed"] == 1
    assert stats["average_execution_time"] >= 0


def test_retries_until_exhausted(make_queue):
    executor = Mock(side_effect=BuildFailedError("exit code 1"))
    queue = make_queue(executor=executor)
    queue.add_job("job", max_retries=3)

    run_once(queue)
    entry = queue.get_status()["queue"][0]
    assert entry["retry_count"] == 1
    assert entry["status"] == "queued"

    run_once(queue)
    run_once(queue)
    status = queue.get_status()
    assert status["queue"] == []
    assert status["failed"][0]["retry_count"] == 3
    assert status["failed"][0]["error"] == "exit code 1"
    assert queue.process_queue() is None
    assert executor.call_count == 3
    assert queue.get_stats()["total_failed"] == 1


def test_zero_retries_fails_on_first_error(make_queue):
    executor = Mock(side_effect=BuildFailedError("exit code 1"))
    queue = make_queue(executor=executor, default_max_retries=3)
    queue.add_job("job", max_retries=0)
    run_once(queue)
    status = queue.get_status()
    assert status["queue"] == []
    assert status["failed"][0]["max_retries"] == 0
    assert executor.call_count == 1


def test_config_errors_are_not_retried(make_queue):
    queue = make_queue(executor=Mock(side_effect=JobConfigError("no pipeline_path")))
    queue.add_job("job", max_retries=3)
    run_once(queue)
    status = queue.get_status()
    assert status["queue"] == []
    assert status["failed"][0]["retry_count"] == 1


def test_unexpected_errors_are_retried(make_queue):
    queue = make_queue(executor=Mock(side_effect=[RuntimeError("boom"), "done"]))
    queue.add_job("job")
    run_once(queue)
    run_once(queue)
    assert queue.get_status()["completed"][0]["result"] == "done"


def test_add_job_validation(make_queue):
    queue = make_queue()
    with pytest.raises(QueueError):
        queue.add_job("job", priority="urgent")
    queue.add_job("job", entry_id="fixed")
    with pytest.raises(QueueError):
        queue.add_job("job", entry_id="fixed")
    assert queue.has_pending("job")
    assert not queue.has_pending("other")


def test_cancel_queued_entry(make_queue):
    queue = make_queue()
    entry_id = queue.add_job("job")
    assert queue.cancel(entry_id)
    assert not queue.cancel(entry_id)
    assert queue.process_queue() is None


def test_cancel_running_entry_drops_completion(make_queue):
    release = threading.Event()
    queue = make_queue(executor=lambda entry: release.wait(5))
    entry_id = queue.add_job("job")
    future = queue.process_queue()
    assert queue.cancel(entry_id)
    assert queue.get_status()["running"][0]["status"] == "cancelled"
    release.set()
    future.result(timeout=5)
    assert queue.get_status()["completed"] == []
    assert queue.get_stats()["running_jobs"] == 0


def test_pause_and_resume(make_queue):
    queue = make_queue()
    queue.add_job("job")
    queue.pause()
    assert queue.process_queue() is None
    assert queue.get_stats()["paused"]
    queue.resume()
    run_once(queue)


def test_update_config_persists(make_queue):
    settings = Mock()
    queue = make_queue(settings=settings)
    stats = queue.update_config(max_concurrent_jobs=3)
    assert stats["max_concurrent_jobs"] == 3
    settings.save_runtime_overrides.assert_called_once_with(max_concurrent_jobs=3)
    with pytest.raises(QueueError):
        queue.update_config(resource_threshold=0)
    with pytest.raises(QueueError):
        queue.update_config(max_concurrent_jobs=0)


def test_raised_concurrency_runs_every_admitted_entry(make_queue):
    release = threading.Event()
    executing = threading.Semaphore(0)

    def blocking(entry):
        executing.release()
        release.wait(10)

    queue = make_queue(executor=blocking, max_concurrent_jobs=1)
    queue.update_config(max_concurrent_jobs=6)
    for name in "abcdef":
        queue.add_job(name)
    futures = [queue.process_queue() for _ in range(6)]
    try:
        assert all(executing.acquire(timeout=5) for _ in range(6))
        assert queue.get_stats()["running_jobs"] == 6
    finally:
        release.set()
    for future in futures:
        future.result(timeout=5)
    assert queue.get_stats()["total_completed"] == 6


def test_background_loop_admits_entries(make_queue):
    done = threading.Event()
    queue = make_queue(executor=lambda entry: done.set(), tick_seconds=0.05)
    queue.start()
    assert queue.is_running
    queue.add_job("job")
    assert done.wait(5)


def test_sample_system_load_takes_the_higher_value():
    with patch("forgewatch_engine.work_queue.psutil.cpu_percent", return_value=30.0), \
            patch("forgewatch_engine.work_queue.psutil.virtual_memory", return_value=Mock(percent=62.5)):
        assert sample_system_load() == 62.5


def test_sample_system_load_failure_admits():
    with patch("forgewatch_engine.work_queue.psutil.cpu_percent", side_effect=OSError("no /proc")):
        assert sample_system_load() == 0.0