from pathlib import Path
from unittest.mock import Mock

import pytest

from forgewatch_engine.scheduler import TriggerScheduler
from forgewatch_engine.scm_handler import CommitCheckResult

REPO_URL = "https://gitlab.local/team/app.git"


@pytest.fixture
def polled_job(make_job):
    def _make(**overrides):
        data = {
            "git": {"repo_url": REPO_URL, "branch": "main"},
            "schedule": {"trigger_method": "polling", "auto_check": True, "polling_seconds": 10},
        }
        data.update(overrides)
        return make_job(**data)
    return _make


@pytest.fixture
def harness(polled_job):
    """Scheduler wired to mocked jobs, queue and git."""
    jobs = {"job-1": polled_job()}
    job_manager = Mock()
    job_manager.get_job.side_effect = jobs.get
    job_manager.get_decrypted_job.side_effect = jobs.get
    job_manager.list_jobs.side_effect = lambda: list(jobs.values())
    work_queue = Mock()
    work_queue.has_pending.return_value = False
    work_queue.add_job.side_effect = lambda *args, **kwargs: f"q-{work_queue.add_job.call_count}"
    scm = Mock()
    scheduler = TriggerScheduler(job_manager, work_queue, scm, lambda job: Path("/tmp/ws/app"))
    yield scheduler, jobs, work_queue, scm
    scheduler.shutdown()


def check(remote, local):
    return CommitCheckResult(ok=True, has_new=remote != local, remote_hash=remote, local_hash=local)


def test_remote_advance_enqueues_once(harness):
    scheduler, _, work_queue, scm = harness
    scm.check_new_commit_and_pull.side_effect = [check("A", "A"), check("B", "A"), check("B", "A")]

    assert scheduler.check_job("job-1") is None
    assert scheduler.check_job("job-1") == "q-1"
    assert scheduler.check_job("job-1") is None

    work_queue.add_job.assert_called_once()
    args, kwargs = work_queue.add_job.call_args
    assert args[:3] == ("job-1", "demo", "medium")
    assert kwargs["metadata"] == {"source": "polling", "commit_hash": "B", "branch": "main",
                                  "skip_git_check": True}
    assert scm.check_new_commit_and_pull.call_args.kwargs["do_pull"] is False


def test_extra_branch_with_new_commit(harness, polled_job):
    scheduler, jobs, work_queue, scm = harness
    jobs["job-1"] = polled_job(git={"repo_url": REPO_URL, "branch": "main",
                                    "branches": [{"name": "develop", "tag_prefix": "dev"}]})
    scm.check_new_commit_and_pull.side_effect = [check("A", "A"), check("D", "A")]

    assert scheduler.check_job("job-1") == "q-1"
    assert work_queue.add_job.call_args.kwargs["metadata"]["branch"] == "develop"


def test_without_working_copy_compares_remote_tip(harness):
    scheduler, _, work_queue, scm = harness
    scm.check_new_commit_and_pull.return_value = CommitCheckResult(ok=False, error="repo_not_exists")
    scm.get_remote_hash.return_value = "A"

    assert scheduler.check_job("job-1") == "q-1"
    assert scheduler.check_job("job-1") is None
    assert work_queue.add_job.call_count == 1


def test_failed_check_enqueues_nothing(harness):
    scheduler, _, work_queue, scm = harness
    scm.check_new_commit_and_pull.return_value = CommitCheckResult(ok=False, error="fetch_failed")
    assert scheduler.check_job("job-1") is None
    work_queue.add_job.assert_not_called()


def test_pending_job_is_not_checked(harness):
    scheduler, _, work_queue, scm = harness
    work_queue.has_pending.return_value = True
    assert scheduler.check_job("job-1") is None
    scm.check_new_commit_and_pull.assert_not_called()


def test_restart_arms_only_pollable_jobs(harness, polled_job):
    scheduler, jobs, _, _ = harness
    jobs["webhook"] = polled_job(id="webhook", schedule={"trigger_method": "webhook", "auto_check": True})
    jobs["manual"] = polled_job(id="manual", schedule={"auto_check": False})
    jobs["off"] = polled_job(id="off", enabled=False)
    jobs["hybrid"] = polled_job(id="hybrid", schedule={"trigger_method": "hybrid", "auto_check": True,
                                                       "polling_seconds": 60})
    jobs["too-fast"] = polled_job(id="too-fast", schedule={"auto_check": True, "polling_seconds": 2})

    status = scheduler.restart()
    assert status["running"]
    assert status["active_job_count"] == 2
    monitored = {m["job_id"]: m for m in status["monitored_jobs"]}
    assert set(monitored) == {"job-1", "hybrid"}
    assert monitored["hybrid"]["polling_seconds"] == 60
    assert monitored["job-1"]["next_run"]

    scheduler.stop()
    assert scheduler.status() == {"running": False, "active_job_count": 0, "monitored_jobs": []}


def test_restart_reloads_jobs(harness):
    scheduler, _, _, _ = harness
    scheduler.restart(reload_jobs=True)
    scheduler.job_manager.reload_jobs.assert_called_once()


def test_disabled_job_cancels_its_timer(harness):
    scheduler, jobs, work_queue, scm = harness
    scheduler.restart()
    jobs["job-1"].enabled = False
    assert scheduler.check_job("job-1") is None
    assert scheduler.status()["active_job_count"] == 0
    scm.check_new_commit_and_pull.assert_not_called()


def test_deleted_job_cancels_its_timer(harness):
    scheduler, jobs, _, _ = harness
    scheduler.restart()
    del jobs["job-1"]
    assert scheduler.check_job("job-1") is None
    assert not scheduler.status()["running"]


def test_dispatch_skips_job_already_in_flight(harness):
    scheduler, _, _, _ = harness
    scheduler._pool = Mock()
    scheduler._dispatch("job-1")
    scheduler._dispatch("job-1")
    scheduler._pool.submit.assert_called_once()
