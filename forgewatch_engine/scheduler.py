import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Tuple

import schedule

from .job import Job, MIN_POLLING_SECONDS
from .job_manager import JobManager
from .logger_setup import logger
from .scm_handler import SCMHandler
from .work_queue import WorkQueue, Priority

RUNNER_IDLE_SECONDS = 1.0


class TriggerScheduler:
    """Polls the remotes of auto-checked jobs and feeds new commits into the work queue.

    Every job gets its own ``schedule`` job on a private Scheduler, tagged with
    the job id. Ticks are handed to a small pool; a job never has two ticks in
    flight at once.
    """

    def __init__(self, job_manager: JobManager, work_queue: WorkQueue, scm: SCMHandler,
                 repo_path_for: Callable[[Job], Optional[Path]], max_workers: int = 4):
        self.job_manager = job_manager
        self.work_queue = work_queue
        self.scm = scm
        self.repo_path_for = repo_path_for

        self._scheduler = schedule.Scheduler()
        self._timers: Dict[str, schedule.Job] = {}
        self._last_hashes: Dict[Tuple[str, str], str] = {}
        self._in_flight: Set[str] = set()
        self._lock = threading.RLock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="forgewatch-poll")
        self._stop_event = threading.Event()
        self._runner: Optional[threading.Thread] = None
        self._running = False

    # --- lifecycle -----------------------------------------------------

    def restart(self, reload_jobs: bool = False) -> dict:
        """Tears down every timer and arms one per eligible job."""
        if reload_jobs:
            self.job_manager.reload_jobs()
        with self._lock:
            self._teardown()
            for job in self.job_manager.list_jobs():
                if self._is_pollable(job):
                    self._arm(job)
            self._running = bool(self._timers)
        if self._running:
            self._ensure_runner()
            logger.info(f"[SCHEDULER] Polling {len(self._timers)} job(s)")
        else:
            logger.info("[SCHEDULER] No enabled job has polling auto-check turned on")
        return self.status()

    def stop(self):
        with self._lock:
            self._teardown()
            self._running = False
        self._stop_event.set()
        if self._runner:
            self._runner.join(timeout=RUNNER_IDLE_SECONDS * 2)
            self._runner = None
        logger.info("[SCHEDULER] Stopped")

    def shutdown(self):
        self.stop()
        self._pool.shutdown(wait=False)

    def status(self) -> dict:
        with self._lock:
            monitored = []
            for job_id, timer in self._timers.items():
                job = self.job_manager.get_job(job_id)
                monitored.append({
                    "job_id": job_id,
                    "name": job.name if job else job_id,
                    "polling_seconds": timer.interval,
                    "next_run": timer.next_run.isoformat() if timer.next_run else None,
                })
            return {"running": self._running, "active_job_count": len(self._timers), "monitored_jobs": monitored}

    def _teardown(self):
        self._scheduler.clear()
        self._timers.clear()

    def _ensure_runner(self):
        if self._runner and self._runner.is_alive():
            return
        self._stop_event.clear()
        self._runner = threading.Thread(target=self._run, name="forgewatch-scheduler", daemon=True)
        self._runner.start()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                with self._lock:
                    self._scheduler.run_pending()
            except Exception as e:
                logger.error(f"[SCHEDULER] run_pending failed: {e}", exc_info=True)
            self._stop_event.wait(RUNNER_IDLE_SECONDS)

    # --- timers --------------------------------------------------------

    @staticmethod
    def _is_pollable(job: Job) -> bool:
        return bool(job.enabled and job.schedule.auto_check and job.schedule.accepts_polling and job.git)

    def _arm(self, job: Job) -> bool:
        seconds = job.schedule.polling_seconds
        if seconds < MIN_POLLING_SECONDS:
            logger.warning(f"[SCHEDULER] Job '{job.name}' polls every {seconds}s, below the {MIN_POLLING_SECONDS}s "
                           f"floor. Not scheduled.")
            return False
        self._timers[job.id] = self._scheduler.every(seconds).seconds.do(self._dispatch, job.id).tag(job.id)
        logger.info(f"[SCHEDULER] Job '{job.name}' ({job.schedule.trigger_method.value}) polls every {seconds}s")
        return True

    def _cancel(self, job_id: str, reason: str):
        with self._lock:
            timer = self._timers.pop(job_id, None)
            if timer:
                self._scheduler.cancel_job(timer)
            self._running = bool(self._timers)
        if timer:
            logger.info(f"[SCHEDULER] Stopped polling job {job_id}: {reason}")

    def _dispatch(self, job_id: str):
        with self._lock:
            if job_id in self._in_flight:
                return
            self._in_flight.add(job_id)
        self._pool.submit(self._tick, job_id)

    def _tick(self, job_id: str):
        try:
            self.check_job(job_id)
        except Exception as e:
            logger.error(f"[SCHEDULER] Poll of job {job_id} failed: {e}", exc_info=True)
        finally:
            with self._lock:
                self._in_flight.discard(job_id)

    # --- polling -------------------------------------------------------

    def check_job(self, job_id: str) -> Optional[str]:
        """One polling pass over a job's branches. Returns the queue entry id when something was enqueued."""
        job = self.job_manager.get_job(job_id)
        if job is None:
            self._cancel(job_id, "job no longer exists")
            return None
        if not job.schedule.accepts_polling:
            self._cancel(job_id, "switched to webhook-only")
            return None
        if not job.enabled or not job.schedule.auto_check or not job.git:
            self._cancel(job_id, "disabled or auto-check turned off")
            return None
        if self.work_queue.has_pending(job_id):
            logger.debug(f"[SCHEDULER] Job '{job.name}' is queued or running, skipping this cycle")
            return None

        job = self.job_manager.get_decrypted_job(job_id)
        repo_path = self.repo_path_for(job)
        for rule in job.git.branch_rules():
            remote_hash = self._new_remote_hash(job, rule.name, repo_path)
            if not remote_hash:
                continue
            key = (job.id, rule.name)
            with self._lock:
                if self._last_hashes.get(key) == remote_hash:
                    continue
                self._last_hashes[key] = remote_hash
            logger.info(f"[SCHEDULER] New commit {remote_hash[:8]} on {rule.name} for job '{job.name}'")
            return self.work_queue.add_job(
                job.id, job.name, Priority.MEDIUM.value,
                metadata={"source": "polling", "commit_hash": remote_hash, "branch": rule.name,
                          "skip_git_check": True},
            )
        logger.debug(f"[SCHEDULER] No new commit on any branch of job '{job.name}'")
        return None

    def _new_remote_hash(self, job: Job, branch: str, repo_path: Optional[Path]) -> Optional[str]:
        git_config = job.git
        check = self.scm.check_new_commit_and_pull(repo_path, branch, git_config.repo_url, git_config.token,
                                                   git_config.provider, do_pull=False)
        if check.error in ("repo_not_exists", "repo_not_configured"):
            # nothing checked out yet: compare the remote tip only
            return self.scm.get_remote_hash(git_config.repo_url, branch, git_config.token, git_config.provider)
        if not check.ok:
            logger.warning(f"[SCHEDULER] Commit check failed for '{job.name}' branch {branch}: {check.error}")
            return None
        return check.remote_hash if check.has_new else None
