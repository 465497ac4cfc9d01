import re
import threading
from pathlib import Path
from typing import Dict, Optional, Any, List, Tuple

from .exceptions import JobConfigError, BuildFailedError, SCMConnectionError, BuildSetupError
from .history import HistoryManager, BuildStatus
from .job import Job, BranchRule
from .job_manager import JobManager
from .logger_setup import logger, safe_name
from .scm_handler import SCMHandler
from .settings import RunnerSettings
from .strategies.base import BuildContext, BuildResult, record_failed_build
from .strategies.registry import get_strategy

REPO_DIR_NAME = "repo"
BUILDER_DIR_NAME = "builder"


def repo_name_from_url(repo_url: str) -> str:
    if not repo_url:
        return "unknown-repo"
    name = re.sub(r"\.git$", "", repo_url.rstrip("/")).split("/")[-1]
    return re.sub(r"[^a-zA-Z0-9_-]", "-", name) or "unknown-repo"


class BuildExecutor:
    """Prepares working copies and hands jobs to their build strategy."""

    def __init__(self, job_manager: JobManager, history: HistoryManager, settings: RunnerSettings,
                 scm: Optional[SCMHandler] = None):
        self.job_manager = job_manager
        self.history = history
        self.settings = settings
        self.scm = scm or SCMHandler()
        self.logger = logger
        self.repo_root = Path(settings.workspace_root) / REPO_DIR_NAME
        self.builder_root = Path(settings.workspace_root) / BUILDER_DIR_NAME
        self._repo_locks: Dict[str, threading.Lock] = {}
        self._repo_locks_guard = threading.Lock()

    def _repo_lock(self, repo_path: Path) -> threading.Lock:
        key = str(Path(repo_path).resolve())
        with self._repo_locks_guard:
            return self._repo_locks.setdefault(key, threading.Lock())

    def repo_path_for(self, job: Job) -> Optional[Path]:
        if not job.git:
            return None
        return self.repo_root / repo_name_from_url(job.git.repo_url)

    def builder_dir_for(self, job: Job) -> Path:
        return self.builder_root / f"{safe_name(job.name)}-{job.id}"

    def _prepare_dirs(self, job: Job) -> Path:
        builder_dir = self.builder_dir_for(job)
        try:
            self.repo_root.mkdir(parents=True, exist_ok=True)
            builder_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildSetupError(f"Cannot create working directories under {self.settings.workspace_root}: {e}")
        return builder_dir

    def execute_job_build(self, job: Job, metadata: Optional[Dict[str, Any]] = None) -> BuildResult:
        """Checks out the job's source and runs its strategy.

        ``job`` must already carry decrypted credentials. Returns a ``skipped``
        result when no branch has a new commit.
        """
        metadata = metadata or {}
        self.logger.info(f"[JOB] Starting build for job: {job.name} ({job.id})")
        requested_branch = metadata.get("branch") or (job.git.branch if job.git else None)
        try:
            builder_dir = self._prepare_dirs(job)
        except BuildSetupError as e:
            self.logger.error(f"[JOB] {e}")
            return record_failed_build(job, self.history, str(e), self.settings.build_logs_dir,
                                       branch=requested_branch, commit_hash=metadata.get("commit_hash"))

        context = BuildContext(
            job=job,
            builder_dir=builder_dir,
            logs_dir=self.settings.build_logs_dir,
            env_overrides=dict(metadata.get("env") or {}),
            build_tool=self.settings.build_tool,
            scm=self.scm,
        )

        repo_path = self.repo_path_for(job)
        if repo_path is None:
            # pipeline jobs may run without any repository
            return get_strategy(job.build.method).execute(context, self.history)

        with self._repo_lock(repo_path):
            try:
                commit_hash, branch = self._sync_working_copy(job, repo_path, metadata)
            except SCMConnectionError as e:
                self.logger.error(f"[JOB] {e}")
                return record_failed_build(job, self.history, str(e), self.settings.build_logs_dir,
                                           branch=requested_branch, commit_hash=metadata.get("commit_hash"))

            if commit_hash is None:
                self.logger.info(f"[JOB] No new commit for job '{job.name}', nothing to build")
                return BuildResult("", BuildStatus.SKIPPED, "No new commit", reason="no_new_commit")

            context.repo_path = repo_path
            context.commit_hash = commit_hash
            context.branch = branch
            context.branch_rule = job.git.rule_for(branch) or BranchRule(name=branch)
            context.commit_checked = True
            result = get_strategy(job.build.method).execute(context, self.history)
            result.commit_hash = result.commit_hash or commit_hash
            result.branch = branch
            return result

    def _sync_working_copy(self, job: Job, repo_path: Path, metadata: Dict[str, Any]) -> Tuple[Optional[str], str]:
        """Returns (commit hash to build, branch), or (None, branch) when there is nothing new."""
        git_config = job.git
        fresh_clone = not (repo_path / ".git").exists()
        self.scm.ensure_clone(repo_path, git_config.repo_url, git_config.branch, git_config.token,
                              git_config.provider)

        if metadata.get("skip_git_check") or metadata.get("commit_hash"):
            branch = metadata.get("branch") or git_config.branch
            check = self.scm.check_new_commit_and_pull(repo_path, branch, git_config.repo_url, git_config.token,
                                                       git_config.provider, do_pull=True)
            if not check.ok:
                raise SCMConnectionError(f"Pull failed for branch {branch}: {check.error}")
            return metadata.get("commit_hash") or check.remote_hash or check.local_hash, branch

        rules: List[BranchRule] = git_config.branch_rules()
        last_error = None
        checked = 0
        for rule in rules:
            check = self.scm.check_new_commit_and_pull(repo_path, rule.name, git_config.repo_url, git_config.token,
                                                       git_config.provider, do_pull=True)
            if not check.ok:
                self.logger.warning(f"[JOB] Commit check failed for {job.name} branch {rule.name}: {check.error}")
                last_error = f"{rule.name}: {check.error}"
                continue
            checked += 1
            if check.has_new:
                return check.remote_hash, rule.name
            if fresh_clone and rule.name == git_config.branch and check.local_hash:
                # first checkout of the primary branch counts as new work
                return check.local_hash, rule.name
        if rules and not checked:
            raise SCMConnectionError(f"Commit check failed on every branch (last {last_error})")
        return None, git_config.branch

    def run_queue_entry(self, entry) -> Dict[str, Any]:
        """Executor function for the work queue.

        Raises BuildFailedError for a failed build (the queue may retry) and
        JobConfigError for problems a retry cannot fix.
        """
        job = self.job_manager.get_decrypted_job(entry.job_id)
        if job is None:
            raise JobConfigError(f"Job '{entry.job_id}' not found")
        job.validate()

        result = self.execute_job_build(job, entry.metadata)
        if result.status != BuildStatus.SKIPPED:
            self.job_manager.update_job_stats(job.id, result.succeeded, result.commit_hash)
        if result.succeeded and result.tag_number:
            self.job_manager.persist_image_tag(job.id, result.tag_number)
        if result.status == BuildStatus.FAILED:
            if result.commit_hash and job.git:
                # a retry rebuilds this commit instead of scanning for a newer one
                entry.metadata.update(commit_hash=result.commit_hash, branch=result.branch or job.git.branch,
                                      skip_git_check=True)
            raise BuildFailedError(result.failure_reason or result.message, build_id=result.build_id or None)
        return result.to_dict()

    def get_build_log_content(self, build_id: str, max_lines: Optional[int] = None) -> Optional[str]:
        record = self.history.get(build_id)
        if record is None or not record.log_file:
            return None
        log_path = Path(record.log_file)
        if not log_path.exists():
            return "Log file not found."
        try:
            with open(log_path, "r", encoding="utf-8", errors="replace") as f:
                if max_lines:
                    lines = f.readlines()
                    return "".join(lines[-max_lines:])
                return f.read()
        except OSError as e:
            self.logger.error(f"Error reading log file {log_path}: {e}")
            return f"Error reading log file: {e}"
