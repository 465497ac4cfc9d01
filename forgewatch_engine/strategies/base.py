import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, List

from ..exceptions import JobConfigError, BuildSetupError
from ..history import BuildRecord, BuildStatus, HistoryManager
from ..job import Job, BranchRule, BuildMethod
from ..logger_setup import logger, get_build_logger, close_build_logger
from ..scm_handler import SCMHandler


@dataclass
class BuildContext:
    job: Job  # decrypted copy, scoped to this execution
    repo_path: Optional[Path] = None
    commit_hash: Optional[str] = None
    branch: Optional[str] = None
    branch_rule: Optional[BranchRule] = None
    builder_dir: Optional[Path] = None
    logs_dir: Optional[Path] = None
    env_overrides: Dict[str, str] = field(default_factory=dict)
    commit_checked: bool = False
    build_tool: str = "docker"
    scm: Optional[SCMHandler] = None

    @property
    def tag_prefix(self) -> str:
        return self.branch_rule.tag_prefix if self.branch_rule else ""

    def secrets(self) -> List[str]:
        values = [self.job.build.image.registry_password]
        if self.job.git:
            values.append(self.job.git.token)
        return [v for v in values if v]


@dataclass
class BuildResult:
    build_id: str
    status: BuildStatus
    message: str = ""
    failure_reason: Optional[str] = None
    reason: Optional[str] = None
    tag_number: Optional[str] = None
    tag_text: Optional[str] = None
    image: Optional[str] = None
    commit_hash: Optional[str] = None
    branch: Optional[str] = None
    log_file: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCESS

    def to_dict(self) -> dict:
        data = {k: v for k, v in self.__dict__.items() if v is not None}
        data["status"] = self.status.value
        return data


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_failed_build(job: Job, history: HistoryManager, error: str, logs_dir: Optional[Path] = None,
                        branch: Optional[str] = None, commit_hash: Optional[str] = None) -> BuildResult:
    """Records a build that failed before its strategy could start (checkout, workspace setup)."""
    build_id = str(uuid.uuid4())
    build_logger, log_path = get_build_logger(job.name, build_id, logs_dir)
    started = _now()
    history.add_history(BuildRecord(
        id=build_id,
        name=job.name,
        method=job.build.method.value,
        status=BuildStatus.RUNNING,
        start_time=started,
        job_id=job.id,
        commit_hash=commit_hash,
        branch=branch,
        log_file=log_path,
    ))
    build_logger.error(f"Build {build_id} for job '{job.name}' could not start: {error}")
    history.update_history(build_id, {"status": BuildStatus.FAILED, "end_time": _now(), "duration": 0.0,
                                      "error": error})
    close_build_logger(build_logger)
    return BuildResult(build_id, BuildStatus.FAILED, error, failure_reason=error, commit_hash=commit_hash,
                       branch=branch, log_file=log_path)


class BuildStrategy(ABC):
    """One way of turning a job into a build.

    ``execute`` owns the history record: it is added as ``running`` before any
    work happens and is always finalized before ``execute`` returns or raises.
    Subclasses implement ``run`` and report through a BuildResult.
    """

    method: BuildMethod

    def execute(self, context: BuildContext, history: HistoryManager) -> BuildResult:
        job = context.job
        build_id = str(uuid.uuid4())
        build_logger, log_path = get_build_logger(job.name, build_id, context.logs_dir)
        started = time.monotonic()
        history.add_history(BuildRecord(
            id=build_id,
            name=job.name,
            method=self.method.value,
            status=BuildStatus.RUNNING,
            start_time=_now(),
            job_id=job.id,
            commit_hash=context.commit_hash,
            branch=context.branch,
            log_file=log_path,
        ))
        build_logger.info(f"Build {build_id} for job '{job.name}' started ({self.method.value})")

        try:
            result = self.run(context, build_id, build_logger)
        except JobConfigError as ce:
            build_logger.error(f"Configuration error: {ce}")
            self._finalize(history, BuildResult(build_id, BuildStatus.FAILED, str(ce), failure_reason=str(ce)),
                           started, build_logger, context)
            close_build_logger(build_logger)
            raise
        except BuildSetupError as se:
            build_logger.error(f"Build setup failed: {se}")
            result = BuildResult(build_id, BuildStatus.FAILED, str(se), failure_reason=str(se))
        except Exception as e:
            build_logger.error(f"Unexpected error during build: {e}", exc_info=True)
            result = BuildResult(build_id, BuildStatus.FAILED, f"Unexpected error: {e}", failure_reason=str(e))

        result.log_file = log_path
        self._finalize(history, result, started, build_logger, context)
        close_build_logger(build_logger)
        return result

    def _finalize(self, history: HistoryManager, result: BuildResult, started: float,
                  build_logger: logging.Logger, context: BuildContext):
        duration = round(time.monotonic() - started, 3)
        patch = {
            "status": result.status,
            "end_time": _now(),
            "duration": duration,
        }
        if result.commit_hash or context.commit_hash:
            patch["commit_hash"] = result.commit_hash or context.commit_hash
        if result.status == BuildStatus.FAILED:
            patch["error"] = result.failure_reason or result.message
        if result.reason:
            patch["reason"] = result.reason
        history.update_history(result.build_id, patch)
        log = build_logger.error if result.status == BuildStatus.FAILED else build_logger.info
        log(f"Build {result.build_id} finished: {result.status.value} in {duration}s. {result.message}")
        logger.debug(f"History record {result.build_id} finalized as {result.status.value}")

    @abstractmethod
    def run(self, context: BuildContext, build_id: str, build_logger: logging.Logger) -> BuildResult:
        ...
