"""Declarative JSON pipelines.

A pipeline file looks like::

    {
      "pipeline_name": "backend",
      "working_directory": "/srv/builds/backend",
      "environment_vars": {"OUT": "${REPO_PATH}/dist"},
      "check_commit": true,
      "branch": "main",
      "repo_url": "https://git.example.com/team/backend.git",
      "steps": [
        {"step_order": 1, "step_name": "test", "step_exec": "make test", "timeout_seconds": 600},
        {"step_order": 2, "step_name": "lint", "step_exec": "make lint", "on_fail": "continue"}
      ]
    }

Steps run in ``step_order`` (ties keep file order), each through a shell in the
working directory, with ``environment_vars`` resolved once before the first step.
"""
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Any

from ..exceptions import JobConfigError
from ..history import BuildStatus
from ..job import BuildMethod
from ..process_runner import run_command
from ..scm_handler import normalize_repo_url
from .base import BuildStrategy, BuildContext, BuildResult

VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_pipeline(pipeline_path: Path) -> Dict[str, Any]:
    if not pipeline_path.is_file():
        raise JobConfigError(f"Pipeline JSON not found: {pipeline_path}")
    try:
        with open(pipeline_path, "r", encoding="utf-8") as f:
            spec = json.load(f)
    except json.JSONDecodeError as e:
        raise JobConfigError(f"JSON parse error in {pipeline_path}: {e}")
    if not isinstance(spec, dict):
        raise JobConfigError(f"Pipeline {pipeline_path} must be a JSON object")
    if not isinstance(spec.get("steps", []), list):
        raise JobConfigError(f"Pipeline {pipeline_path}: 'steps' must be a list")
    return spec


def resolve_pipeline_path(context: BuildContext) -> Path:
    path = Path(context.job.build.pipeline_path).expanduser()
    if path.is_absolute():
        return path
    for base in (context.repo_path, context.builder_dir):
        if base and (Path(base) / path).exists():
            return Path(base) / path
    return path.resolve()


def resolve_environment(env_map: Dict[str, Any], base_env: Dict[str, str]) -> Dict[str, str]:
    """Substitutes ``${NAME}`` in order; later variables may use earlier ones. Unknown names become empty."""
    resolved = dict(base_env)
    for key, value in (env_map or {}).items():
        resolved[str(key)] = VAR_PATTERN.sub(lambda m: str(resolved.get(m.group(1), "")), str(value))
    return resolved


def sort_steps(steps: List[dict]) -> List[dict]:
    def order(step):
        try:
            return float(step.get("step_order") or 0)
        except (TypeError, ValueError):
            return 0.0
    return sorted(steps, key=order)


def step_display_name(step: dict) -> str:
    return str(step.get("step_name") or step.get("step_id") or f"Step {step.get('step_order', '?')}")


def ignores_failure(step: dict) -> bool:
    return bool(step.get("ignore_failure")) or str(step.get("on_fail") or "").lower() == "continue"


class PipelineBuildStrategy(BuildStrategy):
    method = BuildMethod.PIPELINE

    def run(self, context: BuildContext, build_id: str, build_logger: logging.Logger) -> BuildResult:
        pipeline_path = resolve_pipeline_path(context)
        spec = load_pipeline(pipeline_path)
        pipeline_name = spec.get("pipeline_name") or pipeline_path.name
        working_dir = Path(spec.get("working_directory") or context.repo_path or os.getcwd())

        skipped = self._check_commit(spec, working_dir, context, build_id, build_logger)
        if skipped:
            return skipped

        base_env = dict(os.environ)
        base_env.update({k: str(v) for k, v in context.env_overrides.items()})
        base_env.setdefault("REPO_PATH", str(working_dir))
        env = resolve_environment(spec.get("environment_vars") or {}, base_env)

        build_logger.info(f"[PIPELINE] Start: {pipeline_name}")
        build_logger.info(f"[PIPELINE] Working dir: {working_dir}")
        try:
            working_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            build_logger.warning(f"[PIPELINE][WARN] Cannot create working dir: {working_dir} ({e})")

        had_error = False
        failure_reason: Optional[str] = None
        for step in sort_steps(spec.get("steps") or []):
            name = step_display_name(step)
            command = step.get("step_exec")
            build_logger.info(f"[STEP {step.get('step_order', '?')}] {name}")
            if not command:
                error = "no step_exec defined"
            else:
                build_logger.info(f"[STEP][EXEC] {command}")
                timeout = step.get("timeout_seconds")
                result = run_command(
                    str(command), build_logger, env=env, cwd=working_dir,
                    shell=step.get("shell") or None,
                    timeout=float(timeout) if isinstance(timeout, (int, float)) and timeout > 0 else None,
                    secrets=context.secrets(),
                )
                error = result.error
            if not error:
                continue
            had_error = True
            failure_reason = f"Step '{name}' failed: {error}"
            build_logger.error(f"[STEP][ERROR] {error}")
            if not ignores_failure(step):
                build_logger.error(f"[PIPELINE] Stop due to error in step: {name}")
                break
            build_logger.warning("[PIPELINE] Ignoring failure and continuing")

        build_logger.info(f"[PIPELINE] Completed: {pipeline_name} (had_error={had_error})")
        if had_error:
            return BuildResult(build_id, BuildStatus.FAILED, f"Pipeline {pipeline_name} failed",
                               failure_reason=failure_reason)
        return BuildResult(build_id, BuildStatus.SUCCESS, f"Pipeline {pipeline_name} completed")

    def _check_commit(self, spec: dict, working_dir: Path, context: BuildContext, build_id: str,
                      build_logger: logging.Logger) -> Optional[BuildResult]:
        """Returns a skipped result when the pipeline's repository has nothing new."""
        repo_url = spec.get("repo_url")
        if spec.get("check_commit") is not True or not repo_url:
            return None
        git_config = context.job.git
        same_repo = bool(git_config) and normalize_repo_url(git_config.repo_url) == normalize_repo_url(repo_url)
        if same_repo and (context.commit_checked or context.commit_hash):
            build_logger.info("[PIPELINE] Commit already resolved for this run, skipping commit check")
            return None
        if context.scm is None:
            build_logger.warning("[PIPELINE][WARN] No git handler available, skipping commit check")
            return None

        branch = spec.get("branch") or "main"
        token = git_config.token if same_repo else None
        provider = git_config.provider if git_config else None
        build_logger.info(f"[PIPELINE] Checking new commit for branch: {branch}, repo: {repo_url}")
        check = context.scm.check_new_commit_and_pull(working_dir, branch, repo_url, token=token,
                                                      provider=provider, do_pull=False)
        if not check.ok:
            build_logger.warning(f"[PIPELINE][WARN] Commit check failed: {check.error}")
            return None
        if not check.has_new:
            build_logger.info("[PIPELINE] No new commit. Stopping pipeline.")
            return BuildResult(build_id, BuildStatus.SKIPPED, "No new commit", reason="no_new_commit",
                               commit_hash=check.local_hash or None)
        build_logger.info(f"[PIPELINE] New commit detected: {check.remote_hash}. Continuing.")
        return None
