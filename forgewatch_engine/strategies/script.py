import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import ScriptNotFound
from ..history import BuildStatus
from ..job import BuildMethod
from ..process_runner import run_command, resolve_shell
from ..tag_generator import split_tag, increment_number
from .base import BuildStrategy, BuildContext, BuildResult
from .image import resolve_image_tag

DEFAULT_SCRIPT_NAME = "build-script.sh"


def resolve_script_path(context: BuildContext) -> Path:
    """Relative script paths are looked up in the checkout first, then in the job's builder dir."""
    raw = context.job.build.script_path
    if not raw:
        return Path(context.builder_dir or ".") / DEFAULT_SCRIPT_NAME
    script = Path(raw).expanduser()
    if script.is_absolute():
        return script
    for base in (context.repo_path, context.builder_dir):
        if base and (Path(base) / script).exists():
            return Path(base) / script
    return script.resolve()


def build_script_env(context: BuildContext, base_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    job = context.job
    image = job.build.image
    tag = resolve_image_tag(context)
    parts = split_tag(tag)
    env = dict(os.environ if base_env is None else base_env)
    env.update({
        "IMAGE_NAME": image.image_name or "",
        "IMAGE_TAG": tag,
        "IMAGE_TAG_NUMBER": parts.number,
        "IMAGE_TAG_TEXT": parts.text,
        "AUTO_TAG_INCREMENT": "true" if image.auto_increment else "false",
        "REGISTRY_URL": image.registry_url or "",
        "REGISTRY_USERNAME": image.registry_username or "",
        "REGISTRY_PASSWORD": image.registry_password or "",
        "DOCKERFILE_PATH": image.dockerfile_path or "",
        "CONTEXT_PATH": image.context_path or (str(context.repo_path) if context.repo_path else ""),
        "GIT_BRANCH": context.branch or (job.git.branch if job.git else ""),
        "GIT_REPO_URL": job.git.repo_url if job.git else "",
        "GIT_COMMIT": context.commit_hash or "",
        "REPO_PATH": str(context.repo_path) if context.repo_path else "",
        "JOB_ID": job.id,
        "JOB_NAME": job.name,
        "JOB_WORKDIR": str(context.builder_dir) if context.builder_dir else "",
    })
    env.update({k: str(v) for k, v in context.env_overrides.items()})
    return env


def script_command(script_path: Path) -> List[str]:
    if sys.platform == "win32" and script_path.suffix.lower() == ".ps1":
        return ["powershell", "-File", str(script_path)]
    if os.access(script_path, os.X_OK):
        return [str(script_path)]
    return [resolve_shell() or "sh", str(script_path)]


class ScriptBuildStrategy(BuildStrategy):
    method = BuildMethod.SCRIPT

    def run(self, context: BuildContext, build_id: str, build_logger: logging.Logger) -> BuildResult:
        script_path = resolve_script_path(context)
        if not script_path.is_file():
            raise ScriptNotFound(str(script_path))

        if context.repo_path and Path(context.repo_path).exists():
            cwd = Path(context.repo_path)
        else:
            cwd = script_path.parent
        env = build_script_env(context)
        build_logger.info(f"[SCRIPT] Running {script_path} in {cwd}")

        result = run_command(script_command(script_path), build_logger, env=env, cwd=cwd,
                             secrets=context.secrets())
        if not result.ok:
            return BuildResult(build_id, BuildStatus.FAILED, f"Script {script_path.name} failed",
                               failure_reason=result.error)

        outcome = BuildResult(build_id, BuildStatus.SUCCESS, f"Script {script_path.name} completed")
        image = context.job.build.image
        if image.auto_increment:
            outcome.tag_number = increment_number(image.tag_number)
            outcome.tag_text = image.tag_text
        return outcome
