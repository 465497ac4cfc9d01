import logging
import shutil

from ..exceptions import BuildSetupError
from ..history import BuildStatus
from ..job import BuildMethod
from ..process_runner import run_series
from ..tag_generator import next_tag, increment_number
from .base import BuildStrategy, BuildContext, BuildResult


def resolve_image_tag(context: BuildContext) -> str:
    image = context.job.build.image
    return next_tag(image.tag_number, image.tag_text, image.auto_increment, context.tag_prefix) or "latest"


class ImageBuildStrategy(BuildStrategy):
    """Builds (and optionally pushes) a container image with the external build tool."""

    method = BuildMethod.IMAGE

    def run(self, context: BuildContext, build_id: str, build_logger: logging.Logger) -> BuildResult:
        image = context.job.build.image
        tool = shutil.which(context.build_tool)
        if not tool:
            raise BuildSetupError(f"Build tool '{context.build_tool}' not found on PATH")

        tag = resolve_image_tag(context)
        image_ref = f"{image.image_name}:{tag}"
        context_path = image.context_path or (str(context.repo_path) if context.repo_path else ".")
        build_logger.info(f"[IMAGE] Building {image_ref} from {context_path}")

        commands = []
        stdin_for = {}
        if image.registry_url and image.registry_username and image.registry_password:
            stdin_for[len(commands)] = image.registry_password
            commands.append([tool, "login", image.registry_url, "-u", image.registry_username, "--password-stdin"])
        build_cmd = [tool, "build"]
        if image.dockerfile_path:
            build_cmd += ["-f", image.dockerfile_path]
        build_cmd += ["-t", image_ref, context_path]
        commands.append(build_cmd)
        if image.registry_url:
            commands.append([tool, "push", image_ref])

        results = run_series(commands, build_logger, secrets=context.secrets(), stdin_for=stdin_for,
                             cwd=context.repo_path)
        failed = next((r for r in results if not r.ok), None)
        if failed or len(results) < len(commands):
            reason = failed.error if failed else "command sequence interrupted"
            return BuildResult(build_id, BuildStatus.FAILED, f"Image build failed for {image_ref}",
                               failure_reason=reason, image=image_ref)

        result = BuildResult(build_id, BuildStatus.SUCCESS, f"Image {image_ref} built", image=image_ref)
        if image.auto_increment:
            # store the job's own text so a branch prefix never accumulates
            result.tag_number = increment_number(image.tag_number)
            result.tag_text = image.tag_text
        return result
