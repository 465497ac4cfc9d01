import sys

import pytest

from forgewatch_engine.exceptions import ScriptNotFound
from forgewatch_engine.history import BuildStatus
from forgewatch_engine.strategies.base import BuildContext
from forgewatch_engine.strategies.script import ScriptBuildStrategy, resolve_script_path, build_script_env

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell scripts")

GIT = {"repo_url": "https://gitlab.local/team/tool.git", "token": "glpat-xyz"}


@pytest.fixture
def dirs(tmp_path):
    repo_path = tmp_path / "repo"
    builder_dir = tmp_path / "builder"
    repo_path.mkdir()
    builder_dir.mkdir()
    return repo_path, builder_dir


@pytest.fixture
def script_context(make_job, dirs, tmp_path):
    repo_path, builder_dir = dirs

    def _make(script_path="build.sh", env_overrides=None):
        job = make_job(git=GIT, build={"method": "script", "script_path": script_path,
                                       "image": {"image_name": "team/tool", "tag_number": "2.1",
                                                 "tag_text": "BETA", "auto_increment": True}})
        return BuildContext(job=job, repo_path=repo_path, builder_dir=builder_dir, commit_hash="c0ffee",
                            branch="main", logs_dir=tmp_path / "logs", env_overrides=env_overrides or {})
    return _make


def test_script_sees_build_environment(script_context, dirs, history):
    repo_path, builder_dir = dirs
    (builder_dir / "build.sh").write_text(
        'echo "$IMAGE_TAG $IMAGE_TAG_NUMBER $GIT_COMMIT $EXTRA" > "$JOB_WORKDIR/out.txt"\n'
        'pwd >> "$JOB_WORKDIR/out.txt"\n',
        encoding="utf-8",
    )
    result = ScriptBuildStrategy().execute(script_context(env_overrides={"EXTRA": "yes"}), history)

    assert result.succeeded
    lines = (builder_dir / "out.txt").read_text(encoding="utf-8").splitlines()
    assert lines[0] == "2.2-BETA 2.2 c0ffee yes"
    assert lines[1] == str(repo_path.resolve())
    assert result.tag_number == "2.2"
    assert result.tag_text == "BETA"


def test_failing_script(script_context, dirs, history):
    _, builder_dir = dirs
    (builder_dir / "build.sh").write_text("echo broken\nexit 7\n", encoding="utf-8")
    result = ScriptBuildStrategy().execute(script_context(), history)
    assert result.status == BuildStatus.FAILED
    assert result.failure_reason == "exit code 7"
    assert result.tag_number is None


def test_missing_script_is_a_config_error(script_context, history):
    with pytest.raises(ScriptNotFound):
        ScriptBuildStrategy().execute(script_context("nope.sh"), history)
    record = history.list()[0]
    assert record.status == BuildStatus.FAILED
    assert "nope.sh" in record.error


def test_token_is_masked_in_log(script_context, dirs, history):
    _, builder_dir = dirs
    (builder_dir / "build.sh").write_text("echo token glpat-xyz\n", encoding="utf-8")
    result = ScriptBuildStrategy().execute(script_context(), history)
    log = open(result.log_file, encoding="utf-8").read()
    assert "glpat-xyz" not in log
    assert "token ***" in log


def test_script_in_checkout_wins(script_context, dirs):
    repo_path, builder_dir = dirs
    (repo_path / "build.sh").write_text("true\n", encoding="utf-8")
    (builder_dir / "build.sh").write_text("true\n", encoding="utf-8")
    assert resolve_script_path(script_context()) == repo_path / "build.sh"


def test_overrides_replace_generated_variables(script_context):
    env = build_script_env(script_context(env_overrides={"IMAGE_TAG": "custom"}), base_env={})
    assert env["IMAGE_TAG"] == "custom"
    assert env["IMAGE_NAME"] == "team/tool"
    assert env["GIT_REPO_URL"] == GIT["repo_url"]
    assert env["AUTO_TAG_INCREMENT"] == "true"
