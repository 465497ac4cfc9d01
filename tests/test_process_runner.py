import os
import sys

import pytest

from forgewatch_engine.process_runner import run_command, run_series, mask_secrets, describe

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")


def test_run_command_captures_output(build_logger):
    result = run_command("echo hello", build_logger)
    assert result.ok
    assert result.output == "hello"


def test_run_command_reports_exit_code(build_logger):
    result = run_command("exit 3", build_logger)
    assert not result.ok
    assert result.returncode == 3
    assert result.error == "exit code 3"


def test_run_command_timeout_kills_process(build_logger):
    result = run_command("sleep 5", build_logger, timeout=0.5)
    assert result.timed_out
    assert not result.ok
    assert "timed out" in result.error


def test_run_command_masks_secrets(build_logger):
    result = run_command("echo token=s3cret", build_logger, secrets=["s3cret"])
    assert result.output == "token=***"


def test_run_command_feeds_stdin(build_logger):
    result = run_command(["cat"], build_logger, stdin_data="from stdin")
    assert result.output == "from stdin"


def test_run_command_uses_given_environment(build_logger):
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "FOO": "bar"}
    result = run_command("echo $FOO", build_logger, env=env)
    assert result.output == "bar"


def test_run_command_spawn_error(build_logger, tmp_path):
    result = run_command([str(tmp_path / "missing-binary")], build_logger)
    assert result.returncode is None
    assert result.error.startswith("spawn error")


def test_run_series_stops_at_first_failure(build_logger, tmp_path):
    marker = tmp_path / "never"
    results = run_series(["true", "false", f"touch {marker}"], build_logger)
    assert len(results) == 2
    assert not results[-1].ok
    assert not marker.exists()


def test_describe_masks_list_commands():
    assert describe(["docker", "login", "-p", "pw"], secrets=["pw"]) == "docker login -p ***"
    assert mask_secrets("nothing here", ["", None]) == "nothing here"
