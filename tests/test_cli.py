from unittest.mock import Mock

import pytest
import yaml
from click.testing import CliRunner
from cryptography.fernet import Fernet

import cli
from forgewatch_engine.exceptions import BuildFailedError
from forgewatch_engine.secret_manager import SecretManager


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def services(monkeypatch):
    services = Mock()
    monkeypatch.setattr(cli, "get_services", lambda: services)
    return services


def test_validate_job(runner, tmp_path):
    good = tmp_path / "good.yaml"
    good.write_text(yaml.safe_dump({"job": {"id": "x", "name": "X", "build": {
        "method": "pipeline", "pipeline_path": "ci.json"}}}), encoding="utf-8")
    result = runner.invoke(cli.cli, ["validate-job", str(good)])
    assert result.exit_code == 0
    assert "OK: job 'x'" in result.output

    bad = tmp_path / "bad.yaml"
    bad.write_text(yaml.safe_dump({"job": {"id": "y", "name": "Y", "build": {"method": "image"}}}),
                   encoding="utf-8")
    result = runner.invoke(cli.cli, ["validate-job", str(bad)])
    assert result.exit_code == 1
    assert "image_name" in result.output or "repo_url" in result.output


def test_encrypt_uses_configured_key(runner, monkeypatch, tmp_path):
    key = Fernet.generate_key().decode("ascii")
    monkeypatch.setenv("FORGEWATCH_ENCRYPTION_KEY", key)
    monkeypatch.setenv("FORGEWATCH_DATA_DIR", str(tmp_path))
    result = runner.invoke(cli.cli, ["encrypt", "glpat-123"])
    assert result.exit_code == 0
    cipher = result.output.strip()
    assert cipher.startswith("enc:")
    assert SecretManager(key=key).decrypt(cipher) == "glpat-123"


def test_run_job_passes_overrides(runner, services, make_job):
    services.job_manager.get_job.return_value = make_job()
    services.build_executor.run_queue_entry.return_value = {"build_id": "b1", "status": "success",
                                                            "message": "done"}
    result = runner.invoke(cli.cli, ["run-job", "job-1", "--force", "-e", "A=1", "-e", "broken"])

    assert result.exit_code == 0
    assert "Build b1 finished: success" in result.output
    assert "Invalid override 'broken'" in result.output
    queue_entry = services.build_executor.run_queue_entry.call_args.args[0]
    assert queue_entry.job_id == "job-1"
    assert queue_entry.metadata["env"] == {"A": "1"}
    assert queue_entry.metadata["skip_git_check"] is True


def test_run_job_failure_exit_code(runner, services, make_job):
    services.job_manager.get_job.return_value = make_job()
    services.build_executor.run_queue_entry.side_effect = BuildFailedError("step failed", build_id="b9")
    result = runner.invoke(cli.cli, ["run-job", "job-1"])
    assert result.exit_code == 1
    assert "build-log b9" in result.output


def test_run_unknown_job(runner, services):
    services.job_manager.get_job.return_value = None
    result = runner.invoke(cli.cli, ["run-job", "ghost"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_list_jobs(runner, services, make_job):
    services.job_manager.list_jobs.return_value = [make_job(description="Nightly pipeline")]
    result = runner.invoke(cli.cli, ["list-jobs"])
    assert result.exit_code == 0
    assert "- job-1: demo [pipeline, enabled]" in result.output
    assert "Nightly pipeline" in result.output


def test_enqueue_calls_server(runner, monkeypatch):
    api = Mock(return_value={"entry_id": "q-7"})
    monkeypatch.setattr(cli, "_api", api)
    result = runner.invoke(cli.cli, ["enqueue", "job-1", "--priority", "high", "--server", "http://ci:5000"])
    assert result.exit_code == 0
    assert "Queued as q-7" in result.output
    api.assert_called_once_with("POST", "http://ci:5000", "/api/queue", json={"job_id": "job-1", "priority": "high"})
