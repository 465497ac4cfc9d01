import pytest
import yaml

from forgewatch_engine.exceptions import JobConfigError
from forgewatch_engine.settings import RunnerSettings, load_settings


def test_defaults(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml", environ={})
    assert settings.max_concurrent_jobs == 2
    assert settings.resource_threshold == 80.0
    assert settings.queue_tick_seconds == 5.0
    assert settings.workspace_root == settings.data_dir / "workspace"


def test_file_values_and_environment_overrides(tmp_path):
    path = tmp_path / "forgewatch.yaml"
    path.write_text(yaml.safe_dump({"forgewatch": {
        "data_dir": str(tmp_path / "state"),
        "max_concurrent_jobs": 3,
        "build_tool": "podman",
        "colour": "blue",
    }}), encoding="utf-8")
    settings = load_settings(path, environ={"FORGEWATCH_MAX_CONCURRENT": "5", "FORGEWATCH_PORT": ""})
    assert settings.max_concurrent_jobs == 5
    assert settings.build_tool == "podman"
    assert settings.port == 5000
    assert settings.history_file == tmp_path / "state" / "build_history.json"
    assert settings.settings_path == path


def test_invalid_environment_value(tmp_path):
    with pytest.raises(JobConfigError, match="FORGEWATCH_RESOURCE_THRESHOLD"):
        load_settings(tmp_path / "missing.yaml", environ={"FORGEWATCH_RESOURCE_THRESHOLD": "lots"})


@pytest.mark.parametrize("kwargs", [{"max_concurrent_jobs": 0}, {"resource_threshold": 0},
                                    {"resource_threshold": 120}])
def test_limits_are_validated(kwargs):
    with pytest.raises(JobConfigError):
        RunnerSettings(**kwargs)


def test_runtime_overrides_are_saved(tmp_path):
    path = tmp_path / "forgewatch.yaml"
    path.write_text(yaml.safe_dump({"forgewatch": {"port": 8080}, "other": {"keep": True}}), encoding="utf-8")
    settings = load_settings(path, environ={})
    settings.save_runtime_overrides(max_concurrent_jobs=4)

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert raw["forgewatch"] == {"port": 8080, "max_concurrent_jobs": 4}
    assert raw["other"] == {"keep": True}
    assert load_settings(path, environ={}).max_concurrent_jobs == 4


def test_to_dict_hides_secrets(tmp_path):
    settings = RunnerSettings(data_dir=tmp_path, webhook_secret="hook", encryption_key="key")
    data = settings.to_dict()
    assert "webhook_secret" not in data
    assert "encryption_key" not in data
    assert data["data_dir"] == str(tmp_path)
