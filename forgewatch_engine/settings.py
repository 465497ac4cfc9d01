import os
import yaml
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any

from .exceptions import JobConfigError
from .logger_setup import logger

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SETTINGS_FILE_NAME = "forgewatch.yaml"

# env var -> (settings field, converter)
ENV_OVERRIDES = {
    "FORGEWATCH_DATA_DIR": ("data_dir", Path),
    "FORGEWATCH_JOBS_DIR": ("jobs_config_dir", Path),
    "FORGEWATCH_WORKSPACE": ("workspace_root", Path),
    "FORGEWATCH_MAX_CONCURRENT": ("max_concurrent_jobs", int),
    "FORGEWATCH_RESOURCE_THRESHOLD": ("resource_threshold", float),
    "FORGEWATCH_QUEUE_TICK": ("queue_tick_seconds", float),
    "FORGEWATCH_BUILD_TOOL": ("build_tool", str),
    "FORGEWATCH_WEBHOOK_SECRET": ("webhook_secret", str),
    "FORGEWATCH_ENCRYPTION_KEY": ("encryption_key", str),
    "FORGEWATCH_PORT": ("port", int),
}


@dataclass
class RunnerSettings:
    data_dir: Path = PROJECT_ROOT / "data"
    jobs_config_dir: Path = PROJECT_ROOT / "jobs_config"
    workspace_root: Optional[Path] = None  # defaults to <data_dir>/workspace
    max_concurrent_jobs: int = 2
    resource_threshold: float = 80.0
    queue_tick_seconds: float = 5.0
    default_max_retries: int = 3
    history_limit: int = 100
    build_tool: str = "docker"
    webhook_secret: Optional[str] = None
    encryption_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "DEBUG"
    settings_path: Optional[Path] = field(default=None, repr=False)

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.jobs_config_dir = Path(self.jobs_config_dir)
        if self.workspace_root is None:
            self.workspace_root = self.data_dir / "workspace"
        self.workspace_root = Path(self.workspace_root)
        if self.max_concurrent_jobs < 1:
            raise JobConfigError(f"max_concurrent_jobs must be at least 1, got {self.max_concurrent_jobs}")
        if not 0 < self.resource_threshold <= 100:
            raise JobConfigError(f"resource_threshold must be in (0, 100], got {self.resource_threshold}")

    @property
    def build_logs_dir(self) -> Path:
        return self.data_dir / "build_logs"

    @property
    def history_file(self) -> Path:
        return self.data_dir / "build_history.json"

    @property
    def job_state_file(self) -> Path:
        return self.data_dir / "job_state.json"

    def ensure_dirs(self):
        for path in (self.data_dir, self.build_logs_dir, self.workspace_root):
            path.mkdir(parents=True, exist_ok=True)

    def save_runtime_overrides(self, **values):
        """Writes queue limits changed at runtime back to the settings file."""
        for key, value in values.items():
            setattr(self, key, value)
        if not self.settings_path:
            return
        raw: Dict[str, Any] = {}
        if self.settings_path.exists():
            with open(self.settings_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        section = raw.setdefault("forgewatch", {})
        section.update(values)
        with open(self.settings_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(raw, f, sort_keys=False)
        logger.info(f"Saved runtime settings {values} to {self.settings_path}")

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("settings_path", None)
        data.pop("encryption_key", None)
        data.pop("webhook_secret", None)
        return {k: str(v) if isinstance(v, Path) else v for k, v in data.items()}


def load_settings(settings_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> RunnerSettings:
    """Loads settings from YAML (optional) and applies FORGEWATCH_* environment overrides."""
    environ = os.environ if environ is None else environ
    path = Path(settings_path) if settings_path else PROJECT_ROOT / SETTINGS_FILE_NAME

    values: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as ye:
            raise JobConfigError(f"YAML syntax error in settings file {path}: {ye}")
        values.update(raw.get("forgewatch", {}) or {})
        logger.debug(f"Loaded settings from {path}")

    for env_name, (field_name, convert) in ENV_OVERRIDES.items():
        if env_name in environ and environ[env_name] != "":
            try:
                values[field_name] = convert(environ[env_name])
            except ValueError:
                raise JobConfigError(f"Invalid value for {env_name}: '{environ[env_name]}'")

    known = set(RunnerSettings.__dataclass_fields__)
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown settings: {sorted(unknown)}")
    settings = RunnerSettings(**{k: v for k, v in values.items() if k in known})
    settings.settings_path = path
    return settings
