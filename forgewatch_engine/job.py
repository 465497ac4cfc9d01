from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any
import yaml

from .exceptions import JobConfigError

MIN_POLLING_SECONDS = 5


class BuildMethod(str, Enum):
    IMAGE = "image"
    SCRIPT = "script"
    PIPELINE = "pipeline"


class TriggerMethod(str, Enum):
    POLLING = "polling"
    WEBHOOK = "webhook"
    HYBRID = "hybrid"


@dataclass
class BranchRule:
    name: str
    tag_prefix: str = ""
    enabled: bool = True

    def to_dict(self) -> dict:
        return {"name": self.name, "tag_prefix": self.tag_prefix, "enabled": self.enabled}


@dataclass
class GitConfig:
    repo_url: str
    branch: str = "main"
    provider: str = "gitlab"
    token: str = ""  # encrypted at rest
    branches: List[BranchRule] = field(default_factory=list)

    def branch_rules(self) -> List[BranchRule]:
        """Primary branch first, then the enabled extra branches, without duplicates."""
        rules: List[BranchRule] = []
        seen = set()
        primary = next((b for b in self.branches if b.name == self.branch), None)
        candidates = [primary or BranchRule(name=self.branch)] + [b for b in self.branches if b.enabled]
        for rule in candidates:
            if rule.name and rule.name not in seen:
                seen.add(rule.name)
                rules.append(rule)
        return rules

    def rule_for(self, branch: str) -> Optional[BranchRule]:
        return next((rule for rule in self.branch_rules() if rule.name == branch), None)

    def to_dict(self) -> dict:
        return {
            "repo_url": self.repo_url,
            "branch": self.branch,
            "provider": self.provider,
            "token": self.token,
            "branches": [b.to_dict() for b in self.branches],
        }


@dataclass
class ImageConfig:
    image_name: str = ""
    dockerfile_path: Optional[str] = None
    context_path: Optional[str] = None  # defaults to the checked-out repository
    tag_number: str = ""
    tag_text: str = ""
    auto_increment: bool = False
    registry_url: Optional[str] = None
    registry_username: Optional[str] = None
    registry_password: str = ""  # encrypted at rest

    def to_dict(self) -> dict:
        return {
            "image_name": self.image_name,
            "dockerfile_path": self.dockerfile_path,
            "context_path": self.context_path,
            "tag_number": self.tag_number,
            "tag_text": self.tag_text,
            "auto_increment": self.auto_increment,
            "registry_url": self.registry_url,
            "registry_username": self.registry_username,
            "registry_password": self.registry_password,
        }


@dataclass
class BuildConfig:
    method: BuildMethod
    image: ImageConfig = field(default_factory=ImageConfig)
    script_path: Optional[str] = None
    pipeline_path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "image": self.image.to_dict(),
            "script_path": self.script_path,
            "pipeline_path": self.pipeline_path,
        }


@dataclass
class ScheduleConfig:
    trigger_method: TriggerMethod = TriggerMethod.POLLING
    auto_check: bool = False
    polling_seconds: int = 30
    cron: Optional[str] = None  # stored only

    @property
    def accepts_polling(self) -> bool:
        return self.trigger_method in (TriggerMethod.POLLING, TriggerMethod.HYBRID)

    @property
    def accepts_webhook(self) -> bool:
        return self.trigger_method in (TriggerMethod.WEBHOOK, TriggerMethod.HYBRID)

    def to_dict(self) -> dict:
        return {
            "trigger_method": self.trigger_method.value,
            "auto_check": self.auto_check,
            "polling_seconds": self.polling_seconds,
            "cron": self.cron,
        }


@dataclass
class JobStats:
    total_builds: int = 0
    successful_builds: int = 0
    failed_builds: int = 0
    last_build_at: Optional[str] = None
    last_build_status: Optional[str] = None
    last_commit_hash: Optional[str] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobStats':
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class Job:
    id: str
    name: str
    build: BuildConfig
    description: Optional[str] = None
    enabled: bool = True
    git: Optional[GitConfig] = None
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    stats: JobStats = field(default_factory=JobStats)
    source_file: Optional[str] = None

    def validate(self):
        """Raises JobConfigError for definitions that can never build successfully."""
        method = self.build.method
        if method in (BuildMethod.IMAGE, BuildMethod.SCRIPT):
            if not self.git or not self.git.repo_url:
                raise JobConfigError(f"Job '{self.name}': git.repo_url is required for {method.value} builds")
            if not self.git.branch:
                raise JobConfigError(f"Job '{self.name}': git.branch is required for {method.value} builds")
        if method == BuildMethod.IMAGE and not self.build.image.image_name:
            raise JobConfigError(f"Job '{self.name}': build.image.image_name is required for image builds")
        if method == BuildMethod.SCRIPT and not self.build.script_path:
            raise JobConfigError(f"Job '{self.name}': build.script_path is required for script builds")
        if method == BuildMethod.PIPELINE and not self.build.pipeline_path:
            raise JobConfigError(f"Job '{self.name}': build.pipeline_path is required for pipeline builds")
        if self.schedule.auto_check and self.schedule.accepts_polling and not self.git:
            raise JobConfigError(f"Job '{self.name}': polling requires a git section")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "git": self.git.to_dict() if self.git else None,
            "build": self.build.to_dict(),
            "schedule": self.schedule.to_dict(),
            "stats": self.stats.to_dict(),
        }

    def to_public_dict(self) -> dict:
        data = self.to_dict()
        if data["git"]:
            data["git"]["token"] = "***" if self.git.token else ""
        data["build"]["image"]["registry_password"] = "***" if self.build.image.registry_password else ""
        return data

    @classmethod
    def from_dict(cls, job_data: Dict[str, Any], source: str = "<dict>") -> 'Job':
        if not isinstance(job_data, dict):
            raise JobConfigError(f"Job config {source} must be a mapping, found {type(job_data).__name__}")
        for key in ("id", "name", "build"):
            if key not in job_data:
                raise JobConfigError(f"Job config {source} must contain '{key}' under 'job' key.")

        git_data = job_data.get("git")
        git_config = None
        if git_data:
            if not git_data.get("repo_url"):
                raise JobConfigError(f"Git configuration in {source} is missing 'repo_url'.")
            branches = []
            for b in git_data.get("branches") or []:
                if not isinstance(b, dict) or not b.get("name"):
                    raise JobConfigError(f"Branch rules in {source} need a 'name'. Found: {b}")
                branches.append(BranchRule(name=str(b["name"]), tag_prefix=str(b.get("tag_prefix") or ""),
                                           enabled=bool(b.get("enabled", True))))
            git_config = GitConfig(
                repo_url=str(git_data["repo_url"]),
                branch=str(git_data.get("branch") or "main"),
                provider=str(git_data.get("provider") or "gitlab").lower(),
                token=str(git_data.get("token") or ""),
                branches=branches,
            )

        build_data = job_data["build"] or {}
        try:
            method = BuildMethod(str(build_data.get("method", "")).lower())
        except ValueError:
            raise JobConfigError(
                f"Invalid build method '{build_data.get('method')}' in {source}. "
                f"Expected one of: {', '.join(m.value for m in BuildMethod)}"
            )
        image_data = build_data.get("image") or {}
        unknown_image_keys = set(image_data) - set(ImageConfig.__dataclass_fields__)
        if unknown_image_keys:
            raise JobConfigError(f"Unknown image settings in {source}: {sorted(unknown_image_keys)}")
        image = ImageConfig(**image_data)
        image.tag_number = str(image.tag_number or "")
        image.tag_text = str(image.tag_text or "")
        build = BuildConfig(method=method, image=image, script_path=build_data.get("script_path"),
                            pipeline_path=build_data.get("pipeline_path"))

        schedule_data = job_data.get("schedule") or {}
        try:
            trigger_method = TriggerMethod(str(schedule_data.get("trigger_method", "polling")).lower())
        except ValueError:
            raise JobConfigError(f"Invalid trigger_method '{schedule_data.get('trigger_method')}' in {source}.")
        polling_val = schedule_data.get("polling_seconds", 30)
        try:
            polling_seconds = int(polling_val)
        except (TypeError, ValueError):
            raise JobConfigError(f"Invalid 'polling_seconds' value '{polling_val}' in {source}. It must be an integer.")
        schedule = ScheduleConfig(trigger_method=trigger_method, auto_check=bool(schedule_data.get("auto_check", False)),
                                  polling_seconds=polling_seconds, cron=schedule_data.get("cron"))

        job = cls(
            id=str(job_data["id"]),
            name=str(job_data["name"]),
            description=job_data.get("description"),
            enabled=bool(job_data.get("enabled", True)),
            git=git_config,
            build=build,
            schedule=schedule,
            stats=JobStats.from_dict(job_data.get("stats")),
            source_file=None if source == "<dict>" else source,
        )
        job.validate()
        return job

    @classmethod
    def from_yaml(cls, file_path: Path, raw_yaml_content: str) -> 'Job':
        config = yaml.safe_load(raw_yaml_content) or {}
        if not isinstance(config, dict) or "job" not in config:
            raise JobConfigError(f"Job config {file_path.name} must have a top-level 'job' key.")
        return cls.from_dict(config["job"], source=str(file_path))
