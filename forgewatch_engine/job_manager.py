import copy
import json
import threading
import yaml
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import JobConfigError
from .job import Job, JobStats
from .logger_setup import logger
from .secret_manager import SecretManager

JOBS_CONFIG_DIR_NAME = "jobs_config"


class JobManager:
    """Loads job definitions from YAML and keeps their runtime state (stats, image tag) in a JSON file."""

    def __init__(self, jobs_config_dir: Optional[Path] = None, state_file: Optional[Path] = None,
                 secret_manager: Optional[SecretManager] = None):
        if jobs_config_dir:
            self.jobs_config_dir = Path(jobs_config_dir)
        else:
            self.jobs_config_dir = Path(__file__).resolve().parent.parent / JOBS_CONFIG_DIR_NAME
        self.state_file = Path(state_file) if state_file else None
        self.secret_manager = secret_manager

        self.jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()
        self._state: Dict[str, dict] = self._read_state()
        self.load_jobs()

    def load_jobs(self):
        jobs: Dict[str, Job] = {}
        logger.info(f"Loading jobs from {self.jobs_config_dir}...")
        if not self.jobs_config_dir.exists() or not self.jobs_config_dir.is_dir():
            logger.warning(f"Jobs config directory not found or is not a directory: {self.jobs_config_dir}")
            with self._lock:
                self.jobs = jobs
            return

        for config_file in sorted(self.jobs_config_dir.glob("*.y*ml")):
            job = self._parse_job_config(config_file)
            if job:
                if job.id in jobs:
                    logger.warning(f"Duplicate job id '{job.id}' found in {config_file.name}. Overwriting previous definition.")
                self._apply_state(job)
                jobs[job.id] = job
                logger.debug(f"Successfully loaded job: {job.id} ({job.name}) from {config_file.name}")
        with self._lock:
            self.jobs = jobs
        logger.info(f"Loaded {len(jobs)} jobs.")

    def _parse_job_config(self, config_file: Path) -> Optional[Job]:
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                raw_yaml_content = f.read()
            return Job.from_yaml(config_file, raw_yaml_content)
        except JobConfigError as ce:
            logger.error(f"Validation error parsing job config {config_file.name}: {ce}")
            return None
        except yaml.YAMLError as ye:
            logger.error(f"YAML syntax error in job config {config_file.name}: {ye}")
            return None
        except OSError as e:
            logger.error(f"Cannot read job config {config_file.name}: {e}")
            return None

    def get_job(self, job_id: str) -> Optional[Job]:
        """Looks a job up by id, falling back to its display name."""
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                job = next((j for j in self.jobs.values() if j.name == job_id), None)
            return job

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return list(self.jobs.values())

    def reload_jobs(self):
        """Explicitly reloads all job configurations."""
        logger.info("Reloading all job configurations...")
        self.load_jobs()

    def get_decrypted_job(self, job_id: str) -> Optional[Job]:
        """Returns a private copy of the job with its credentials decrypted.

        The copy is meant for a single execution and is never written back.
        """
        job = self.get_job(job_id)
        if job is None:
            return None
        job = copy.deepcopy(job)
        if job.git:
            job.git.token = self._decrypt(job.git.token)
        job.build.image.registry_password = self._decrypt(job.build.image.registry_password)
        return job

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if self.secret_manager:
            return self.secret_manager.decrypt(value)
        if SecretManager.is_encrypted(value):
            raise JobConfigError("Job holds an encrypted secret but no encryption key is configured")
        return value

    # --- runtime state -------------------------------------------------

    def _read_state(self) -> Dict[str, dict]:
        if not self.state_file or not self.state_file.exists():
            return {}
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Could not read job state {self.state_file}: {e}")
            return {}

    def _write_state(self):
        if not self.state_file:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_file, "w", encoding="utf-8") as f:
            json.dump(self._state, f, indent=2)

    def _apply_state(self, job: Job):
        state = self._state.get(job.id) or {}
        if state.get("stats"):
            job.stats = JobStats.from_dict(state["stats"])
        if state.get("tag_number") is not None:
            job.build.image.tag_number = str(state["tag_number"])

    def update_job_stats(self, job_id: str, success: bool, commit_hash: Optional[str] = None) -> Optional[JobStats]:
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                logger.warning(f"Cannot update stats: job '{job_id}' is not loaded")
                return None
            stats = job.stats
            stats.total_builds += 1
            if success:
                stats.successful_builds += 1
            else:
                stats.failed_builds += 1
            stats.last_build_at = datetime.now(timezone.utc).isoformat()
            stats.last_build_status = "success" if success else "failed"
            if commit_hash:
                stats.last_commit_hash = commit_hash
            self._state.setdefault(job_id, {})["stats"] = stats.to_dict()
            self._write_state()
            return stats

    def persist_image_tag(self, job_id: str, tag_number: str):
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                logger.warning(f"Cannot persist tag: job '{job_id}' is not loaded")
                return
            job.build.image.tag_number = tag_number
            self._state.setdefault(job_id, {})["tag_number"] = tag_number
            self._write_state()
        logger.info(f"Job '{job_id}' image tag number is now {tag_number}")
