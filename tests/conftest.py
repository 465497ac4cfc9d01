import logging
from pathlib import Path

import git
import pytest
import yaml
from git import Actor

from forgewatch_engine.history import JsonHistoryStore
from forgewatch_engine.job import Job

AUTHOR = Actor("ForgeWatch Tests", "tests@forgewatch.local")


def commit_file(repo: git.Repo, name: str, content: str, message: str) -> str:
    path = Path(repo.working_tree_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    repo.index.add([name])
    return repo.index.commit(message, author=AUTHOR, committer=AUTHOR).hexsha


@pytest.fixture
def origin_repo(tmp_path):
    """A local repository with one commit on ``main``, usable as a remote URL."""
    repo = git.Repo.init(tmp_path / "origin")
    commit_file(repo, "README.md", "hello\n", "initial commit")
    repo.git.branch("-M", "main")
    return repo


@pytest.fixture
def commit(origin_repo):
    """Adds a commit to the origin repository and returns its hash."""
    counter = {"n": 0}

    def _commit(message: str = "change") -> str:
        counter["n"] += 1
        return commit_file(origin_repo, f"file_{counter['n']}.txt", f"{message}\n", message)
    return _commit


@pytest.fixture
def make_job():
    def _make(**overrides) -> Job:
        data = {
            "id": "job-1",
            "name": "demo",
            "build": {"method": "pipeline", "pipeline_path": "pipeline.json"},
        }
        data.update(overrides)
        return Job.from_dict(data)
    return _make


@pytest.fixture
def write_job(tmp_path):
    """Writes a job definition as ``jobs/<file_name>`` and returns the directory."""
    jobs_dir = tmp_path / "jobs"
    jobs_dir.mkdir(exist_ok=True)

    def _write(job_data: dict, file_name: str = None) -> Path:
        path = jobs_dir / (file_name or f"{job_data.get('id', 'job')}.yaml")
        path.write_text(yaml.safe_dump({"job": job_data}, sort_keys=False), encoding="utf-8")
        return jobs_dir
    return _write


@pytest.fixture
def history(tmp_path):
    return JsonHistoryStore(tmp_path / "data" / "build_history.json")


@pytest.fixture
def build_logger():
    return logging.getLogger("forgewatch.tests")
