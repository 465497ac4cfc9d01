import json
import os
import sys
import uuid
from pathlib import Path
from typing import Optional

import click
import httpx

from forgewatch_engine.exceptions import ForgeWatchError, JobConfigError, BuildFailedError, SCMConnectionError
from forgewatch_engine.job import Job
from forgewatch_engine.secret_manager import SecretManager, KEY_FILE_NAME
from forgewatch_engine.settings import load_settings
from forgewatch_engine.work_queue import QueueEntry

DEFAULT_SERVER = os.environ.get("FORGEWATCH_SERVER", "http://127.0.0.1:5000")

_services = None


def get_services():
    """Builds the engine lazily so server-only commands never touch local state."""
    global _services
    if _services is None:
        from main_server import build_services
        _services = build_services(load_settings())
    return _services


def _require_job(job_id: str) -> Job:
    job = get_services().job_manager.get_decrypted_job(job_id)
    if not job:
        raise click.ClickException(f"Job '{job_id}' not found.")
    return job


@click.group()
def cli():
    """ForgeWatch: commit-triggered builds with a resource-aware queue."""
    pass


@cli.command("list-jobs")
def list_jobs():
    """Lists all configured jobs."""
    jobs = get_services().job_manager.list_jobs()
    if not jobs:
        click.echo("No jobs configured.")
        return
    click.echo("Available jobs:")
    for job in jobs:
        state = "enabled" if job.enabled else "disabled"
        click.echo(f"- {job.id}: {job.name} [{job.build.method.value}, {state}]")
        if job.description:
            click.echo(f"  Description: {job.description}")
        if job.git:
            branches = ", ".join(rule.name for rule in job.git.branch_rules())
            click.echo(f"  Git: {job.git.provider} @ {job.git.repo_url} (branches: {branches})")
        click.echo(f"  Trigger: {job.schedule.trigger_method.value}, auto check: {job.schedule.auto_check}, "
                   f"every {job.schedule.polling_seconds}s")
        stats = job.stats
        click.echo(f"  Builds: {stats.total_builds} ({stats.successful_builds} ok, {stats.failed_builds} failed), "
                   f"last: {stats.last_build_status or 'never'}")


@cli.command("validate-job")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_job(config_file: Path):
    """Parses and validates a job YAML file."""
    try:
        job = Job.from_yaml(config_file, config_file.read_text(encoding="utf-8"))
    except JobConfigError as e:
        raise click.ClickException(str(e))
    click.echo(f"OK: job '{job.id}' ({job.name}), method {job.build.method.value}")


@cli.command("check-connection")
@click.argument("job_id")
def check_connection(job_id: str):
    """Verifies that the job's repository is reachable with its credentials."""
    job = _require_job(job_id)
    if not job.git:
        raise click.ClickException(f"Job '{job_id}' has no git configuration.")
    try:
        head = get_services().build_executor.scm.check_connection(job.git.repo_url, job.git.provider, job.git.token)
    except SCMConnectionError as e:
        raise click.ClickException(str(e))
    click.echo(f"Connected. Remote HEAD: {head or '(empty repository)'}")


@cli.command("check-commit")
@click.argument("job_id")
@click.option("--branch", "-b", help="Branch to check (defaults to the job's primary branch).")
def check_commit(job_id: str, branch: Optional[str]):
    """Checks a branch for new commits without touching the working copy."""
    job = _require_job(job_id)
    if not job.git:
        raise click.ClickException(f"Job '{job_id}' has no git configuration.")
    services = get_services()
    result = services.build_executor.scm.check_new_commit_and_pull(
        services.build_executor.repo_path_for(job), branch or job.git.branch, job.git.repo_url,
        job.git.token, job.git.provider, do_pull=False,
    )
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command("run-job")
@click.argument("job_id")
@click.option("--branch", "-b", help="Build this branch without scanning for new commits.")
@click.option("--force", is_flag=True, help="Build even if no new commit is found.")
@click.option("--env", "-e", multiple=True, help="Environment override for the build (KEY=VALUE).")
def run_job(job_id: str, branch: Optional[str], force: bool, env: tuple):
    """Runs a job synchronously in this process."""
    job = get_services().job_manager.get_job(job_id)
    if not job:
        raise click.ClickException(f"Job '{job_id}' not found.")

    overrides = {}
    for item in env:
        if "=" not in item:
            click.echo(f"Warning: Invalid override '{item}'. Use KEY=VALUE. Skipping.")
            continue
        key, value = item.split("=", 1)
        overrides[key] = value

    metadata = {"source": "cli", "env": overrides}
    if branch or force:
        metadata.update({"skip_git_check": True, "branch": branch or (job.git.branch if job.git else None)})
    entry = QueueEntry(id=f"cli-{uuid.uuid4().hex[:8]}", job_id=job.id, name=job.name, metadata=metadata)

    click.echo(f"Running job '{job.name}'...")
    try:
        result = get_services().build_executor.run_queue_entry(entry)
    except JobConfigError as e:
        raise click.ClickException(f"Configuration error: {e}")
    except BuildFailedError as e:
        click.echo(f"Build failed: {e}", err=True)
        if e.build_id:
            click.echo(f"Log: forgewatch build-log {e.build_id}", err=True)
        sys.exit(1)
    click.echo(f"Build {result.get('build_id') or '-'} finished: {result['status']}. {result.get('message', '')}")


@cli.command("history")
@click.option("--job", "job_id", help="Only show builds of this job.")
@click.option("--limit", default=10, type=int, help="Number of recent builds to show.")
def history(job_id: Optional[str], limit: int):
    """Lists recent builds."""
    records = get_services().history.list(limit=limit, job_id=job_id)
    if not records:
        click.echo("No builds recorded.")
        return
    for r in records:
        start_time = (r.start_time or "N/A").split('.')[0].replace('T', ' ')
        commit = (r.commit_hash or "")[:8] or "-"
        click.echo(f"  - {r.id} | {r.name} | {r.method} | {r.status.value} | started {start_time} | "
                   f"{r.duration if r.duration is not None else '-'}s | commit {commit}")


@cli.command("build-log")
@click.argument("build_id")
@click.option("--lines", "-n", type=int, help="Only show the last N lines.")
def build_log(build_id: str, lines: Optional[int]):
    """Shows the log of a build."""
    content = get_services().build_executor.get_build_log_content(build_id, lines)
    if content is None:
        raise click.ClickException(f"Build '{build_id}' not found.")
    click.echo(content)


@cli.command("encrypt")
@click.argument("text")
def encrypt(text: str):
    """Encrypts a secret for use in a job file (git token, registry password)."""
    settings = load_settings()
    try:
        manager = SecretManager(key=settings.encryption_key, key_file=settings.data_dir / KEY_FILE_NAME)
    except ForgeWatchError as e:
        raise click.ClickException(str(e))
    click.echo(manager.encrypt(text))


# --- commands talking to a running server ---------------------------------

def _api(method: str, server: str, path: str, **kwargs) -> dict:
    try:
        with httpx.Client(base_url=server, timeout=httpx.Timeout(10.0, connect=3.0)) as client:
            response = client.request(method, path, **kwargs)
    except httpx.TimeoutException:
        raise click.ClickException(f"Server {server} timed out.")
    except httpx.RequestError as e:
        raise click.ClickException(f"Cannot reach server {server}: {e}")
    try:
        data = response.json()
    except ValueError:
        data = {"error": response.text}
    if response.status_code >= 400:
        raise click.ClickException(f"HTTP {response.status_code}: {data.get('error', data)}")
    return data


server_option = click.option("--server", default=DEFAULT_SERVER, show_default=True, help="ForgeWatch API address.")


@cli.command("queue-status")
@server_option
def queue_status(server: str):
    """Shows queued, running and recent entries of a running server."""
    status = _api("GET", server, "/api/queue")
    stats = _api("GET", server, "/api/queue/stats")
    click.echo(f"Running {stats['running_jobs']}/{stats['max_concurrent_jobs']}, "
               f"threshold {stats['resource_threshold']}%, paused: {stats['paused']}")
    for section in ("running", "queue", "completed", "failed"):
        entries = status.get(section) or []
        click.echo(f"{section.capitalize()} ({len(entries)}):")
        for e in entries:
            click.echo(f"  - {e['id']} {e['name']} [{e['priority']}] {e['status']} retries {e['retry_count']}"
                       f"{' error: ' + e['error'] if e.get('error') else ''}")


@cli.command("enqueue")
@click.argument("job_id")
@click.option("--priority", type=click.Choice(["high", "medium", "low"]), default="medium", show_default=True)
@server_option
def enqueue(job_id: str, priority: str, server: str):
    """Adds a job to the server's queue."""
    data = _api("POST", server, "/api/queue", json={"job_id": job_id, "priority": priority})
    click.echo(f"Queued as {data['entry_id']}")


@cli.command("cancel")
@click.argument("entry_id")
@server_option
def cancel(entry_id: str, server: str):
    """Cancels a queued or running entry."""
    data = _api("DELETE", server, f"/api/queue/{entry_id}")
    click.echo(data.get("message", "Cancelled"))


if __name__ == '__main__':
    cli()
