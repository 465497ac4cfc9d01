import hashlib
import hmac
import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .exceptions import WebhookAuthError, QueueError
from .job import Job
from .job_manager import JobManager
from .logger_setup import logger
from .scm_handler import normalize_repo_url
from .work_queue import WorkQueue, Priority

DUPLICATE_WINDOW_SECONDS = 5 * 60
WEBHOOK_MAX_RETRIES = 2


def branch_from_ref(ref: Optional[str]) -> str:
    if not ref:
        return "main"
    return ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref


class WebhookService:
    """Turns GitHub and GitLab push events into high-priority queue entries."""

    def __init__(self, job_manager: JobManager, work_queue: WorkQueue, secret: Optional[str] = None):
        self.job_manager = job_manager
        self.work_queue = work_queue
        self.secret = secret
        self._processed: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._stats = {"total_events": 0, "triggered_builds": 0, "duplicates": 0, "last_event_at": None}

    # --- verification --------------------------------------------------

    def verify_github_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self.secret or not signature:
            return False
        digest = "sha256=" + hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(digest, signature)

    def verify_gitlab_token(self, token: Optional[str]) -> bool:
        if not self.secret:
            return True
        return bool(token) and hmac.compare_digest(self.secret, token)

    # --- events --------------------------------------------------------

    def handle_github_push(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.verify_github_signature(raw_body, signature):
            raise WebhookAuthError("Invalid GitHub webhook signature")
        payload = self._parse(raw_body)
        repository = payload.get("repository") or {}
        pusher = payload.get("pusher") or {}
        return self.trigger_jobs_for_event(
            provider="github",
            repo_url=repository.get("clone_url") or repository.get("html_url") or repository.get("url"),
            branch=branch_from_ref(payload.get("ref")),
            commit_hash=payload.get("after"),
            user=pusher.get("name") or pusher.get("email"),
            commit_count=len(payload.get("commits") or []),
        )

    def handle_gitlab_push(self, raw_body: bytes, token: Optional[str]) -> Dict[str, Any]:
        if not self.verify_gitlab_token(token):
            raise WebhookAuthError("Invalid GitLab webhook token")
        payload = self._parse(raw_body)
        repository = payload.get("repository") or {}
        project = payload.get("project") or {}
        return self.trigger_jobs_for_event(
            provider="gitlab",
            repo_url=repository.get("git_http_url") or project.get("git_http_url") or repository.get("url"),
            branch=branch_from_ref(payload.get("ref")),
            commit_hash=payload.get("checkout_sha") or payload.get("after"),
            user=payload.get("user_name") or payload.get("user_username"),
            commit_count=len(payload.get("commits") or []),
        )

    @staticmethod
    def _parse(raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body or b"{}")
        except (ValueError, UnicodeDecodeError) as e:
            raise ValueError(f"Webhook body is not valid JSON: {e}")
        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")
        return payload

    def trigger_jobs_for_event(self, provider: str, repo_url: Optional[str], branch: str,
                               commit_hash: Optional[str], user: Optional[str] = None,
                               commit_count: int = 0) -> Dict[str, Any]:
        with self._lock:
            self._stats["total_events"] += 1
            self._stats["last_event_at"] = datetime.now(timezone.utc).isoformat()
        short = (commit_hash or "")[:7]
        logger.info(f"[WEBHOOK][{provider.upper()}] Push on {branch} ({short}) by {user or 'unknown'}, "
                    f"{commit_count} commit(s)")

        if commit_hash and not self._claim(repo_url, commit_hash):
            logger.info(f"[WEBHOOK] Commit {short} already handled, ignoring")
            with self._lock:
                self._stats["duplicates"] += 1
            return {"success": True, "skipped": True, "reason": "duplicate"}

        jobs = self.find_matching_jobs(repo_url, branch)
        if not jobs:
            logger.warning(f"[WEBHOOK] No job matches repo {normalize_repo_url(repo_url)} branch {branch}")
            if commit_hash:
                self._release(repo_url, commit_hash)
            return {"success": False, "reason": "no_matching_jobs"}

        results = []
        for job in jobs:
            try:
                entry_id = self.work_queue.add_job(
                    job.id, job.name, Priority.HIGH.value, max_retries=WEBHOOK_MAX_RETRIES,
                    metadata={"source": "webhook", "branch": branch, "commit_hash": commit_hash,
                              "skip_git_check": True, "triggered_by": user},
                )
            except QueueError as e:
                logger.error(f"[WEBHOOK] Could not queue job '{job.name}': {e}")
                results.append({"job_id": job.id, "job_name": job.name, "status": "failed", "error": str(e)})
                continue
            logger.info(f"[WEBHOOK] Job '{job.name}' queued as {entry_id}")
            results.append({"job_id": job.id, "job_name": job.name, "queue_entry_id": entry_id, "status": "queued"})

        queued = sum(1 for r in results if r["status"] == "queued")
        with self._lock:
            self._stats["triggered_builds"] += queued
        return {"success": True, "triggered_jobs": queued, "results": results}

    def find_matching_jobs(self, repo_url: Optional[str], branch: str) -> List[Job]:
        target = normalize_repo_url(repo_url)
        if not target:
            return []
        matches = []
        for job in self.job_manager.list_jobs():
            if not job.enabled or not job.git or not job.schedule.accepts_webhook:
                continue
            if normalize_repo_url(job.git.repo_url) != target:
                continue
            if job.git.rule_for(branch):
                matches.append(job)
        return matches

    # --- duplicate suppression ----------------------------------------

    def _key(self, repo_url: Optional[str], commit_hash: str) -> str:
        return f"{normalize_repo_url(repo_url)}:{commit_hash}"

    def _claim(self, repo_url: Optional[str], commit_hash: str) -> bool:
        """Marks the commit as handled. False if it already was within the duplicate window."""
        now = time.monotonic()
        key = self._key(repo_url, commit_hash)
        with self._lock:
            for stale in [k for k, at in self._processed.items() if now - at > DUPLICATE_WINDOW_SECONDS]:
                del self._processed[stale]
            if key in self._processed:
                return False
            self._processed[key] = now
            return True

    def _release(self, repo_url: Optional[str], commit_hash: str):
        with self._lock:
            self._processed.pop(self._key(repo_url, commit_hash), None)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            stats["cached_commits"] = len(self._processed)
        return stats
