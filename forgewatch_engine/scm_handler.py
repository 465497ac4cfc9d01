import base64
import re
import git
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit, quote

from .exceptions import SCMConnectionError
from .logger_setup import logger


@dataclass
class CommitCheckResult:
    ok: bool
    has_new: bool = False
    remote_hash: str = ""
    local_hash: str = ""
    updated: bool = False
    commit_message: str = ""
    error: Optional[str] = None
    stderr: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def auth_user_for(provider: Optional[str]) -> str:
    return "x-access-token" if str(provider or "").lower() == "github" else "oauth2"


def build_auth_url(repo_url: str, token: Optional[str], provider: Optional[str] = None) -> str:
    """Embeds the token into an http(s) URL. Raises ValueError if the URL cannot be rebuilt."""
    if not token or not repo_url.lower().startswith(("http://", "https://")):
        return repo_url
    parts = urlsplit(repo_url)
    if not parts.hostname:
        raise ValueError(f"Cannot parse repository URL: {repo_url}")
    netloc = f"{auth_user_for(provider)}:{quote(token, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def auth_header_env(token: str, provider: Optional[str] = None) -> dict:
    basic = base64.b64encode(f"{auth_user_for(provider)}:{token}".encode("utf-8")).decode("ascii")
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "http.extraHeader",
        "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
    }


def normalize_repo_url(url: Optional[str]) -> str:
    """``https://user@host/group/repo.git/`` and ``http://host/group/repo`` compare equal."""
    if not url:
        return ""
    normalized = url.strip().rstrip("/")
    normalized = re.sub(r"\.git$", "", normalized)
    normalized = re.sub(r"^[a-z][a-z0-9+.-]*://", "", normalized, flags=re.IGNORECASE)
    normalized = re.sub(r"^[^@/]+@", "", normalized)
    return normalized.lower()


def mask_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if parts.password or parts.username:
        netloc = f"***@{parts.hostname or ''}"
        if parts.port:
            netloc += f":{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    return url


def _first_hash(ls_remote_output: str) -> str:
    # "<hash>\trefs/heads/<branch>", one line per matching ref
    for line in (ls_remote_output or "").strip().splitlines():
        if line.strip():
            return line.split("\t")[0].strip()
    return ""


CREDENTIALS_IN_URL = re.compile(r"(\w+://)[^/@\s]+@")


def _stderr(e: git.exc.GitCommandError) -> str:
    """Error text of a git call with any URL credentials masked."""
    return CREDENTIALS_IN_URL.sub(r"\1***@", (e.stderr or str(e)).strip())


class SCMHandler:
    """Commit detection and working copy synchronisation, one call per (repo, branch)."""

    def __init__(self, git_executable: Optional[str] = None):
        if git_executable:
            git.refresh(git_executable)

    def _remote_access(self, repo_url: str, token: Optional[str], provider: Optional[str]) -> Tuple[str, dict]:
        """Returns (url, extra environment). URL credentials first, auth header as fallback."""
        try:
            return build_auth_url(repo_url, token, provider), {}
        except ValueError as e:
            logger.warning(f"[GIT] Could not embed credentials in URL ({e}), using auth header instead")
            return repo_url, auth_header_env(token, provider)

    def check_connection(self, repo_url: str, provider: Optional[str] = None, token: Optional[str] = None) -> str:
        if not repo_url:
            raise SCMConnectionError("Repository URL not configured")
        url, env = self._remote_access(repo_url, token, provider)
        g = git.cmd.Git()
        try:
            with g.custom_environment(**env):
                output = g.ls_remote(url, "HEAD")
        except git.exc.GitCommandError as e:
            raise SCMConnectionError(f"Connection check failed for {mask_url(url)}: {_stderr(e)}")
        return _first_hash(output)

    def get_remote_hash(self, repo_url: str, branch: str, token: Optional[str] = None,
                        provider: Optional[str] = None) -> Optional[str]:
        """Latest commit of a remote branch via ls-remote, without a working copy."""
        url, env = self._remote_access(repo_url, token, provider)
        g = git.cmd.Git()
        try:
            with g.custom_environment(**env):
                output = g.ls_remote("--heads", url, branch)
        except git.exc.GitCommandError as e:
            logger.error(f"[GIT] ls-remote failed for {mask_url(url)} branch {branch}: {_stderr(e)}")
            return None
        commit_hash = _first_hash(output)
        if not commit_hash:
            logger.warning(f"[GIT] No remote branch '{branch}' found at {mask_url(url)}")
        return commit_hash or None

    def ensure_clone(self, repo_path: Path, repo_url: str, branch: Optional[str] = None,
                     token: Optional[str] = None, provider: Optional[str] = None) -> Path:
        """Clones repo_url into repo_path unless a working copy is already there."""
        repo_path = Path(repo_path)
        if (repo_path / ".git").exists():
            return repo_path
        repo_path.mkdir(parents=True, exist_ok=True)
        url, env = self._remote_access(repo_url, token, provider)
        logger.info(f"[GIT][CLONE] Cloning {mask_url(url)} (branch: {branch or 'default'}) into {repo_path}...")
        clone_kwargs = {"branch": branch} if branch else {}
        try:
            repo = git.Repo.clone_from(url, repo_path, env=env or None, **clone_kwargs)
        except git.exc.GitCommandError as e:
            raise SCMConnectionError(f"git clone failed for {mask_url(url)}: {_stderr(e)}")
        if url != repo_url:
            # keep the token out of .git/config
            repo.remotes.origin.set_url(repo_url)
        logger.info("[GIT][CLONE] Clone complete.")
        return repo_path

    def check_new_commit_and_pull(self, repo_path, branch: str, repo_url: str, token: Optional[str] = None,
                                  provider: Optional[str] = None, do_pull: bool = True) -> CommitCheckResult:
        if not repo_path:
            return CommitCheckResult(ok=False, error="repo_not_configured")
        repo_path = Path(repo_path)
        if not repo_path.exists():
            return CommitCheckResult(ok=False, error="repo_not_exists")

        try:
            repo = git.Repo(repo_path)
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
            return CommitCheckResult(ok=False, error="repo_not_exists", stderr=str(e))

        url, env = self._remote_access(repo_url, token, provider)
        g = repo.git

        with g.custom_environment(**env):
            try:
                g.fetch(url, branch)
            except git.exc.GitCommandError as e:
                logger.error(f"[GIT] fetch failed in {repo_path}: {_stderr(e)}")
                return CommitCheckResult(ok=False, error="fetch_failed", stderr=_stderr(e))

            try:
                remote_hash = _first_hash(g.ls_remote("--heads", url, branch))
            except git.exc.GitCommandError as e:
                logger.error(f"[GIT] ls-remote failed for {mask_url(url)}: {_stderr(e)}")
                return CommitCheckResult(ok=False, error="ls_remote_failed", stderr=_stderr(e))

        commit_message = ""
        if remote_hash:
            try:
                commit_message = g.log("--format=%B", "-n", "1", remote_hash).strip()
            except git.exc.GitCommandError:
                logger.debug(f"[GIT] Commit message for {remote_hash} not available locally")
        else:
            logger.warning(f"[GIT] Remote branch '{branch}' not found at {mask_url(url)}")

        try:
            local_hash = g.rev_parse("HEAD").strip()
        except git.exc.GitCommandError as e:
            logger.error(f"[GIT] rev-parse HEAD failed in {repo_path}: {_stderr(e)}")
            return CommitCheckResult(ok=False, remote_hash=remote_hash, error="rev_parse_failed", stderr=_stderr(e))

        logger.debug(f"[GIT] {repo_path} branch {branch}: remote={remote_hash or '-'} local={local_hash}")

        if not remote_hash or remote_hash == local_hash:
            return CommitCheckResult(ok=True, has_new=False, remote_hash=remote_hash, local_hash=local_hash,
                                     commit_message=commit_message)

        if not do_pull:
            return CommitCheckResult(ok=True, has_new=True, remote_hash=remote_hash, local_hash=local_hash,
                                     commit_message=commit_message)

        try:
            with g.custom_environment(**env):
                g.pull(url, branch)
            g.reset("--hard", remote_hash)
        except git.exc.GitCommandError as pull_error:
            logger.warning(f"[GIT] pull failed ({_stderr(pull_error)}), resetting to {remote_hash}")
            try:
                g.reset("--hard", remote_hash)
            except git.exc.GitCommandError as e:
                logger.error(f"[GIT] reset failed in {repo_path}: {_stderr(e)}")
                return CommitCheckResult(ok=False, has_new=True, remote_hash=remote_hash, local_hash=local_hash,
                                         commit_message=commit_message, error="reset_failed", stderr=_stderr(e))

        logger.info(f"[GIT] Updated {repo_path} from {local_hash[:8]} to {remote_hash[:8]} ({branch})")
        return CommitCheckResult(ok=True, has_new=True, remote_hash=remote_hash, local_hash=local_hash,
                                 updated=True, commit_message=commit_message)
