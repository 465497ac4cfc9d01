class ForgeWatchError(Exception):
    """Base class for all errors raised by the ForgeWatch engine."""


class JobConfigError(ForgeWatchError):
    """A job definition is incomplete or invalid. Never retried."""


class ScriptNotFound(JobConfigError):
    def __init__(self, script_path: str):
        super().__init__(f"Build script not found: {script_path}")
        self.script_path = script_path


class SCMConnectionError(ForgeWatchError):
    """The remote repository is unreachable or rejected the credentials."""


class BuildSetupError(ForgeWatchError):
    """Working directories or the external build tool are unavailable."""


class BuildFailedError(ForgeWatchError):
    """A build ran and failed. The queue may retry it."""

    def __init__(self, message: str, build_id: str = None):
        super().__init__(message)
        self.build_id = build_id


class QueueError(ForgeWatchError):
    pass


class WebhookAuthError(ForgeWatchError):
    """A webhook request failed signature or token verification."""
