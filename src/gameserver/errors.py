"""Error kinds raised by the game server lifecycle components."""

from typing import Optional


class GameServerError(Exception):
    """
    Base class for every failure surfaced by the orchestrator.

    `state` is filled in by the orchestrator with the workflow state that
    was active when the error was raised. `instance_retained` is True when
    the error aborted a workflow that left a cloud instance running.
    """

    kind = "GameServerError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message
        self.state: Optional[str] = None
        self.instance_retained = False

    def describe(self) -> str:
        return f"{self.kind}: {self.message}"


class NotConfigured(GameServerError):
    """Unknown server name, or the name is not visible to the caller's scope."""
    kind = "NotConfigured"


class NotRunning(GameServerError):
    """Stop was requested for a server with no instance."""
    kind = "NotRunning"


class NoSnapshotAvailable(GameServerError):
    kind = "NoSnapshotAvailable"


class ProviderError(GameServerError):
    """Non-2xx response (or transport failure) from the cloud API."""

    kind = "ProviderError"

    def __init__(self, status_code: Optional[int], body: str, method: str = "", path: str = ""):
        self.status_code = status_code
        self.body = body
        self.method = method
        self.path = path
        status = status_code if status_code is not None else "no response"
        target = f"{method} {path} -> " if method else ""
        super().__init__(f"Vultr API error: {target}{status} {body[:300]}")

    @property
    def transient(self) -> bool:
        """Connection failures, throttling and server-side errors."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class ReadinessTimeout(GameServerError, TimeoutError):
    kind = "ReadinessTimeout"

    def __init__(self, what: str, timeout_sec: float, last_seen=None):
        self.what = what
        self.timeout_sec = timeout_sec
        self.last_seen = last_seen
        super().__init__(f"Timeout waiting for {what} ({timeout_sec:g}s)")


class SnapshotUnverified(GameServerError):
    kind = "SnapshotUnverified"


class RemoteCommandError(GameServerError):
    kind = "RemoteCommandError"

    def __init__(self, command: str, exit_code: int, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Command failed (exit code: {exit_code}): {stderr}")


class RemoteReadError(GameServerError):
    kind = "RemoteReadError"


class LocalWriteError(GameServerError):
    kind = "LocalWriteError"
