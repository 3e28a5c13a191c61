"""Exception hierarchy for the build fleet.

All errors inherit from :class:`FleetError` so callers can catch broadly or
narrowly. Each error may be tagged with the pipeline ``step`` that raised it,
which lets a caller tell "no node reachable" apart from "compile step failed"
without parsing the message.
"""

from typing import Any, Optional


class FleetError(Exception):
    """Base exception for all build fleet errors."""

    def __init__(self, message: str, *, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.step = step

    def to_dict(self) -> dict[str, Any]:
        """Structured form used in log events and CLI output."""
        return {"error": type(self).__name__, "step": self.step, "message": str(self)}


# ---------------------------------------------------------------------------
# Validation / configuration
# ---------------------------------------------------------------------------

class MissingFieldsError(FleetError):
    """Node registration payload lacks required fields."""

    def __init__(self, fields: list[str]) -> None:
        self.fields = list(fields)
        super().__init__(f"Missing required fields: {', '.join(self.fields)}")


class MissingConfigurationError(FleetError):
    """A required setting (coordinator URL, API key, CI builder) is absent."""

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(f"Missing configuration: {setting}")


class ValidationError(FleetError):
    """A caller-supplied value is malformed."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


# ---------------------------------------------------------------------------
# Registry / dispatch
# ---------------------------------------------------------------------------

class NoAvailableNodesError(FleetError):
    """No node matches the architecture, capacity and capability filter."""

    def __init__(self, architecture: str, capabilities: Optional[list[str]] = None) -> None:
        self.architecture = architecture
        self.capabilities = list(capabilities or [])
        super().__init__(
            f"No available nodes for {architecture}"
            + (f" with capabilities {self.capabilities}" if self.capabilities else "")
        )


class DispatchRejectedError(FleetError):
    """Admission control refused a job; registry state is unchanged."""


class NodeNotFoundError(DispatchRejectedError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class NodeBusyError(DispatchRejectedError):
    def __init__(self, node_id: str, current_jobs: int, max_concurrent: int, status: str) -> None:
        self.node_id = node_id
        self.current_jobs = current_jobs
        self.max_concurrent = max_concurrent
        self.status = status
        super().__init__(
            f"Node {node_id} cannot accept jobs "
            f"({current_jobs}/{max_concurrent}, status={status})"
        )


class DuplicateJobError(DispatchRejectedError):
    """A node returned a job id it already has in flight."""

    def __init__(self, node_id: str, job_id: str) -> None:
        self.node_id = node_id
        self.job_id = job_id
        super().__init__(f"Node {node_id} reused in-flight job id {job_id}")


# ---------------------------------------------------------------------------
# HTTP / remote builds
# ---------------------------------------------------------------------------

class HttpError(FleetError):
    """A peer answered with a non-success status code."""

    def __init__(self, status_code: int, body: Any, url: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status_code} from {url or 'peer'}: {body!r}")


class RequestFailedError(FleetError):
    """The request never produced a response (connect error, timeout, ...)."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Request to {url} failed: {reason}")


class CoordinatorUnavailableError(FleetError):
    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Build coordinator not reachable at {url}")


class BuildTimeoutError(FleetError, TimeoutError):
    """Remote build did not reach a terminal state in time."""

    def __init__(self, build_id: str, elapsed: float, timeout: float) -> None:
        self.build_id = build_id
        self.elapsed = elapsed
        self.timeout = timeout
        super().__init__(
            f"Build {build_id} not finished after {elapsed:.1f}s (timeout {timeout:.1f}s)"
        )


class BuildFailedError(FleetError):
    """The coordinator reported the build as failed."""

    def __init__(self, build_id: str, message: str) -> None:
        self.build_id = build_id
        self.message = message
        super().__init__(f"Build {build_id} failed: {message}")


class EmptyDownloadError(FleetError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Downloaded artifact is empty: {path}")


class CompileError(FleetError):
    """Local compilation failed."""

    def __init__(self, reason: Any, *, step: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(f"Local compilation failed: {reason}", step=step)
