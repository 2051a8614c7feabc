"""
Error taxonomy for stack operations.

Every error carries the HTTP status code the API layer answers with.
"""
import errno
from typing import Optional


class StackError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StackError):
    """Missing or malformed input. Raised before any side effect."""
    status_code = 400


class NotFoundError(StackError):
    status_code = 404


class ConflictError(StackError):
    """Port already bound, volume in use, ..."""
    status_code = 409


class PermissionDeniedError(StackError):
    status_code = 403


class ServiceUnavailableError(StackError):
    """Docker daemon (or the docker CLI) is unreachable."""
    status_code = 503


class CommandError(StackError):
    """
    A docker compose invocation exited non-zero or timed out.
    `output` holds the combined stdout/stderr.
    """

    def __init__(self, message: str, output: str = "", returncode: Optional[int] = None,
                 timed_out: bool = False):
        super().__init__(message)
        self.output = output
        self.returncode = returncode
        self.timed_out = timed_out


class DeploymentError(StackError):
    """
    Failed `up`. Always keeps the raw command output.
    reason: "port_conflict" | "dns" | "generic"
    """

    def __init__(self, message: str, output: str = "", reason: str = "generic"):
        super().__init__(message)
        self.output = output
        self.reason = reason
        if reason == "port_conflict":
            self.status_code = ConflictError.status_code


_PORT_CONFLICT_PATTERNS = (
    "port is already allocated",
    "address already in use",
    "bind for",
)
_DNS_PATTERNS = (
    "no such host",
    "temporary failure in name resolution",
    "could not resolve",
    "name or service not known",
)
_PERMISSION_PATTERNS = (
    "permission denied",
    "operation not permitted",
)
_UNAVAILABLE_PATTERNS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
)


def _matches(text: str, patterns) -> bool:
    return any(p in text for p in patterns)


def classify_failure(exc: BaseException) -> StackError:
    """
    Map a failure from the create path to the error kind surfaced to callers.
    """
    if isinstance(exc, CommandError):
        output = exc.output or exc.message
        lowered = output.lower()
        if _matches(lowered, _UNAVAILABLE_PATTERNS):
            return ServiceUnavailableError(f"Docker daemon unreachable: {output}")
        if _matches(lowered, _PORT_CONFLICT_PATTERNS):
            return DeploymentError(
                f"Failed to deploy stack, port already in use: {output}",
                output=output,
                reason="port_conflict",
            )
        if _matches(lowered, _DNS_PATTERNS):
            return DeploymentError(
                f"Failed to deploy stack, hostname resolution failed: {output}",
                output=output,
                reason="dns",
            )
        if _matches(lowered, _PERMISSION_PATTERNS):
            return PermissionDeniedError(f"Permission denied while deploying stack: {output}")
        return DeploymentError(f"Failed to deploy stack: {output}", output=output)

    if isinstance(exc, StackError):
        return exc

    if isinstance(exc, PermissionError) or (
        isinstance(exc, OSError) and exc.errno in (errno.EACCES, errno.EPERM)
    ):
        return PermissionDeniedError(f"Permission denied: {exc}")

    return DeploymentError(f"Failed to deploy stack: {exc}", output=str(exc))
