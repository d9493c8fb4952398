"""Error taxonomy surfaced by reconciliation.

Every error raised out of the engine derives from GprojError and records the
pipeline step that failed, so the CLI can report which remote side effect
did not happen. Nothing here is retried automatically: re-running the whole
reconciliation is the recovery path.
"""

from __future__ import annotations

from pathlib import Path


class GprojError(Exception):
    """Base class for all errors surfaced to the caller."""

    # Short tag used as the message prefix on the command line
    kind = "error"

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        self.step = step

    def __str__(self) -> str:
        message = super().__str__()
        if self.step:
            return f"{message} (step: {self.step})"
        return message


class SpecValidationError(GprojError):
    """The spec is invalid. Raised before any remote call is made."""

    kind = "invalid spec"


class NotFoundOrForbiddenError(GprojError):
    """The provider answered 403/404 for a project lookup.

    Google does not reveal whether a project id exists in someone else's
    account, so "does not exist" and "exists but is not visible to you" are
    indistinguishable. Only the creation path treats this as "does not exist".
    """

    kind = "not found or forbidden"


class RemoteCallError(GprojError):
    """A synchronous remote call failed."""

    kind = "remote call failed"

    def __init__(self, message: str, *, status: int | None = None, step: str | None = None) -> None:
        super().__init__(message, step=step)
        self.status = status


class RemoteOperationError(GprojError):
    """A long-running operation finished with a provider error."""

    kind = "operation failed"

    def __init__(
        self,
        operation: str,
        code: int | None,
        message: str,
        *,
        step: str | None = None,
    ) -> None:
        super().__init__(f"error performing operation {operation}: {code} {message}", step=step)
        self.operation = operation
        self.code = code
        self.provider_message = message


class OperationTimeoutError(GprojError):
    """A long-running operation did not finish before its deadline."""

    kind = "operation timed out"

    def __init__(self, operation: str, timeout_seconds: float, *, step: str | None = None) -> None:
        super().__init__(
            f"operation {operation} did not complete within {timeout_seconds:g}s", step=step
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class ReconcileTimeoutError(GprojError):
    """The whole reconciliation run exceeded its deadline and was cancelled."""

    kind = "timed out"


class ReconcileCancelledError(GprojError):
    """The run was aborted by a signal before it finished."""

    kind = "cancelled"


class OperationStatusError(GprojError):
    """The status of a long-running operation could not be determined.

    Distinct from "not done yet": the poll request itself failed.
    """

    kind = "operation status unknown"


class AmbiguousBillingAccountError(GprojError):
    """Auto-selection found zero or several open billing accounts."""

    kind = "ambiguous billing account"

    def __init__(self, open_count: int, total_count: int, *, step: str | None = None) -> None:
        super().__init__(
            f"no billing account in spec and found {total_count} billing accounts "
            f"(of which {open_count} were open)",
            step=step,
        )
        self.open_count = open_count
        self.total_count = total_count


class BillingNotEnabledError(GprojError):
    """The billing update call succeeded but billing is still reported inactive."""

    kind = "billing not enabled"


class UnknownServiceError(GprojError):
    """A requested API is not present in the project's service catalog."""

    kind = "unknown service"

    def __init__(self, name: str, *, step: str | None = None) -> None:
        super().__init__(f"no such API: {name}", step=step)
        self.name = name


class BatchLimitExceededError(GprojError):
    """More services need enabling than a single batch request allows."""

    kind = "batch limit exceeded"

    def __init__(self, count: int, limit: int, *, step: str | None = None) -> None:
        super().__init__(
            f"cannot enable more than {limit} APIs at a time ({count} requested)", step=step
        )
        self.count = count
        self.limit = limit


class CacheCorruptionError(GprojError):
    """A cached catalog document exists but cannot be decoded."""

    kind = "corrupt cache"

    def __init__(self, path: Path, reason: str, *, step: str | None = None) -> None:
        super().__init__(
            f"error decoding cached API listing; try deleting {path}: {reason}", step=step
        )
        self.path = path


class CacheWriteError(GprojError):
    """The catalog could not be cached. Reported as a warning only."""

    kind = "cache write failed"

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"unable to cache results at {path}: {reason}")
        self.path = path


class ProjectNumberUnavailableError(GprojError):
    """The project number was used before the provider assigned one."""

    kind = "project number unavailable"
