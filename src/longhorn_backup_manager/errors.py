from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ReconcileReport


class BackupManagerError(RuntimeError):
    """Base class for failures surfaced to operators."""

    exit_code = 1


class NotFoundError(BackupManagerError):
    """Raised when a claim, volume, or backup does not exist."""


class SizeResolutionError(NotFoundError):
    """Raised when no restore size can be determined and fallback is disabled."""


class AmbiguousSourceError(BackupManagerError):
    """Raised when a restore source cannot be located from the given inputs."""


class ConflictError(BackupManagerError):
    """Raised when a target already exists or was modified concurrently."""


class ConfirmationDeclinedError(BackupManagerError):
    """Raised when a destructive or risky step was not confirmed."""


class BindTimeoutError(BackupManagerError):
    """Raised when a restored claim does not become Bound in time."""


class ExternalUnavailableError(BackupManagerError):
    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code if exit_code else 2


class PartialFailureError(BackupManagerError):
    exit_code = 3

    def __init__(self, report: ReconcileReport) -> None:
        failed = ", ".join(failure.volume_id for failure in report.failures)
        super().__init__(f"{len(report.failures)} volume(s) failed to reconcile: {failed}")
        self.report = report
