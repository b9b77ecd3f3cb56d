"""Sync error taxonomy.

Every pipeline step raises one of these (or lets an unexpected exception
escape); the LockRetrySupervisor dispatches on the type to decide the
change queue outcome.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for classified sync failures."""

    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SyncError):
    """Entity missing, mandatory field empty or business key malformed.

    Retrying cannot help, so the entry is skipped.
    """

    retryable = False


class DependencyNotReadyError(SyncError):
    """A cross-entity link cannot be resolved on the remote side yet."""

    retryable = True


class RemoteApiError(SyncError):
    """Remote CRM call failed.

    Args:
        message: Human-readable failure description.
        retryable: True for timeouts, 5xx and throttling; False for semantic rejections.
        status_code: HTTP status when the failure came with a response.
        error_code: Error code from the remote error body, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.error_code = error_code


class RemoteRateLimitError(RemoteApiError):
    """Remote CRM throttled the request (always retryable)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(
            message,
            retryable=True,
            status_code=status_code,
            error_code=error_code,
        )
