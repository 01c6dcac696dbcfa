"""Exception types for DEVSYNC.

Retryable store failures (``ThrottledError``, ``TransientStoreError``) are
absorbed by the writer's backoff loop. Everything else raised while a
cross-sync phase runs aborts the run and surfaces as ``CrossSyncError``.
"""


class DevSyncError(Exception):
    """Base class for all DEVSYNC errors."""


class ConfigurationError(DevSyncError):
    """Required configuration is missing or invalid."""


class AuthenticationError(DevSyncError):
    """A source API rejected our credentials."""


class SourceError(DevSyncError):
    """A source catalog could not be read."""


class ValidationError(DevSyncError):
    """Caller supplied an invalid argument (bad page size, state or token)."""


class StoreError(DevSyncError):
    """The document store failed an operation."""


class ThrottledError(StoreError):
    """The store asked us to back off (HTTP 429 / capacity exceeded)."""

    def __init__(self, message: str = "Request throttled (429)", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientStoreError(StoreError):
    """A store failure that is expected to clear on its own (timeouts, resets)."""


class SyncInProgressError(DevSyncError):
    """A cross-sync run is already holding the run lease."""


class CrossSyncError(DevSyncError):
    """A cross-sync phase failed; the run produced no result."""

    def __init__(self, phase: str, cause: BaseException) -> None:
        super().__init__(f"Cross-sync failed during {phase}: {cause}")
        self.phase = phase
        self.cause = cause
