"""Error taxonomy for synchronization."""


class SyncError(Exception):
    """Base class for sync errors."""


class ValidationError(SyncError):
    """A task or tombstone record could not be coerced.

    Always recovered by dropping or defaulting the record.
    """


class Unauthorized(SyncError):
    """The remote rejected our credentials."""


class TransportError(SyncError):
    """Network failure or a non-success HTTP status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotConfigured(SyncError):
    """No sync endpoint has been configured."""


class LockBusy(SyncError):
    """Another sync attempt holds a live lease."""
