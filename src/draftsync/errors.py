# /src/draftsync/errors.py
# Error taxonomy for the synchronization core


class DraftSyncError(Exception):
    """Base class for all draftsync errors."""


class TransportError(DraftSyncError):
    """Network failure, timeout or non-success response from a gateway.

    Recoverable: retried on the next natural trigger or an explicit retry.
    """


class SerializationError(DraftSyncError):
    """A gateway returned a payload that is not JSON or cannot be parsed."""


class ValidationError(DraftSyncError):
    """Malformed message or snapshot, rejected locally and never persisted."""


class ConflictError(DraftSyncError):
    """Duplicate message or overlapping save.

    Resolved by the dedup and coalescing rules; never surfaced to the user.
    """
