# /src/draftsync/events/__init__.py
# Event primitives for the store bus

from .types import StoreEventType, FailureKind
from .envelope import StoreEvent, AutosaveStatus, TranscriptFailure

__all__ = [
    "StoreEventType",
    "FailureKind",
    "StoreEvent",
    "AutosaveStatus",
    "TranscriptFailure",
]
