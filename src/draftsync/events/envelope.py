# /src/draftsync/events/envelope.py
# StoreEvent - the envelope handed to every subscriber

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .types import FailureKind, StoreEventType


@dataclass(frozen=True)
class AutosaveStatus:
    """Payload of the autosave_* events."""
    reason: str
    delay: Optional[float] = None
    at: Optional[str] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class TranscriptFailure:
    """Payload of TRANSCRIPT_ERROR: what failed and whether a retry exists."""
    session_id: str
    kind: FailureKind
    message: str
    retryable: bool = True


@dataclass
class StoreEvent:
    """Envelope for a dispatched store event.

    Subscribers receive the envelope rather than the bare payload so that
    the event type travels with the data.
    """
    event_id: str
    event_type: StoreEventType
    timestamp: datetime
    payload: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, event_type: StoreEventType, payload: Any = None, **metadata: Any) -> "StoreEvent":
        """Factory method with auto-generated ID and timestamp."""
        return cls(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=datetime.now(timezone.utc),
            payload=payload,
            metadata=dict(metadata),
        )
