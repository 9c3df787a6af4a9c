# /src/draftsync/events/types.py
# Event type definitions for the store bus

from enum import Enum


class StoreEventType(str, Enum):
    """Closed set of events dispatched through an ObservableStore.

    Payloads by event:
    - STATE_CHANGED, READY: ProjectSnapshot
    - SAVED: the saved snapshot as a dict
    - ERROR: the exception
    - AUTOSAVE_*: AutosaveStatus
    - TRANSCRIPT_ERROR: TranscriptFailure
    """

    STATE_CHANGED = "stateChanged"
    READY = "ready"
    SAVED = "saved"
    ERROR = "error"

    # Autosave status
    AUTOSAVE_SCHEDULED = "autosave_scheduled"
    AUTOSAVE_SAVING = "autosave_saving"
    AUTOSAVE_SAVED = "autosave_saved"
    AUTOSAVE_ERROR = "autosave_error"
    AUTOSAVE_OFFLINE = "autosave_offline"

    # Chat transcript
    TRANSCRIPT_ERROR = "transcript_error"


class FailureKind(str, Enum):
    """How a gateway call failed, as shown to the user."""
    TRANSPORT = "transport"
    SERIALIZATION = "serialization"
