# /src/draftsync/__init__.py
# draftsync - client-side sync core for an assisted-writing workspace

from .store import ObservableStore
from .snapshot import ProjectSnapshot, ProjectMetadata, PhaseDocument, PlanDocument, IdeaItem, IdeaLocation, Section
from .messages import ChatMessage, MessageRole, MessageStatus, message_key, normalize_timestamp
from .autosave import AutosaveScheduler, MANUAL_SAVE_REASON
from .transcript import TranscriptEngine, TranscriptState, PaginationCursor
from .reconciler import UpdateReconciler
from .session import WritingSession
from .config import Settings

# Errors
from .errors import (
    DraftSyncError,
    TransportError,
    SerializationError,
    ValidationError,
    ConflictError,
)

# Events
from .events import (
    StoreEvent,
    StoreEventType,
    AutosaveStatus,
    TranscriptFailure,
    FailureKind,
)

# Gateways
from .gateway import (
    PersistenceGateway,
    AssistantProxy,
    SaveResult,
    AssistantReply,
    MemoryGateway,
    ScriptedAssistant,
    JSONGateway,
    SQLiteGateway,
    MongoDBGateway,
    HTTPGateway,
)

# Views
from .views import (
    TranscriptView,
    TextTranscriptView,
    MarkdownTranscriptView,
)

__version__ = "1.0.0"

__all__ = [
    # Core
    "ObservableStore",
    "AutosaveScheduler",
    "MANUAL_SAVE_REASON",
    "TranscriptEngine",
    "TranscriptState",
    "PaginationCursor",
    "UpdateReconciler",
    "WritingSession",
    "Settings",
    # Model
    "ProjectSnapshot",
    "ProjectMetadata",
    "PhaseDocument",
    "PlanDocument",
    "IdeaItem",
    "IdeaLocation",
    "Section",
    "ChatMessage",
    "MessageRole",
    "MessageStatus",
    "message_key",
    "normalize_timestamp",
    # Errors
    "DraftSyncError",
    "TransportError",
    "SerializationError",
    "ValidationError",
    "ConflictError",
    # Events
    "StoreEvent",
    "StoreEventType",
    "AutosaveStatus",
    "TranscriptFailure",
    "FailureKind",
    # Gateways
    "PersistenceGateway",
    "AssistantProxy",
    "SaveResult",
    "AssistantReply",
    "MemoryGateway",
    "ScriptedAssistant",
    "JSONGateway",
    "SQLiteGateway",
    "MongoDBGateway",
    "HTTPGateway",
    # Views
    "TranscriptView",
    "TextTranscriptView",
    "MarkdownTranscriptView",
]
