# /src/draftsync/gateway/base.py
# Abstract PersistenceGateway and AssistantProxy interfaces

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class SaveResult:
    """Outcome of a snapshot save.

    ``id_mappings`` maps transient client ids to server-assigned ids.
    """
    success: bool
    id_mappings: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class AssistantReply:
    """Reply from the AI proxy, optionally with a partial project update."""
    reply: Optional[str]
    updated_project: Optional[Dict[str, Any]] = None


# An idea id, or the fields that identify it: {content, location, section_id}
ItemRef = Union[int, str, Dict[str, Any]]


class PersistenceGateway(ABC):
    """Abstract base class for the remote persistence boundary.

    All operations are request/response and may fail. Implementations
    raise TransportError for network failures and non-success responses,
    and SerializationError for payloads that cannot be parsed.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections, create tables or directories."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release any underlying resources."""
        pass

    @abstractmethod
    async def load_snapshot(self) -> Optional[Dict[str, Any]]:
        """Load the stored project snapshot, or None when none exists."""
        pass

    @abstractmethod
    async def save_snapshot(self, snapshot: Dict[str, Any]) -> SaveResult:
        """Persist a full project snapshot (chat history excluded)."""
        pass

    @abstractmethod
    async def append_message(self, session_id: str, role: str, content: str,
                             timestamp: Optional[str]) -> bool:
        """Append one chat message to the remote log."""
        pass

    @abstractmethod
    async def load_message_page(self, limit: int, before: Optional[str] = None,
                                session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Load up to ``limit`` messages, newest first.

        Args:
            limit: Page size
            before: Only messages strictly older than this timestamp
            session_id: Restrict to one chat session; None means all sessions
        """
        pass

    @abstractmethod
    async def delete_item(self, ref: ItemRef) -> bool:
        """Best-effort delete of a planning item."""
        pass

    # Version history. A save versions a phase document on its first save,
    # when it carries change_summary "Manual save", or when its word count
    # moved by the version threshold.

    @abstractmethod
    async def list_versions(self, phase: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Saved versions of one phase document, newest first.

        Each version has phase, version_number, content, word_count,
        change_summary and created_at (epoch seconds).
        """
        pass

    @abstractmethod
    async def get_version(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        """One version, or None when it does not exist."""
        pass

    @abstractmethod
    async def restore_version(self, phase: str, version_number: int) -> bool:
        """Make a version the phase's current content and record the restore.

        Returns False when the version does not exist.
        """
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


class AssistantProxy(ABC):
    """The AI proxy: turns a prompt plus project context into a reply."""

    @abstractmethod
    async def request_reply(self, user_input: str,
                            project: Optional[Dict[str, Any]] = None) -> AssistantReply:
        pass
