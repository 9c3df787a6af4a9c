# /src/draftsync/gateway/memory_gateway.py
# In-memory PersistenceGateway and AssistantProxy implementations

import asyncio
import copy
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from ..errors import TransportError
from ..snapshot import CHAT_HISTORY_KEY
from .base import AssistantProxy, AssistantReply, ItemRef, PersistenceGateway, SaveResult
from .records import (
    VersionLog,
    assign_stable_ids,
    delete_from_snapshot,
    page_records,
    pop_change_summaries,
    restore_into,
    restored_summary,
)


class MemoryGateway(PersistenceGateway):
    """In-memory gateway for testing and development.

    Data is lost when the process exits. ``latency`` delays every call so
    overlapping operations can be exercised; ``fail()`` makes an operation
    raise until ``heal()`` is called. ``calls`` counts requests per
    operation.
    """

    def __init__(self, snapshot: Optional[Dict[str, Any]] = None, latency: float = 0.0):
        self._snapshot = copy.deepcopy(snapshot)
        self._messages: List[Dict[str, Any]] = []
        self._next_message_id = 1
        self._next_idea_id = 1
        self._versions = VersionLog()
        self._failures: Dict[str, BaseException] = {}
        self.latency = latency
        self.calls: Counter = Counter()
        self.saved: List[Dict[str, Any]] = []

    async def initialize(self) -> None:
        """Initialize the gateway (no-op for memory)."""
        pass

    async def close(self) -> None:
        """Close the gateway (no-op for memory)."""
        pass

    # ========== Test controls ==========

    def fail(self, operation: str, error: Optional[BaseException] = None) -> None:
        self._failures[operation] = error or TransportError(f"{operation} unavailable")

    def heal(self, operation: Optional[str] = None) -> None:
        if operation is None:
            self._failures.clear()
        else:
            self._failures.pop(operation, None)

    def add_record(self, role: str, content: str, timestamp: Any = None,
                   session_id: Optional[str] = "default", record_id: Any = None,
                   **extra: Any) -> Dict[str, Any]:
        """Seed raw history exactly as the server would store it."""
        if record_id is None:
            record_id = self._next_message_id
        if str(record_id).isdigit():
            self._next_message_id = max(self._next_message_id, int(record_id) + 1)
        record = {"id": record_id, "session_id": session_id, "role": role,
                  "content": content, "timestamp": timestamp, **extra}
        self._messages.append(record)
        return record

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self._messages]

    @property
    def snapshot(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._snapshot)

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if operation in self._failures:
            raise self._failures[operation]

    # ========== Gateway operations ==========

    async def load_snapshot(self) -> Optional[Dict[str, Any]]:
        await self._enter("load_snapshot")
        return copy.deepcopy(self._snapshot)

    async def save_snapshot(self, snapshot: Dict[str, Any]) -> SaveResult:
        await self._enter("save_snapshot")
        stored = copy.deepcopy(snapshot)
        stored.pop(CHAT_HISTORY_KEY, None)
        summaries = pop_change_summaries(stored)
        mappings, self._next_idea_id = assign_stable_ids(stored, self._next_idea_id)
        self._versions.record_snapshot(self._snapshot, stored, summaries)
        self._snapshot = stored
        self.saved.append(copy.deepcopy(stored))
        return SaveResult(success=True, id_mappings=mappings)

    async def append_message(self, session_id: str, role: str, content: str,
                             timestamp: Optional[str]) -> bool:
        await self._enter("append_message")
        self.add_record(role, content, timestamp, session_id=session_id or "default")
        return True

    async def load_message_page(self, limit: int, before: Optional[str] = None,
                                session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        await self._enter("load_message_page")
        return page_records(self._messages, limit, before, session_id)

    async def delete_item(self, ref: ItemRef) -> bool:
        await self._enter("delete_item")
        return delete_from_snapshot(self._snapshot, ref)

    async def list_versions(self, phase: str, limit: int = 50) -> List[Dict[str, Any]]:
        await self._enter("list_versions")
        return self._versions.history(phase, limit)

    async def get_version(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        await self._enter("get_version")
        return self._versions.get(phase, version_number)

    async def restore_version(self, phase: str, version_number: int) -> bool:
        await self._enter("restore_version")
        version = self._versions.get(phase, version_number)
        if version is None:
            return False
        self._snapshot = restore_into(self._snapshot, version)
        self._versions.record(phase, version["content"], version["word_count"], restored_summary(version_number))
        return True


class ScriptedAssistant(AssistantProxy):
    """Assistant proxy that answers from a callable or a fixed reply.

    Useful for tests and offline demos; ``prompts`` and ``projects`` record
    every request.
    """

    def __init__(self, responder: Optional[Callable[[str], Any]] = None,
                 reply: str = "OK", latency: float = 0.0):
        self._responder = responder
        self._reply = reply
        self.latency = latency
        self.prompts: List[str] = []
        self.projects: List[Optional[Dict[str, Any]]] = []

    async def request_reply(self, user_input: str,
                            project: Optional[Dict[str, Any]] = None) -> AssistantReply:
        self.prompts.append(user_input)
        self.projects.append(copy.deepcopy(project))
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._responder is None:
            return AssistantReply(reply=self._reply)
        result = self._responder(user_input)
        if isinstance(result, AssistantReply):
            return result
        return AssistantReply(reply=result)
