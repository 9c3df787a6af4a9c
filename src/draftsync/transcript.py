# /src/draftsync/transcript.py
# TranscriptEngine - paginated, deduplicated chat history for one session

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import Settings
from .errors import ConflictError, SerializationError, ValidationError
from .events.envelope import TranscriptFailure
from .events.types import FailureKind, StoreEventType
from .gateway.base import PersistenceGateway
from .messages import ChatMessage, MessageRole, MessageStatus, timestamp_millis
from .store import ObservableStore
from .views.base import TranscriptView

AppendFailedCallback = Callable[[ChatMessage, Exception], None]
ReplyFactory = Callable[[str], Awaitable[str]]


class TranscriptState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


@dataclass
class PaginationCursor:
    """Where the next older page starts."""
    oldest_timestamp: Optional[str] = None
    has_more: bool = False
    page_size: int = 50


class TranscriptEngine:
    """Ordered, deduplicated message list for one chat session.

    Once the initial page has been fetched the remote log is authoritative:
    chat history pushed from a cached project snapshot is ignored while a
    load is running or after it completed.

    Messages are kept ascending by timestamp, ties by numeric id, with
    missing timestamps sorting as the epoch.
    """

    def __init__(
        self,
        store: ObservableStore,
        gateway: PersistenceGateway,
        view: Optional[TranscriptView] = None,
        session_id: str = "default",
        page_size: int = 50,
        history_timeout: Optional[float] = 0.8,
        recent_window: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._gateway = gateway
        self._view = view
        self._session_id = session_id or "default"
        self._page_size = page_size
        self._history_timeout = history_timeout
        self._recent_window = recent_window
        self._clock = clock

        self._state = TranscriptState.UNLOADED
        self._messages: List[ChatMessage] = []
        self._keys: Set[str] = set()
        self._recent: Dict[Tuple[MessageRole, str], float] = {}
        self._cursor = PaginationCursor(page_size=page_size)
        self._history_session: Optional[str] = self._session_id
        self._is_fetching_older = False
        self._append_failed: List[AppendFailedCallback] = []
        self._logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, store: ObservableStore, gateway: PersistenceGateway, settings: Settings,
                      view: Optional[TranscriptView] = None) -> "TranscriptEngine":
        return cls(
            store,
            gateway,
            view=view,
            session_id=settings.session_id,
            page_size=settings.page_size,
            history_timeout=settings.history_timeout_ms / 1000.0 if settings.history_timeout_ms > 0 else None,
            recent_window=settings.recent_window_ms / 1000.0,
        )

    # ========== State ==========

    @property
    def state(self) -> TranscriptState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def cursor(self) -> PaginationCursor:
        return replace(self._cursor)

    @property
    def has_more(self) -> bool:
        return self._cursor.has_more

    @property
    def is_fetching_older(self) -> bool:
        return self._is_fetching_older

    @property
    def view(self) -> Optional[TranscriptView]:
        return self._view

    def get_messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def on_append_failed(self, callback: AppendFailedCallback) -> None:
        """Be told when a message could not be written to the remote log."""
        self._append_failed.append(callback)

    # ========== Loading ==========

    async def load_initial(self, force_reload: bool = False) -> bool:
        """Fetch the newest page of history.

        A no-op while loading, and once loaded unless ``force_reload``
        which first drops all local transcript state. Returns True when the
        transcript is loaded afterwards.
        """
        if self._state is TranscriptState.LOADING:
            self._logger.debug(f"Initial load already running for {self._session_id}")
            return False
        if self._state is TranscriptState.LOADED and not force_reload:
            return True
        if force_reload:
            self.clear()

        self._state = TranscriptState.LOADING
        try:
            if self._history_timeout is not None:
                raw = await asyncio.wait_for(self._fetch_initial_page(), self._history_timeout)
            else:
                raw = await self._fetch_initial_page()
        except Exception as e:
            self._fail(e)
            return False

        batch = self._materialize(raw)
        self._messages = sorted(self._messages + batch, key=ChatMessage.sort_key)
        self._keys.update(message.key for message in batch)
        self._cursor.has_more = len(raw) >= self._page_size
        self._cursor.oldest_timestamp = self._oldest_timestamp(self._messages)
        self._state = TranscriptState.LOADED

        if self._view is not None:
            self._view.clear()
            self._view.render(self._messages)
        self._publish()
        self._logger.info(f"Loaded {len(batch)} messages for session {self._session_id}")
        return True

    async def _fetch_initial_page(self) -> List[Dict[str, Any]]:
        self._history_session = self._session_id
        raw = await self._gateway.load_message_page(self._page_size, None, self._session_id)
        if not raw and self._session_id is not None:
            # Histories written before sessions existed carry no session id
            self._logger.debug(f"No history for session {self._session_id}, retrying without session")
            self._history_session = None
            raw = await self._gateway.load_message_page(self._page_size, None, None)
        return raw or []

    def _fail(self, error: Exception) -> None:
        kind = FailureKind.SERIALIZATION if isinstance(error, SerializationError) else FailureKind.TRANSPORT
        failure = TranscriptFailure(
            session_id=self._session_id,
            kind=kind,
            message=str(error) or error.__class__.__name__,
        )
        self._state = TranscriptState.ERROR
        self._logger.error(f"Failed to load history for session {self._session_id}: {failure.message}")
        self._store.notify(StoreEventType.TRANSCRIPT_ERROR, failure)
        if self._view is not None:
            self._view.show_error(failure, self.retry)

    async def retry(self) -> None:
        await self.load_initial(force_reload=True)

    def sync_from_state(self, records: Iterable[Dict[str, Any]]) -> int:
        """Seed the transcript from a cached snapshot's chat history.

        Ignored while a load is running or once the remote history has been
        loaded. Returns the number of messages added.
        """
        if self._state in (TranscriptState.LOADING, TranscriptState.LOADED):
            self._logger.debug("Ignoring cached chat history, remote history is authoritative")
            return 0
        batch = self._materialize(records)
        if not batch:
            return 0
        self._messages = sorted(self._messages + batch, key=ChatMessage.sort_key)
        self._keys.update(message.key for message in batch)
        if self._view is not None:
            self._view.clear()
            self._view.render(self._messages)
        self._publish()
        return len(batch)

    async def fetch_older(self) -> int:
        """Prepend the page just older than the cursor. Returns messages added."""
        if self._is_fetching_older or self._state is not TranscriptState.LOADED or not self._cursor.has_more:
            return 0
        self._is_fetching_older = True
        try:
            before = self._cursor.oldest_timestamp
            raw = await self._gateway.load_message_page(self._page_size, before, self._history_session)
            if not raw:
                self._cursor.has_more = False
                return 0

            batch = sorted(self._materialize(raw), key=ChatMessage.sort_key)
            if batch:
                self._merge_older(batch)

            oldest = self._oldest_timestamp(batch)
            if oldest is None or (timestamp_millis(oldest) or 0) >= (timestamp_millis(before) or 0):
                # The cursor cannot move, so there is nothing further back
                self._cursor.has_more = False
            else:
                self._cursor.oldest_timestamp = oldest
            return len(batch)
        except Exception as e:
            self._logger.error(f"Failed to fetch older messages for session {self._session_id}: {e}")
            return 0
        finally:
            self._is_fetching_older = False

    def _merge_older(self, batch: List[ChatMessage]) -> None:
        # Older pages go before equal keys; undated cached messages can still sort ahead
        self._messages = sorted(batch + self._messages, key=ChatMessage.sort_key)
        self._keys.update(message.key for message in batch)
        if self._view is not None:
            head = self._messages[:len(batch)]
            if all(merged is added for merged, added in zip(head, batch)):
                self._view.render(batch, prepend=True)
            else:
                self._view.clear()
                self._view.render(self._messages)
        self._publish()

    def _materialize(self, records: Iterable[Dict[str, Any]]) -> List[ChatMessage]:
        """Turn raw records into loaded messages, skipping invalid and known ones."""
        batch: List[ChatMessage] = []
        seen: Set[str] = set()
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                message = ChatMessage.from_record(record)
            except ValidationError as e:
                self._logger.warning(f"Skipping history record: {e}")
                continue
            if message.key in self._keys or message.key in seen:
                continue
            seen.add(message.key)
            batch.append(message)
        return batch

    @staticmethod
    def _oldest_timestamp(messages: Iterable[ChatMessage]) -> Optional[str]:
        stamped = [m for m in messages if m.timestamp is not None]
        if not stamped:
            return None
        return min(stamped, key=ChatMessage.sort_key).timestamp

    # ========== Mutation ==========

    async def add_message(self, message: ChatMessage) -> bool:
        """Insert one message; new (not loaded) messages are also appended remotely.

        Returns False when the message is invalid or a duplicate.
        """
        if not self._is_valid(message):
            return False

        now = self._clock()
        try:
            self._admit(message, now)
        except ConflictError as e:
            self._logger.debug(f"Message {message.id} ignored: {e}")
            return False

        self._insert(message)
        self._keys.add(message.key)
        self._recent[(message.role, message.content)] = now
        self._publish()

        if message.status is not MessageStatus.LOADED:
            await self._append_remote(message)
        return True

    def _is_valid(self, message: Any) -> bool:
        if not isinstance(message, ChatMessage):
            self._logger.warning(f"Rejected message of type {type(message).__name__}")
            return False
        if not message.id:
            self._logger.warning("Rejected message without id")
            return False
        if not isinstance(message.content, str) or not message.content:
            self._logger.warning(f"Rejected message {message.id} without content")
            return False
        if not isinstance(message.role, MessageRole):
            self._logger.warning(f"Rejected message {message.id} with role {message.role!r}")
            return False
        return True

    def _admit(self, message: ChatMessage, now: float) -> None:
        """Raise ConflictError if ``message`` duplicates a known or recent one."""
        self._recent = {
            key: added_at for key, added_at in self._recent.items()
            if now - added_at < self._recent_window
        }
        if message.key in self._keys:
            raise ConflictError("duplicate message")
        if (message.role, message.content) in self._recent:
            raise ConflictError(f"repeated {message.role.value} message within {self._recent_window}s")

    def _insert(self, message: ChatMessage) -> None:
        position = len(self._messages)
        sort_key = message.sort_key()
        while position > 0 and self._messages[position - 1].sort_key() > sort_key:
            position -= 1
        self._messages.insert(position, message)
        if self._view is None:
            return
        if position == len(self._messages) - 1:
            self._view.render([message])
        else:
            self._view.clear()
            self._view.render(self._messages)

    async def _append_remote(self, message: ChatMessage) -> None:
        try:
            await self._gateway.append_message(
                self._session_id, message.role.value, message.content, message.timestamp
            )
        except Exception as e:
            # The local copy stays; the remote log catches up on the next send
            self._logger.error(f"Failed to append message {message.id}: {e}")
            for callback in list(self._append_failed):
                try:
                    callback(message, e)
                except Exception as callback_error:
                    self._logger.error(f"Append failure listener failed: {callback_error}")

    def remove_message(self, message_id: str) -> bool:
        """Drop a message locally. The remote log is not touched."""
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                del self._messages[index]
                self._keys.discard(message.key)
                self._recent.pop((message.role, message.content), None)
                if self._view is not None:
                    self._view.remove(message_id)
                self._publish()
                return True
        return False

    def clear(self) -> None:
        """Forget every message, key and cursor position."""
        self._messages = []
        self._keys.clear()
        self._recent.clear()
        self._cursor = PaginationCursor(page_size=self._page_size)
        self._history_session = self._session_id
        self._state = TranscriptState.UNLOADED
        if self._view is not None:
            self._view.clear()
        self._publish()

    async def regenerate(self, message: ChatMessage, reply_factory: ReplyFactory) -> Optional[ChatMessage]:
        """Replace an assistant reply with a fresh one for the same prompt.

        Returns the new message, or None when there is nothing to regenerate.
        Errors from ``reply_factory`` propagate after the old reply is removed.
        """
        if message.role is not MessageRole.ASSISTANT:
            self._logger.warning(f"Only assistant messages can be regenerated, got {message.role.value}")
            return None
        index = next((i for i, m in enumerate(self._messages) if m.id == message.id), None)
        if index is None:
            self._logger.warning(f"Message {message.id} is not in the transcript")
            return None
        prompt = next(
            (m for m in reversed(self._messages[:index]) if m.role is MessageRole.USER), None
        )
        if prompt is None:
            self._logger.warning(f"No user message precedes {message.id}")
            return None

        self.remove_message(message.id)
        reply = await reply_factory(prompt.content)
        regenerated = ChatMessage.create(MessageRole.ASSISTANT, reply)
        if not await self.add_message(regenerated):
            return None
        return regenerated

    def _publish(self) -> None:
        # Chat history travels through its own channel, so the store copy is a silent projection
        self._store.update_state(silent=True, chat_history=[m.to_record() for m in self._messages])
