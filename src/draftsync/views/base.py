# /src/draftsync/views/base.py
# Abstract TranscriptView base class

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from ..events.envelope import TranscriptFailure
from ..messages import ChatMessage

RetryCallback = Callable[[], Awaitable[None]]


class TranscriptView(ABC):
    """Incremental presentation of a transcript.

    The engine tells the view what changed rather than handing it the whole
    list each time:
    - render: new messages, appended at the tail or prepended at the head
    - remove: a message dropped locally
    - clear: everything dropped
    - show_error: initial load failed, offer ``retry``

    Subclasses only decide how one message is formatted.
    """

    def __init__(self):
        self._entries: List[Tuple[str, str]] = []
        self.error: Optional[TranscriptFailure] = None
        self.retry: Optional[RetryCallback] = None

    @abstractmethod
    def format_message(self, message: ChatMessage) -> str:
        """Format one message for display."""
        pass

    def render(self, messages: Sequence[ChatMessage], prepend: bool = False) -> None:
        entries = [(message.id, self.format_message(message)) for message in messages]
        if prepend:
            self._entries[:0] = entries
        else:
            self._entries.extend(entries)
        self.error = None
        self.retry = None

    def remove(self, message_id: str) -> bool:
        for index, (entry_id, _) in enumerate(self._entries):
            if entry_id == message_id:
                del self._entries[index]
                return True
        return False

    def clear(self) -> None:
        self._entries.clear()
        self.error = None
        self.retry = None

    def show_error(self, failure: TranscriptFailure, retry: Optional[RetryCallback] = None) -> None:
        self.error = failure
        self.retry = retry

    @property
    def message_ids(self) -> List[str]:
        return [entry_id for entry_id, _ in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def separator(self) -> str:
        return "\n"

    def output(self) -> str:
        """Everything currently shown, in display order."""
        return self.separator.join(line for _, line in self._entries)
