# /src/draftsync/views/transcript.py
# Plain text and Markdown transcript views

from datetime import tzinfo
from typing import Optional

from .base import TranscriptView
from ..messages import ChatMessage, MessageRole, format_time_label


class TextTranscriptView(TranscriptView):
    """One line per message: ``[HH:MM] Role: content``.

    Messages without a usable timestamp get no time label rather than the
    current time.
    """

    def __init__(self, include_timestamps: bool = True, tz: Optional[tzinfo] = None,
                 max_length: Optional[int] = None):
        """Initialize the view.

        Args:
            include_timestamps: Whether to prefix the time label
            tz: Zone for time labels (local zone when None)
            max_length: Truncate longer contents, None to keep everything
        """
        super().__init__()
        self.include_timestamps = include_timestamps
        self.tz = tz
        self.max_length = max_length

    def format_message(self, message: ChatMessage) -> str:
        speaker = "You" if message.role is MessageRole.USER else "Assistant"
        content = message.content
        if self.max_length is not None and len(content) > self.max_length:
            content = content[:self.max_length] + "..."

        prefix = ""
        if self.include_timestamps:
            label = format_time_label(message.timestamp, self.tz)
            if label:
                prefix = f"[{label}] "
        return f"{prefix}{speaker}: {content}"


class MarkdownTranscriptView(TranscriptView):
    """Markdown blocks, one per message, separated by blank lines."""

    def __init__(self, tz: Optional[tzinfo] = None):
        super().__init__()
        self.tz = tz

    @property
    def separator(self) -> str:
        return "\n\n"

    def format_message(self, message: ChatMessage) -> str:
        speaker = "You" if message.role is MessageRole.USER else "Assistant"
        label = format_time_label(message.timestamp, self.tz)
        header = f"**{speaker}** ({label}):" if label else f"**{speaker}**:"
        quoted = "\n".join(f"> {line}" for line in message.content.splitlines() or [""])
        return f"{header}\n{quoted}"
