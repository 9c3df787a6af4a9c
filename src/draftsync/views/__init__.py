# /src/draftsync/views/__init__.py
# Transcript views - presentation of the message list

from .base import TranscriptView
from .transcript import TextTranscriptView, MarkdownTranscriptView

__all__ = [
    "TranscriptView",
    "TextTranscriptView",
    "MarkdownTranscriptView",
]
