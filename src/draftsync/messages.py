# /src/draftsync/messages.py
# ChatMessage model, timestamp normalization and the canonical dedup key

import random
import re
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import ValidationError

# Numbers below this are epoch seconds, above it epoch milliseconds
EPOCH_SECONDS_THRESHOLD = 10_000_000_000
NULL_TIMESTAMP_KEY = "epoch"

_SQL_DATETIME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2}) (\d{2}):(\d{2}):(\d{2})$")
_ISO_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[T ](\d{2}):(\d{2})(?::(\d{2})(?:[.,](\d+))?)?)?"
    r"\s*(Z|z|[+-]\d{2}:?\d{2})?$"
)
_NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    """Whether a message was sent from this client or rehydrated from history."""
    SENT = "sent"
    LOADED = "loaded"


def _to_iso(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _from_epoch(value: float) -> datetime:
    seconds = value if abs(value) < EPOCH_SECONDS_THRESHOLD else value / 1000.0
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _parse_offset(raw: Optional[str]) -> tzinfo:
    if not raw or raw in ("Z", "z"):
        return timezone.utc
    sign = -1 if raw[0] == "-" else 1
    digits = raw[1:].replace(":", "")
    return timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))


def _parse_string(value: str) -> Optional[datetime]:
    value = value.strip()
    if not value:
        return None
    if _NUMERIC_RE.match(value):
        return _from_epoch(float(value))
    match = _SQL_DATETIME_RE.match(value)
    if match:
        # Database TIMESTAMP columns come back as naive UTC
        return datetime(*(int(part) for part in match.groups()), tzinfo=timezone.utc)
    match = _ISO_RE.match(value)
    if not match:
        return None
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micro = int((fraction or "0")[:6].ljust(6, "0"))
    return datetime(
        int(year), int(month), int(day),
        int(hour or 0), int(minute or 0), int(second or 0), micro,
        tzinfo=_parse_offset(offset),
    )


def normalize_timestamp(value: Any) -> Optional[str]:
    """Normalize a remote timestamp to an ISO instant, or None.

    Accepts epoch seconds or milliseconds (numbers or numeric strings),
    ISO 8601 strings and ``YYYY-MM-DD HH:MM:SS`` strings. Anything else
    yields None; the current time is never substituted.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, datetime):
            moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        elif isinstance(value, (int, float)):
            moment = _from_epoch(float(value))
        elif isinstance(value, str):
            moment = _parse_string(value)
        else:
            return None
    except (ValueError, OverflowError, OSError):
        return None
    if moment is None:
        return None
    return _to_iso(moment)


def timestamp_millis(value: Any) -> Optional[int]:
    """Epoch milliseconds for a timestamp, or None when unparseable."""
    normalized = normalize_timestamp(value)
    if normalized is None:
        return None
    moment = datetime.strptime(normalized, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def format_time_label(value: Any, tz: Optional[tzinfo] = None) -> str:
    """Render ``HH:MM`` in the viewer's zone; empty for missing timestamps."""
    normalized = normalize_timestamp(value)
    if normalized is None:
        return ""
    moment = datetime.strptime(normalized, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)
    return moment.astimezone(tz).strftime("%H:%M")


def message_key(role: Any, timestamp: Any, content: Any) -> str:
    """Canonical dedup key shared by the transcript and the update merge."""
    role_value = role.value if isinstance(role, MessageRole) else str(role)
    return f"{role_value}|{normalize_timestamp(timestamp) or NULL_TIMESTAMP_KEY}|{content}"


def _client_id(role: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{role}_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class ChatMessage:
    """A single chat message; never mutated after creation."""
    id: str
    role: MessageRole
    content: str
    timestamp: Optional[str]
    status: MessageStatus = MessageStatus.SENT

    @classmethod
    def create(cls, role: Any, content: str) -> "ChatMessage":
        """Build an optimistic local message stamped with the current time."""
        role = MessageRole(role)
        return cls(
            id=_client_id(role.value),
            role=role,
            content=content,
            timestamp=_to_iso(datetime.now(timezone.utc)),
            status=MessageStatus.SENT,
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ChatMessage":
        """Materialize a message from a loaded history record.

        A record whose timestamp cannot be parsed is kept with a None
        timestamp. Raises ValidationError for a bad role or empty content.
        """
        try:
            role = MessageRole(record.get("role"))
        except ValueError:
            raise ValidationError(f"Invalid message role: {record.get('role')!r}")
        content = record.get("content")
        if not isinstance(content, str) or not content:
            raise ValidationError("Message content is required")
        raw_ts = record.get("timestamp")
        if raw_ts in (None, ""):
            raw_ts = record.get("created_at")
        timestamp = normalize_timestamp(raw_ts)
        message_id = record.get("id")
        if message_id in (None, ""):
            message_id = _client_id(role.value)
        return cls(
            id=str(message_id),
            role=role,
            content=content,
            timestamp=timestamp,
            status=MessageStatus.LOADED,
        )

    @property
    def key(self) -> str:
        return message_key(self.role, self.timestamp, self.content)

    @property
    def time_label(self) -> str:
        return format_time_label(self.timestamp)

    def sort_key(self) -> Tuple[int, int, int]:
        """Ascending by timestamp (missing sorts as epoch), then numeric id.

        Client ids carry no order, so messages tied on timestamp without a
        numeric id compare equal and keep their insertion order under a
        stable sort.
        """
        millis = timestamp_millis(self.timestamp) or 0
        if self.id.isdigit():
            return (millis, 0, int(self.id))
        return (millis, 1, 0)

    def to_record(self) -> Dict[str, Any]:
        """The shape kept in the store's chat projection."""
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp}
