# /src/draftsync/gateway/http_gateway.py
# HTTP PersistenceGateway for the hosted AJAX endpoint (async with aiohttp)

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

try:
    import aiohttp
    HAS_AIOHTTP = True
except ImportError:
    HAS_AIOHTTP = False

from ..config import Settings
from ..errors import SerializationError, TransportError
from .base import AssistantProxy, AssistantReply, ItemRef, PersistenceGateway, SaveResult
from .records import AUTO_SAVE_SUMMARY, page_records, version_record


class HTTPGateway(PersistenceGateway, AssistantProxy):
    """Gateway speaking the form-encoded AJAX protocol of the host LMS.

    Every request is a POST carrying ``action``, ``cmid`` and ``sesskey``.
    The response is JSON with a ``success`` flag. Non-success responses and
    network errors raise TransportError; non-JSON bodies raise
    SerializationError.

    Also serves as the AI proxy through the ``proxy_chat`` action so the
    model's API key never leaves the server.

    Requires: aiohttp (pip install aiohttp)
    """

    def __init__(self, ajax_url: str, sesskey: str, cmid: str,
                 timeout: float = 30.0, session: Optional["aiohttp.ClientSession"] = None):
        if not HAS_AIOHTTP:
            raise ImportError("aiohttp is required for HTTPGateway. Install with: pip install aiohttp")
        if not ajax_url or not sesskey or not cmid:
            raise ValueError("ajax_url, sesskey and cmid are required")
        self._ajax_url = ajax_url
        self._sesskey = sesskey
        self._cmid = str(cmid)
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings) -> "HTTPGateway":
        return cls(settings.ajax_url, settings.sesskey, settings.cmid)

    async def initialize(self) -> None:
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"X-Requested-With": "XMLHttpRequest"},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )

    async def close(self) -> None:
        """Close the HTTP session if we opened it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _send(self, action: str, **fields: Any) -> Dict[str, Any]:
        """POST one action and decode the JSON body, whatever its success flag."""
        if self._session is None:
            raise TransportError("HTTPGateway is not initialized")
        form = {"action": action, "cmid": self._cmid, "sesskey": self._sesskey}
        form.update({k: str(v) for k, v in fields.items() if v is not None})
        try:
            async with self._session.post(self._ajax_url, data=form) as response:
                text = await response.text()
                content_type = response.headers.get("Content-Type", "")
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{action}: {e}") from e

        if "application/json" not in content_type:
            if status >= 400:
                raise TransportError(f"{action}: HTTP {status}")
            raise SerializationError(f"{action}: expected JSON but got {content_type or 'no content type'}")
        try:
            result = json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"{action}: unparseable response: {e}") from e
        if not isinstance(result, dict):
            raise SerializationError(f"{action}: expected a JSON object")
        if status >= 400:
            raise TransportError(f"{action}: {result.get('error') or f'HTTP {status}'}")
        return result

    async def _post(self, action: str, **fields: Any) -> Dict[str, Any]:
        result = await self._send(action, **fields)
        if not result.get("success"):
            raise TransportError(f"{action}: {result.get('error') or 'request failed'}")
        return result

    async def test_connection(self) -> bool:
        try:
            await self._post("test")
            return True
        except (TransportError, SerializationError) as e:
            self._logger.warning(f"Connection test failed: {e}")
            return False

    # ========== Gateway operations ==========

    async def load_snapshot(self) -> Optional[Dict[str, Any]]:
        result = await self._post("load_project")
        return result.get("project")

    async def save_snapshot(self, snapshot: Dict[str, Any]) -> SaveResult:
        try:
            payload = json.dumps(snapshot)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"save_project: snapshot is not serializable: {e}") from e
        result = await self._post("save_project", project_data=payload)
        mappings = result.get("id_mappings") or result.get("idMappings") or {}
        return SaveResult(success=True, id_mappings={str(k): str(v) for k, v in mappings.items()})

    async def append_message(self, session_id: str, role: str, content: str,
                             timestamp: Optional[str]) -> bool:
        await self._post("append_message", session_id=session_id or "default",
                         role=role, content=content, timestamp=timestamp)
        return True

    async def load_message_page(self, limit: int, before: Optional[str] = None,
                                session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        result = await self._post("load_chat_history_only", limit=limit if limit and limit > 0 else None,
                                  before=before, session_id=session_id)
        history = result.get("chatHistory")
        if not isinstance(history, list):
            return []
        # The server may ignore the cursor, so page again locally
        return page_records(history, limit, before)

    async def delete_item(self, ref: ItemRef) -> bool:
        if isinstance(ref, dict):
            await self._post("delete_idea", content=ref.get("content", ""),
                             location=ref.get("location") or "brainstorm",
                             sectionId=ref.get("section_id") or None)
        else:
            await self._post("delete_idea", idea_id=ref)
        return True

    # ========== Version history ==========

    @staticmethod
    def _version_from_payload(phase: str, data: Dict[str, Any]) -> Dict[str, Any]:
        # Database rows arrive with numbers as strings
        created_at = data.get("created_at")
        return version_record(
            data.get("phase") or phase,
            int(data.get("version_number") or 0),
            data.get("content") or "",
            int(data.get("word_count") or 0),
            data.get("change_summary") or AUTO_SAVE_SUMMARY,
            created_at=int(created_at) if created_at not in (None, "") else 0,
        )

    async def list_versions(self, phase: str, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self._post("get_version_history", phase=phase)
        versions = result.get("versions")
        if not isinstance(versions, list):
            return []
        return [self._version_from_payload(phase, v) for v in versions if isinstance(v, dict)][:limit]

    async def get_version(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        result = await self._send("get_version", phase=phase, version_number=int(version_number))
        version = result.get("version")
        if not result.get("success") or not isinstance(version, dict):
            self._logger.debug(f"Version {version_number} of {phase} not found: {result.get('error')}")
            return None
        return self._version_from_payload(phase, version)

    async def restore_version(self, phase: str, version_number: int) -> bool:
        result = await self._send("restore_version", phase=phase, version_number=int(version_number))
        if not result.get("success"):
            self._logger.warning(f"Restore of {phase} version {version_number} refused: {result.get('error')}")
            return False
        return True

    # ========== AI proxy ==========

    async def request_reply(self, user_input: str,
                            project: Optional[Dict[str, Any]] = None) -> AssistantReply:
        try:
            project_data = json.dumps(project or {})
        except (TypeError, ValueError) as e:
            raise SerializationError(f"proxy_chat: project is not serializable: {e}") from e
        result = await self._post("proxy_chat", user_input=user_input, project_data=project_data)
        return AssistantReply(reply=result.get("assistantReply"), updated_project=result.get("project"))
