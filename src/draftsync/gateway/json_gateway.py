# /src/draftsync/gateway/json_gateway.py
# JSON file-based PersistenceGateway (async with aiofiles)

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import aiofiles
    import aiofiles.os
    HAS_AIOFILES = True
except ImportError:
    HAS_AIOFILES = False

from ..errors import SerializationError
from ..snapshot import CHAT_HISTORY_KEY
from .base import ItemRef, PersistenceGateway, SaveResult
from .records import (
    VersionLog,
    assign_stable_ids,
    delete_from_snapshot,
    page_records,
    pop_change_summaries,
    restore_into,
    restored_summary,
)


class JSONGateway(PersistenceGateway):
    """File-backed gateway for a single project.

    The snapshot lives in ``snapshot.json``; chat messages are appended to
    ``messages.jsonl``, one JSON object per line, so appends never rewrite
    history. Phase versions are kept in ``versions.json``.

    Requires: aiofiles (pip install aiofiles)
    """

    def __init__(self, storage_dir: str = "./draftsync_project"):
        if not HAS_AIOFILES:
            raise ImportError("aiofiles is required for JSONGateway. Install with: pip install aiofiles")
        self._storage_dir = Path(storage_dir)
        self._snapshot_file = self._storage_dir / "snapshot.json"
        self._messages_file = self._storage_dir / "messages.jsonl"
        self._versions_file = self._storage_dir / "versions.json"
        self._logger = logging.getLogger(__name__)

    async def initialize(self) -> None:
        """Create storage directory and message log if they don't exist."""
        await aiofiles.os.makedirs(self._storage_dir, exist_ok=True)
        if not await aiofiles.os.path.exists(self._messages_file):
            async with aiofiles.open(self._messages_file, "w") as f:
                pass  # Create empty file

    async def close(self) -> None:
        """Close the gateway (no-op for file-based storage)."""
        pass

    async def _read_json(self, path: Path) -> Optional[Any]:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "r") as f:
            text = await f.read()
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Corrupt file {path}: {e}") from e

    async def _write_json(self, path: Path, data: Any) -> None:
        # Write then rename so a crash never leaves a half-written file
        tmp_file = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_file, "w") as f:
            await f.write(json.dumps(data, indent=2))
        await aiofiles.os.replace(tmp_file, path)

    async def _read_snapshot(self) -> Optional[Dict[str, Any]]:
        return await self._read_json(self._snapshot_file)

    async def _write_snapshot(self, snapshot: Dict[str, Any]) -> None:
        await self._write_json(self._snapshot_file, snapshot)

    async def _read_versions(self) -> VersionLog:
        return VersionLog(await self._read_json(self._versions_file))

    async def _load_all_messages(self) -> List[Dict[str, Any]]:
        """Load all messages from the JSON Lines file."""
        messages = []
        try:
            async with aiofiles.open(self._messages_file, "r") as f:
                async for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        messages.append(json.loads(line))
                    except json.JSONDecodeError:
                        self._logger.warning(f"Skipping unreadable line in {self._messages_file}")
        except FileNotFoundError:
            pass
        return messages

    async def load_snapshot(self) -> Optional[Dict[str, Any]]:
        snapshot = await self._read_snapshot()
        if snapshot is not None:
            snapshot.pop("_next_idea_id", None)
        return snapshot

    async def save_snapshot(self, snapshot: Dict[str, Any]) -> SaveResult:
        stored = json.loads(json.dumps(snapshot))
        stored.pop(CHAT_HISTORY_KEY, None)
        summaries = pop_change_summaries(stored)
        previous = await self._read_snapshot() or {}
        next_id = int((previous.get("_next_idea_id") or 1))
        mappings, next_id = assign_stable_ids(stored, next_id)

        versions = await self._read_versions()
        if versions.record_snapshot(previous, stored, summaries):
            await self._write_json(self._versions_file, versions.to_dict())

        stored["_next_idea_id"] = next_id
        await self._write_snapshot(stored)
        self._logger.info(f"Saved snapshot to {self._snapshot_file}")
        return SaveResult(success=True, id_mappings=mappings)

    async def append_message(self, session_id: str, role: str, content: str,
                             timestamp: Optional[str]) -> bool:
        existing = await self._load_all_messages()
        next_id = max((int(m["id"]) for m in existing if str(m.get("id", "")).isdigit()), default=0) + 1
        record = {"id": next_id, "session_id": session_id or "default", "role": role,
                  "content": content, "timestamp": timestamp}
        async with aiofiles.open(self._messages_file, "a") as f:
            await f.write(json.dumps(record) + "\n")
        return True

    async def load_message_page(self, limit: int, before: Optional[str] = None,
                                session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        messages = await self._load_all_messages()
        return page_records(messages, limit, before, session_id)

    async def delete_item(self, ref: ItemRef) -> bool:
        snapshot = await self._read_snapshot()
        if not delete_from_snapshot(snapshot, ref):
            return False
        await self._write_snapshot(snapshot)
        return True

    async def list_versions(self, phase: str, limit: int = 50) -> List[Dict[str, Any]]:
        return (await self._read_versions()).history(phase, limit)

    async def get_version(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        return (await self._read_versions()).get(phase, version_number)

    async def restore_version(self, phase: str, version_number: int) -> bool:
        versions = await self._read_versions()
        version = versions.get(phase, version_number)
        if version is None:
            return False
        await self._write_snapshot(restore_into(await self._read_snapshot(), version))
        versions.record(phase, version["content"], version["word_count"], restored_summary(version_number))
        await self._write_json(self._versions_file, versions.to_dict())
        self._logger.info(f"Restored {phase} to version {version_number}")
        return True
