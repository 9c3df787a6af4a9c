# /src/draftsync/gateway/mongodb_gateway.py
# MongoDB-based PersistenceGateway (async with Motor)

import copy
import logging
from typing import Any, Dict, List, Optional

try:
    from motor.motor_asyncio import AsyncIOMotorClient
    HAS_MOTOR = True
except ImportError:
    HAS_MOTOR = False

from ..errors import TransportError
from ..snapshot import CHAT_HISTORY_KEY
from .base import ItemRef, PersistenceGateway, SaveResult
from .records import (
    MAX_VERSIONS_PER_PHASE,
    assign_stable_ids,
    delete_from_snapshot,
    page_records,
    phases_to_version,
    pop_change_summaries,
    restore_into,
    restored_summary,
    version_record,
)


class MongoDBGateway(PersistenceGateway):
    """MongoDB-backed gateway using Motor (async driver).

    Snapshots live in one collection keyed by project id; messages in
    another with indexes on:
    - project_id + session_id
    - timestamp

    Phase versions live in a third collection indexed by project, phase
    and version number.

    Requires: motor (pip install motor)
    """

    def __init__(
        self,
        connection_string: str = "mongodb://localhost:27017",
        database_name: str = "draftsync",
        project_id: str = "default",
    ):
        if not HAS_MOTOR:
            raise ImportError("motor is required for MongoDBGateway. Install with: pip install motor")
        self._connection_string = connection_string
        self._database_name = database_name
        self._project_id = project_id
        self._client = None
        self._projects = None
        self._messages = None
        self._versions = None
        self._logger = logging.getLogger(__name__)

    async def initialize(self) -> None:
        """Connect to MongoDB and create indexes."""
        self._client = AsyncIOMotorClient(self._connection_string)
        db = self._client[self._database_name]
        self._projects = db["projects"]
        self._messages = db["messages"]
        self._versions = db["versions"]

        await self._messages.create_index([("project_id", 1), ("session_id", 1)])
        await self._messages.create_index("timestamp")
        await self._versions.create_index([("project_id", 1), ("phase", 1), ("version_number", -1)])

    async def close(self) -> None:
        """Close the MongoDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._projects = None
            self._messages = None
            self._versions = None

    def _require(self, collection):
        if collection is None:
            raise TransportError("MongoDBGateway is not initialized")
        return collection

    async def _find_project(self) -> Optional[Dict[str, Any]]:
        return await self._require(self._projects).find_one({"_id": self._project_id})

    async def load_snapshot(self) -> Optional[Dict[str, Any]]:
        doc = await self._find_project()
        if not doc:
            return None
        return doc.get("snapshot")

    async def save_snapshot(self, snapshot: Dict[str, Any]) -> SaveResult:
        doc = await self._find_project() or {}
        stored = copy.deepcopy(snapshot)
        stored.pop(CHAT_HISTORY_KEY, None)
        summaries = pop_change_summaries(stored)
        mappings, next_id = assign_stable_ids(stored, int(doc.get("next_idea_id") or 1))
        for phase, document, summary in phases_to_version(doc.get("snapshot"), stored, summaries):
            await self._insert_version(phase, document.get("content") or "",
                                       int(document.get("word_count") or 0), summary)
        await self._require(self._projects).replace_one(
            {"_id": self._project_id},
            {"_id": self._project_id, "snapshot": stored, "next_idea_id": next_id},
            upsert=True,
        )
        self._logger.info(f"Saved project {self._project_id} to MongoDB.")
        return SaveResult(success=True, id_mappings=mappings)

    async def append_message(self, session_id: str, role: str, content: str,
                             timestamp: Optional[str]) -> bool:
        messages = self._require(self._messages)
        # Numeric ids keep tie-breaking consistent with the other backends
        count = await messages.count_documents({"project_id": self._project_id})
        await messages.insert_one({
            "project_id": self._project_id,
            "message_id": count + 1,
            "session_id": session_id or "default",
            "role": role,
            "content": content,
            "timestamp": timestamp,
        })
        return True

    async def load_message_page(self, limit: int, before: Optional[str] = None,
                                session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"project_id": self._project_id}
        if session_id is not None:
            query["session_id"] = session_id
        cursor = self._require(self._messages).find(query)
        docs = await cursor.to_list(length=None)
        records = [
            {"id": doc.get("message_id"), "session_id": doc.get("session_id"), "role": doc.get("role"),
             "content": doc.get("content"), "timestamp": doc.get("timestamp")}
            for doc in docs
        ]
        return page_records(records, limit, before)

    async def delete_item(self, ref: ItemRef) -> bool:
        doc = await self._find_project()
        if not doc or not delete_from_snapshot(doc.get("snapshot"), ref):
            return False
        await self._require(self._projects).replace_one({"_id": self._project_id}, doc)
        return True

    # ========== Version history ==========

    @staticmethod
    def _version_from_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
        return version_record(doc["phase"], doc["version_number"], doc.get("content") or "",
                              doc.get("word_count") or 0, doc.get("change_summary"),
                              created_at=doc.get("created_at"))

    async def _insert_version(self, phase: str, content: str, word_count: int, change_summary: str) -> int:
        versions = self._require(self._versions)
        latest = await versions.find_one(
            {"project_id": self._project_id, "phase": phase},
            sort=[("version_number", -1)],
        )
        record = version_record(phase, (latest["version_number"] if latest else 0) + 1,
                                content, word_count, change_summary)
        await versions.insert_one({"project_id": self._project_id, **record})
        await versions.delete_many({
            "project_id": self._project_id,
            "phase": phase,
            "version_number": {"$lte": record["version_number"] - MAX_VERSIONS_PER_PHASE},
        })
        return record["version_number"]

    async def list_versions(self, phase: str, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self._require(self._versions).find(
            {"project_id": self._project_id, "phase": phase}
        ).sort("version_number", -1).limit(limit)
        return [self._version_from_doc(doc) for doc in await cursor.to_list(length=limit)]

    async def get_version(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        doc = await self._require(self._versions).find_one(
            {"project_id": self._project_id, "phase": phase, "version_number": int(version_number)}
        )
        return self._version_from_doc(doc) if doc else None

    async def restore_version(self, phase: str, version_number: int) -> bool:
        version = await self.get_version(phase, version_number)
        if version is None:
            return False
        doc = await self._find_project() or {"_id": self._project_id}
        doc["snapshot"] = restore_into(doc.get("snapshot"), version)
        await self._require(self._projects).replace_one({"_id": self._project_id}, doc, upsert=True)
        await self._insert_version(phase, version["content"], version["word_count"],
                                   restored_summary(version_number))
        self._logger.info(f"Restored {phase} to version {version_number}")
        return True
