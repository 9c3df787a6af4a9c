# /src/draftsync/gateway/sqlite_gateway.py
# SQLite-based PersistenceGateway (async with aiosqlite)

import json
import logging
from typing import Any, Dict, List, Optional

try:
    import aiosqlite
    HAS_AIOSQLITE = True
except ImportError:
    HAS_AIOSQLITE = False

from ..errors import SerializationError, TransportError
from ..messages import normalize_timestamp
from ..snapshot import CHAT_HISTORY_KEY
from .base import ItemRef, PersistenceGateway, SaveResult
from .records import (
    MAX_VERSIONS_PER_PHASE,
    matches_ref,
    phases_to_version,
    pop_change_summaries,
    restore_into,
    restored_summary,
    version_record,
)


class SQLiteGateway(PersistenceGateway):
    """SQLite-backed gateway with a normalized ideas table.

    Tables:
    - projects: one row per project holding the snapshot JSON (ideas removed)
    - ideas: planning items, with autoincrement ids handed back as mappings
    - messages: append-only chat log indexed by session and timestamp
    - versions: numbered per-phase content versions

    Requires: aiosqlite (pip install aiosqlite)
    """

    def __init__(self, db_path: str = "./draftsync.db", project_id: str = "default"):
        if not HAS_AIOSQLITE:
            raise ImportError("aiosqlite is required for SQLiteGateway. Install with: pip install aiosqlite")
        self._db_path = db_path
        self._project_id = project_id
        self._db = None
        self._logger = logging.getLogger(__name__)

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                project_id TEXT PRIMARY KEY,
                modified TEXT,
                data TEXT NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS ideas (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                content TEXT NOT NULL,
                location TEXT NOT NULL,
                section_id TEXT,
                ai_generated INTEGER DEFAULT 0
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                phase TEXT NOT NULL,
                version_number INTEGER NOT NULL,
                content TEXT NOT NULL,
                word_count INTEGER DEFAULT 0,
                change_summary TEXT,
                created_at INTEGER NOT NULL
            )
        """)
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_ideas_project ON ideas(project_id)")
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(project_id, session_id)")
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp)")
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_versions_phase ON versions(project_id, phase, version_number)"
        )
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _connection(self):
        if self._db is None:
            raise TransportError("SQLiteGateway is not initialized")
        return self._db

    async def _load_ideas(self) -> List[Dict[str, Any]]:
        cursor = await self._connection().execute(
            "SELECT id, content, location, section_id, ai_generated FROM ideas "
            "WHERE project_id = ? ORDER BY position",
            (self._project_id,)
        )
        rows = await cursor.fetchall()
        return [
            {"id": str(row[0]), "content": row[1], "location": row[2],
             "section_id": row[3], "ai_generated": bool(row[4])}
            for row in rows
        ]

    async def load_snapshot(self) -> Optional[Dict[str, Any]]:
        snapshot = await self._load_project_data()
        if snapshot is None:
            return None
        snapshot.setdefault("plan", {})["ideas"] = await self._load_ideas()
        return snapshot

    async def _load_project_data(self) -> Optional[Dict[str, Any]]:
        cursor = await self._connection().execute(
            "SELECT data FROM projects WHERE project_id = ?",
            (self._project_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise SerializationError(f"Corrupt snapshot for project {self._project_id}: {e}") from e

    async def save_snapshot(self, snapshot: Dict[str, Any]) -> SaveResult:
        db = self._connection()
        stored = json.loads(json.dumps(snapshot))
        stored.pop(CHAT_HISTORY_KEY, None)
        summaries = pop_change_summaries(stored)
        ideas = (stored.get("plan") or {}).pop("ideas", None) or []

        try:
            previous = await self._load_project_data()
            mappings = await self._save_ideas(db, ideas)
            for phase, document, summary in phases_to_version(previous, stored, summaries):
                await self._insert_version(db, phase, document.get("content") or "",
                                           int(document.get("word_count") or 0), summary)
            await db.execute(
                "INSERT OR REPLACE INTO projects (project_id, modified, data) VALUES (?, ?, ?)",
                (self._project_id, (stored.get("metadata") or {}).get("modified"), json.dumps(stored))
            )
            await db.commit()
        except Exception:
            # Never leave a half-written idea set for the next commit to pick up
            await db.rollback()
            raise
        self._logger.info(f"Saved project {self._project_id} ({len(ideas)} ideas)")
        return SaveResult(success=True, id_mappings=mappings)

    async def _save_ideas(self, db, ideas: List[Dict[str, Any]]) -> Dict[str, str]:
        mappings: Dict[str, str] = {}
        kept_ids: List[int] = []
        for position, idea in enumerate(ideas):
            idea_id = str(idea.get("id", ""))
            values = (idea.get("content") or "", idea.get("location") or "unplaced",
                      idea.get("section_id"), int(bool(idea.get("ai_generated"))))
            if idea_id.isdigit():
                await db.execute(
                    "INSERT OR REPLACE INTO ideas (id, project_id, position, content, location, section_id, ai_generated) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (int(idea_id), self._project_id, position) + values
                )
                kept_ids.append(int(idea_id))
            else:
                cursor = await db.execute(
                    "INSERT INTO ideas (project_id, position, content, location, section_id, ai_generated) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (self._project_id, position) + values
                )
                mappings[idea_id] = str(cursor.lastrowid)
                kept_ids.append(cursor.lastrowid)

        # Ideas no longer in the snapshot were deleted on the client
        placeholders = ",".join("?" for _ in kept_ids)
        if kept_ids:
            await db.execute(
                f"DELETE FROM ideas WHERE project_id = ? AND id NOT IN ({placeholders})",
                (self._project_id, *kept_ids)
            )
        else:
            await db.execute("DELETE FROM ideas WHERE project_id = ?", (self._project_id,))
        return mappings

    async def append_message(self, session_id: str, role: str, content: str,
                             timestamp: Optional[str]) -> bool:
        db = self._connection()
        # Stored normalized (or NULL) so the column sorts chronologically
        await db.execute(
            "INSERT INTO messages (project_id, session_id, role, content, timestamp) VALUES (?, ?, ?, ?, ?)",
            (self._project_id, session_id or "default", role, content, normalize_timestamp(timestamp))
        )
        await db.commit()
        return True

    async def load_message_page(self, limit: int, before: Optional[str] = None,
                                session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT id, session_id, role, content, timestamp FROM messages WHERE project_id = ?"
        params: List[Any] = [self._project_id]
        if session_id is not None:
            query += " AND session_id = ?"
            params.append(session_id)
        if before is not None:
            cutoff = normalize_timestamp(before)
            if cutoff is None:
                return []
            # Undated messages count as the oldest
            query += " AND (timestamp IS NULL OR timestamp < ?)"
            params.append(cutoff)
        query += " ORDER BY timestamp DESC, id DESC"
        if limit and limit > 0:
            query += " LIMIT ?"
            params.append(limit)
        cursor = await self._connection().execute(query, params)
        rows = await cursor.fetchall()
        return [
            {"id": row[0], "session_id": row[1], "role": row[2], "content": row[3], "timestamp": row[4]}
            for row in rows
        ]

    async def delete_item(self, ref: ItemRef) -> bool:
        for idea in await self._load_ideas():
            if matches_ref(idea, ref):
                await self._connection().execute(
                    "DELETE FROM ideas WHERE project_id = ? AND id = ?",
                    (self._project_id, int(idea["id"]))
                )
                await self._connection().commit()
                return True
        return False

    # ========== Version history ==========

    _VERSION_COLUMNS = "phase, version_number, content, word_count, change_summary, created_at"

    @staticmethod
    def _version_from_row(row) -> Dict[str, Any]:
        return version_record(row[0], row[1], row[2], row[3] or 0, row[4], created_at=row[5])

    async def _insert_version(self, db, phase: str, content: str, word_count: int, change_summary: str) -> int:
        cursor = await db.execute(
            "SELECT MAX(version_number) FROM versions WHERE project_id = ? AND phase = ?",
            (self._project_id, phase)
        )
        row = await cursor.fetchone()
        record = version_record(phase, (row[0] or 0) + 1, content, word_count, change_summary)
        await db.execute(
            f"INSERT INTO versions (project_id, {self._VERSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (self._project_id, phase, record["version_number"], content, word_count,
             change_summary, record["created_at"])
        )
        await db.execute(
            "DELETE FROM versions WHERE project_id = ? AND phase = ? AND version_number <= ?",
            (self._project_id, phase, record["version_number"] - MAX_VERSIONS_PER_PHASE)
        )
        return record["version_number"]

    async def list_versions(self, phase: str, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = await self._connection().execute(
            f"SELECT {self._VERSION_COLUMNS} FROM versions WHERE project_id = ? AND phase = ? "
            "ORDER BY version_number DESC LIMIT ?",
            (self._project_id, phase, limit)
        )
        return [self._version_from_row(row) for row in await cursor.fetchall()]

    async def get_version(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        cursor = await self._connection().execute(
            f"SELECT {self._VERSION_COLUMNS} FROM versions "
            "WHERE project_id = ? AND phase = ? AND version_number = ?",
            (self._project_id, phase, int(version_number))
        )
        row = await cursor.fetchone()
        return self._version_from_row(row) if row else None

    async def restore_version(self, phase: str, version_number: int) -> bool:
        version = await self.get_version(phase, version_number)
        if version is None:
            return False
        db = self._connection()
        try:
            data = restore_into(await self._load_project_data(), version)
            await db.execute(
                "INSERT OR REPLACE INTO projects (project_id, modified, data) VALUES (?, ?, ?)",
                (self._project_id, (data.get("metadata") or {}).get("modified"), json.dumps(data))
            )
            await self._insert_version(db, phase, version["content"], version["word_count"],
                                       restored_summary(version_number))
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        self._logger.info(f"Restored {phase} to version {version_number}")
        return True
