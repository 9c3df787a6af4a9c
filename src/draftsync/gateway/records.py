# /src/draftsync/gateway/records.py
# Record helpers shared by the local gateway backends

import copy
import time
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..messages import timestamp_millis
from ..snapshot import PHASE_NAMES

AUTO_SAVE_SUMMARY = "Auto-saved"
MANUAL_SAVE_SUMMARY = "Manual save"
MAX_VERSIONS_PER_PHASE = 50
# Words added or removed before an autosave becomes a version
VERSION_WORD_THRESHOLD = 50


def record_order(record: Dict[str, Any]) -> Tuple[int, int]:
    """Chronological order of a stored message; unparseable sorts first."""
    raw_id = str(record.get("id", ""))
    return (timestamp_millis(record.get("timestamp")) or 0, int(raw_id) if raw_id.isdigit() else 0)


def page_records(records: Iterable[Dict[str, Any]], limit: int, before: Optional[str] = None,
                 session_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Select one page of messages, newest first.

    Mirrors the server: optional session filter, strictly older than
    ``before`` when given, then the newest ``limit`` of what remains.
    """
    selected = [dict(r) for r in records if session_id is None or r.get("session_id") == session_id]
    if before is not None:
        cutoff = timestamp_millis(before)
        if cutoff is None:
            return []
        selected = [r for r in selected if (timestamp_millis(r.get("timestamp")) or 0) < cutoff]
    selected.sort(key=record_order, reverse=True)
    if limit and limit > 0:
        selected = selected[:limit]
    return selected


def assign_stable_ids(snapshot: Dict[str, Any], next_id: int) -> Tuple[Dict[str, str], int]:
    """Give every idea with a transient (non-numeric) id a stable one.

    Mutates ``snapshot`` in place. Returns the transient -> stable mapping
    and the next free id.
    """
    mappings: Dict[str, str] = {}
    for idea in (snapshot.get("plan") or {}).get("ideas") or []:
        idea_id = str(idea.get("id", ""))
        if idea_id.isdigit():
            next_id = max(next_id, int(idea_id) + 1)
    for idea in (snapshot.get("plan") or {}).get("ideas") or []:
        idea_id = str(idea.get("id", ""))
        if not idea_id.isdigit():
            mappings[idea_id] = str(next_id)
            idea["id"] = str(next_id)
            next_id += 1
    return mappings, next_id


def matches_ref(idea: Dict[str, Any], ref: Any) -> bool:
    """True if ``idea`` is the one named by an id or a field reference."""
    if isinstance(ref, dict):
        location = ref.get("location") or "unplaced"
        if location == "brainstorm":
            location = "unplaced"
        return (
            idea.get("content") == ref.get("content", "")
            and idea.get("location", "unplaced") == location
            and (idea.get("section_id") or "") == (ref.get("section_id") or "")
        )
    return str(idea.get("id")) == str(ref)


def delete_from_snapshot(snapshot: Optional[Dict[str, Any]], ref: Any) -> bool:
    """Remove the first idea matching ``ref``. Returns True if one was removed."""
    if not snapshot:
        return False
    ideas = (snapshot.get("plan") or {}).get("ideas") or []
    for index, idea in enumerate(ideas):
        if matches_ref(idea, ref):
            del ideas[index]
            return True
    return False


# ========== Version history ==========

def pop_change_summaries(snapshot: Dict[str, Any]) -> Dict[str, str]:
    """Strip the per-phase save annotation, returning it by phase."""
    summaries: Dict[str, str] = {}
    for phase in PHASE_NAMES:
        document = snapshot.get(phase)
        if isinstance(document, dict):
            summaries[phase] = document.pop("change_summary", None) or AUTO_SAVE_SUMMARY
    return summaries


def should_version(previous: Optional[Dict[str, Any]], current: Dict[str, Any], change_summary: str) -> bool:
    """A phase is versioned on its first save, on a manual save, or after a large edit."""
    if not isinstance(previous, dict):
        return True
    if change_summary == MANUAL_SAVE_SUMMARY:
        return True
    if (current.get("content") or "") == (previous.get("content") or ""):
        return False
    word_diff = abs(int(current.get("word_count") or 0) - int(previous.get("word_count") or 0))
    return word_diff >= VERSION_WORD_THRESHOLD


def phases_to_version(previous: Optional[Dict[str, Any]], snapshot: Dict[str, Any],
                      summaries: Dict[str, str]) -> Iterator[Tuple[str, Dict[str, Any], str]]:
    """Yield ``(phase, document, change_summary)`` for every phase that gets a new version."""
    previous = previous or {}
    for phase, summary in summaries.items():
        document = snapshot.get(phase)
        if isinstance(document, dict) and should_version(previous.get(phase), document, summary):
            yield phase, document, summary


def version_record(phase: str, version_number: int, content: str, word_count: int,
                   change_summary: str, created_at: Optional[int] = None) -> Dict[str, Any]:
    return {
        "phase": phase,
        "version_number": version_number,
        "content": content,
        "word_count": word_count,
        "change_summary": change_summary,
        "created_at": int(time.time()) if created_at is None else created_at,
    }


class VersionLog:
    """Numbered per-phase content versions, oldest dropped past ``limit``.

    Backs the memory and JSON gateways; ``to_dict()`` is the persisted form.
    """

    def __init__(self, versions: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                 limit: int = MAX_VERSIONS_PER_PHASE):
        self._versions: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(versions or {})
        self._limit = limit

    def record(self, phase: str, content: str, word_count: int, change_summary: str) -> int:
        versions = self._versions.setdefault(phase, [])
        number = max((v["version_number"] for v in versions), default=0) + 1
        versions.append(version_record(phase, number, content, word_count, change_summary))
        del versions[:-self._limit]
        return number

    def history(self, phase: str, limit: int = MAX_VERSIONS_PER_PHASE) -> List[Dict[str, Any]]:
        """Newest first."""
        versions = sorted(self._versions.get(phase, []), key=lambda v: v["version_number"], reverse=True)
        return copy.deepcopy(versions[:limit])

    def get(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        for version in self._versions.get(phase, []):
            if version["version_number"] == int(version_number):
                return copy.deepcopy(version)
        return None

    def record_snapshot(self, previous: Optional[Dict[str, Any]], snapshot: Dict[str, Any],
                        summaries: Dict[str, str]) -> List[int]:
        """Version the phases of a save that qualify. Returns the new numbers."""
        return [
            self.record(phase, document.get("content") or "", int(document.get("word_count") or 0), summary)
            for phase, document, summary in phases_to_version(previous, snapshot, summaries)
        ]

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return copy.deepcopy(self._versions)


def restore_into(snapshot: Optional[Dict[str, Any]], version: Dict[str, Any]) -> Dict[str, Any]:
    """Put a version's content back as its phase's current document."""
    snapshot = snapshot if snapshot is not None else {}
    snapshot[version["phase"]] = {"content": version["content"], "word_count": version["word_count"]}
    return snapshot


def restored_summary(version_number: int) -> str:
    return f"Restored from version {version_number}"
