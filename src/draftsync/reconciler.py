# /src/draftsync/reconciler.py
# UpdateReconciler - folds partial project updates into the current snapshot

import copy
import logging
from typing import Any, Dict, List, Optional

from .messages import message_key
from .snapshot import CHAT_HISTORY_KEY, ProjectSnapshot
from .store import ObservableStore

_LEGACY_CHAT_KEY = "chatHistory"


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive key-wise merge; lists and primitives from ``source`` replace."""
    merged = dict(target)
    for key, value in source.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class UpdateReconciler:
    """Merges a partial update, such as the project returned with an AI reply.

    Chat history is never replaced: only entries whose dedup key is not
    already present are appended, so messages the transcript wrote
    concurrently survive. The key is the same one the transcript uses.
    """

    def __init__(self):
        self._logger = logging.getLogger(__name__)

    def merge(self, current: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        merged = copy.deepcopy(current)
        for key, value in (update or {}).items():
            if key in (CHAT_HISTORY_KEY, _LEGACY_CHAT_KEY):
                existing = merged.get(CHAT_HISTORY_KEY) or []
                merged[CHAT_HISTORY_KEY] = self.merge_chat_history(existing, value)
                continue
            current_value = merged.get(key)
            if isinstance(value, dict) and isinstance(current_value, dict):
                merged[key] = deep_merge(current_value, value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged

    def merge_chat_history(self, existing: List[Dict[str, Any]], incoming: Any) -> List[Dict[str, Any]]:
        merged = [dict(entry) for entry in existing]
        if not isinstance(incoming, list):
            return merged
        seen = {
            message_key(entry.get("role"), entry.get("timestamp"), entry.get("content"))
            for entry in merged
        }
        added = 0
        for entry in incoming:
            if not isinstance(entry, dict):
                continue
            key = message_key(entry.get("role"), entry.get("timestamp"), entry.get("content"))
            if key in seen:
                continue
            seen.add(key)
            merged.append(dict(entry))
            added += 1
        if added:
            self._logger.debug(f"Merged {added} new chat history entries")
        return merged

    def apply(self, store: ObservableStore, update: Optional[Dict[str, Any]]) -> Optional[ProjectSnapshot]:
        """Merge ``update`` into the store's snapshot and publish it.

        Returns the new snapshot, or None when there was nothing to merge.
        """
        if not update:
            return None
        merged = self.merge(store.get_state().to_dict(), update)
        snapshot = ProjectSnapshot.from_dict(merged)
        store.set_state(snapshot)
        return snapshot
