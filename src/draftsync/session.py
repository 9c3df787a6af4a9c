# /src/draftsync/session.py
# WritingSession - the surface the editor and chat panel talk to

import logging
from typing import Any, Dict, List, Optional

from .autosave import MANUAL_SAVE_REASON, AutosaveScheduler
from .config import Settings
from .events.types import StoreEventType
from .gateway.base import AssistantProxy, ItemRef, PersistenceGateway
from .gateway.records import matches_ref
from .messages import ChatMessage, MessageRole
from .reconciler import UpdateReconciler
from .snapshot import CHAT_HISTORY_KEY, PHASE_NAMES, PhaseDocument, ProjectSnapshot, html_to_text
from .store import ObservableStore, SubscriptionCallback
from .transcript import TranscriptEngine
from .views.base import TranscriptView

APOLOGY_REPLY = "Sorry, I couldn't reach the writing assistant. Please try again."


class WritingSession:
    """One student's project: document state, autosave and the assistant chat.

    Wires an ObservableStore, AutosaveScheduler, TranscriptEngine and
    UpdateReconciler around a single gateway. ``start()`` restores the
    project and the newest chat page; ``close()`` makes a last bounded
    save attempt and releases the gateway.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        assistant: Optional[AssistantProxy] = None,
        view: Optional[TranscriptView] = None,
        settings: Optional[Settings] = None,
        store: Optional[ObservableStore] = None,
        instructor_instructions: str = "",
    ):
        if assistant is None:
            if not isinstance(gateway, AssistantProxy):
                raise ValueError("An assistant proxy is required when the gateway is not one")
            assistant = gateway
        self.settings = settings or Settings.from_env()
        self.gateway = gateway
        self.assistant = assistant
        self.store = store or ObservableStore()
        self.autosave = AutosaveScheduler.from_settings(self.store, gateway, self.settings)
        self.transcript = TranscriptEngine.from_settings(self.store, gateway, self.settings, view=view)
        self.reconciler = UpdateReconciler()
        self._instructor_instructions = instructor_instructions
        self._send_queue: List[str] = []
        self._is_processing = False
        self._started = False
        self._logger = logging.getLogger(__name__)

        # Cached chat history only counts until the remote history is in
        self.store.subscribe(StoreEventType.STATE_CHANGED, self._on_state_changed)

    # ========== Lifecycle ==========

    async def start(self) -> ProjectSnapshot:
        """Restore the saved project (or create one) and load recent chat."""
        await self.gateway.initialize()
        try:
            data = await self.gateway.load_snapshot()
        except Exception as e:
            self._logger.error(f"Failed to load project, starting fresh: {e}")
            data = None

        if data:
            snapshot = ProjectSnapshot.from_dict(data)
            self._logger.info("Project loaded")
        else:
            snapshot = ProjectSnapshot.new(self._instructor_instructions)
            self._logger.info("Created new project")

        with self.store.silent_updates():
            self.store.set_state(snapshot)
        self.store.notify(StoreEventType.READY, self.store.get_state())

        self.transcript.sync_from_state(snapshot.chat_history)
        await self.transcript.load_initial()
        self._started = True
        return self.store.get_state()

    async def close(self) -> None:
        """Best-effort final save, then stop timers and release the gateway."""
        if self._started:
            await self.autosave.flush(self.settings.flush_timeout_ms / 1000.0)
        await self.autosave.close()
        await self.gateway.close()
        self._started = False

    async def __aenter__(self) -> "WritingSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _on_state_changed(self, event) -> None:
        snapshot = event.payload
        if isinstance(snapshot, ProjectSnapshot) and snapshot.chat_history:
            self.transcript.sync_from_state(snapshot.chat_history)

    # ========== Chat ==========

    def get_messages(self) -> List[ChatMessage]:
        return self.transcript.get_messages()

    async def send_message(self, content: str) -> Optional[ChatMessage]:
        """Send a user message and add the assistant's reply.

        Returns the assistant message, or None when the content was blank,
        a duplicate, or queued behind a send already in progress.
        """
        content = (content or "").strip()
        if not content:
            return None
        if self._is_processing:
            self._send_queue.append(content)
            self._logger.debug(f"Send in progress, queued message ({len(self._send_queue)} waiting)")
            return None

        self._is_processing = True
        try:
            reply = await self._process_message(content)
            while self._send_queue:
                await self._process_message(self._send_queue.pop(0))
            return reply
        finally:
            self._is_processing = False

    async def _process_message(self, content: str) -> Optional[ChatMessage]:
        if not await self.transcript.add_message(ChatMessage.create(MessageRole.USER, content)):
            return None

        reply_text = await self._request_reply(content, apply_update=True)
        assistant_message = ChatMessage.create(MessageRole.ASSISTANT, reply_text)
        if not await self.transcript.add_message(assistant_message):
            return None
        return assistant_message

    async def _request_reply(self, prompt: str, apply_update: bool = False) -> str:
        try:
            result = await self.assistant.request_reply(prompt, self.sanitized_project())
        except Exception as e:
            self._logger.error(f"Assistant request failed: {e}")
            return APOLOGY_REPLY

        if apply_update and result.updated_project:
            self.reconciler.apply(self.store, result.updated_project)
            self.autosave.schedule_auto_save("assistant-update")
        return result.reply or APOLOGY_REPLY

    async def regenerate_last_message(self) -> Optional[ChatMessage]:
        """Ask again for the most recent assistant reply."""
        last = next(
            (m for m in reversed(self.transcript.get_messages()) if m.role is MessageRole.ASSISTANT),
            None,
        )
        if last is None:
            self._logger.debug("No assistant message to regenerate")
            return None
        return await self.transcript.regenerate(last, self._request_reply)

    async def fetch_older_messages(self) -> int:
        return await self.transcript.fetch_older()

    # ========== Project ==========

    def get_state(self) -> ProjectSnapshot:
        return self.store.get_state()

    def update_phase(self, name: str, content: str) -> None:
        """Replace one phase document's content and schedule a save."""
        snapshot = self.store.get_state()
        snapshot.phases[name] = PhaseDocument.from_content(content)
        self.store.set_state(snapshot)
        self.autosave.schedule_auto_save(f"{name}-edit")

    def schedule_auto_save(self, reason: str = "unspecified", force: bool = False) -> Optional[float]:
        return self.autosave.schedule_auto_save(reason, force)

    async def save_project(self) -> bool:
        """Save now on the user's request; every phase document gets a new version."""
        return await self.autosave.save_project(MANUAL_SAVE_REASON)

    def set_online(self, online: bool) -> None:
        self.autosave.set_online(online)

    def register_module(self, name: str, module: Any) -> None:
        self.autosave.register_module(name, module)

    def subscribe(self, event_type: StoreEventType, callback: SubscriptionCallback) -> str:
        return self.store.subscribe(event_type, callback)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.store.unsubscribe(subscription_id)

    async def delete_item(self, ref: ItemRef) -> bool:
        """Remove a planning item locally and ask the gateway to delete it.

        The remote delete is advisory: a failure is logged and the next
        save carries the local removal anyway.
        """
        snapshot = self.store.get_state()
        before = len(snapshot.plan.ideas)
        snapshot.plan.ideas = [idea for idea in snapshot.plan.ideas if not matches_ref(idea.to_dict(), ref)]
        removed = len(snapshot.plan.ideas) < before
        if removed:
            self.store.set_state(snapshot)

        try:
            return await self.gateway.delete_item(ref) or removed
        except Exception as e:
            self._logger.warning(f"Remote delete failed for {ref!r}: {e}")
            return removed

    # ========== Version history ==========

    async def list_versions(self, phase: str) -> List[Dict[str, Any]]:
        return await self.gateway.list_versions(phase)

    async def get_version(self, phase: str, version_number: int) -> Optional[Dict[str, Any]]:
        return await self.gateway.get_version(phase, version_number)

    async def restore_version(self, phase: str, version_number: int) -> bool:
        """Restore a phase document to a saved version.

        The store is replaced without notifications, since the editor reloads
        from ``get_state()`` after a restore. A forced save follows so the
        rest of the project is written against the restored document.
        """
        if phase not in PHASE_NAMES:
            raise ValueError(f"Unknown phase {phase!r}")
        try:
            if not await self.gateway.restore_version(phase, version_number):
                self._logger.warning(f"Version {version_number} of {phase} not found")
                return False
            version = await self.gateway.get_version(phase, version_number)
        except Exception as e:
            self._logger.error(f"Failed to restore {phase} version {version_number}: {e}")
            return False
        if version is None:
            self._logger.warning(f"Version {version_number} of {phase} vanished during restore")
            return False

        with self.store.silent_updates():
            snapshot = self.store.get_state()
            snapshot.phases[phase] = PhaseDocument.from_content(version["content"])
            self.store.set_state(snapshot)
        self.autosave.schedule_auto_save(f"{phase}-restore", force=True)
        self._logger.info(f"Restored {phase} to version {version_number}")
        return True

    def sanitized_project(self) -> Dict[str, Any]:
        """Project data for the assistant: plain text only, no chat history."""
        data = self.store.get_state().to_dict()
        data.pop(CHAT_HISTORY_KEY, None)
        for name in PHASE_NAMES:
            phase = data.get(name)
            if isinstance(phase, dict):
                phase["content"] = html_to_text(phase.get("content") or "").strip()
        for idea in (data.get("plan") or {}).get("ideas") or []:
            idea["content"] = html_to_text(idea.get("content") or "").strip()
        return data
