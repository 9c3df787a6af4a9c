# /src/draftsync/autosave.py
# AutosaveScheduler - debounced, throttled, single-flight project saves

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .config import Settings
from .errors import TransportError
from .events.envelope import AutosaveStatus
from .events.types import StoreEventType
from .gateway.base import PersistenceGateway
from .gateway.records import AUTO_SAVE_SUMMARY, MANUAL_SAVE_SUMMARY
from .snapshot import CHAT_HISTORY_KEY, PHASE_NAMES, ProjectSnapshot, utc_now_iso
from .store import ObservableStore

# Saves with this reason were asked for by the user and always version the documents
MANUAL_SAVE_REASON = "manual"


def _settle(waiter: asyncio.Future, done: asyncio.Task) -> None:
    """Copy a finished task's outcome onto ``waiter``."""
    if waiter.done():
        return
    if done.cancelled():
        waiter.cancel()
    elif done.exception() is not None:
        waiter.set_exception(done.exception())
    else:
        waiter.set_result(done.result())


class AutosaveScheduler:
    """Decides when the store's snapshot is written to the gateway.

    Policy:
    - Debounce: each request cancels the pending timer and starts a new one
    - Throttle: unless forced, no save earlier than ``min_interval`` after
      the last successful one; the delay is the larger of the two
    - Single-flight: one save in flight, at most one queued rerun
    - Offline: requests are remembered and replayed on reconnect

    Failures are reported through AUTOSAVE_ERROR and ERROR and are retried
    only by the next natural trigger.

    Must be driven from a running event loop.
    """

    def __init__(
        self,
        store: ObservableStore,
        gateway: PersistenceGateway,
        debounce: float = 1.0,
        min_interval: float = 30.0,
        online: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._gateway = gateway
        self._debounce = debounce
        self._min_interval = min_interval
        self._online = online
        self._clock = clock
        self._modules: Dict[str, Any] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending = False
        self._is_saving = False
        self._save_queued = False
        self._queued_manual = False
        self._last_save_at: Optional[float] = None
        self._rerun: Optional[asyncio.Future] = None
        self._tasks: Set[asyncio.Task] = set()
        self._logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, store: ObservableStore, gateway: PersistenceGateway,
                      settings: Settings) -> "AutosaveScheduler":
        return cls(
            store,
            gateway,
            debounce=settings.autosave_debounce_ms / 1000.0,
            min_interval=settings.autosave_min_interval_ms / 1000.0,
        )

    # ========== State ==========

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def is_saving(self) -> bool:
        return self._is_saving

    @property
    def save_queued(self) -> bool:
        return self._save_queued

    @property
    def online(self) -> bool:
        return self._online

    @property
    def last_save_at(self) -> Optional[float]:
        """Clock reading of the last successful save."""
        return self._last_save_at

    @property
    def has_timer(self) -> bool:
        return self._timer is not None

    # ========== Modules ==========

    def register_module(self, name: str, module: Any) -> None:
        """Register a producer whose ``collect_data()`` is merged into every save."""
        self._modules[name] = module

    def unregister_module(self, name: str) -> bool:
        return self._modules.pop(name, None) is not None

    def collect_snapshot(self) -> ProjectSnapshot:
        """Merge the store's state with the latest data of every module.

        Nested dicts merge key by key with the module winning; other values
        are replaced. The chat projection is carried through untouched.
        """
        collected = self._store.get_state().to_dict()
        chat_history = collected.pop(CHAT_HISTORY_KEY, [])

        for name, module in self._modules.items():
            try:
                module_data = module.collect_data()
            except Exception as e:
                self._logger.error(f"Error collecting data from module {name}: {e}")
                continue
            if not module_data:
                continue
            for key, value in module_data.items():
                if key == CHAT_HISTORY_KEY:
                    continue
                current = collected.get(key)
                if isinstance(current, dict) and isinstance(value, dict):
                    collected[key] = {**current, **value}
                else:
                    collected[key] = value

        metadata = collected.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        collected["metadata"] = {**metadata, "modified": utc_now_iso()}
        collected[CHAT_HISTORY_KEY] = chat_history
        return ProjectSnapshot.from_dict(collected)

    # ========== Scheduling ==========

    def schedule_auto_save(self, reason: str = "unspecified", force: bool = False) -> Optional[float]:
        """Request a save soon.

        Returns the delay in seconds, or None when deferred while offline.
        """
        if not self._online:
            self._pending = True
            self._store.notify(StoreEventType.AUTOSAVE_OFFLINE, AutosaveStatus(reason))
            self._logger.debug(f"Autosave deferred while offline ({reason})")
            return None

        self._cancel_timer()

        delay = self._debounce
        if not force and self._last_save_at is not None:
            elapsed = self._clock() - self._last_save_at
            if elapsed < self._min_interval:
                delay = max(self._debounce, self._min_interval - elapsed)

        self._pending = True
        self._store.notify(StoreEventType.AUTOSAVE_SCHEDULED, AutosaveStatus(reason, delay=delay))
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._fire, reason)
        self._logger.debug(f"Autosave scheduled in {delay:.3f}s ({reason})")
        return delay

    def set_online(self, online: bool) -> None:
        """Record a connectivity transition."""
        was_online = self._online
        self._online = online
        if not online:
            self._cancel_timer()
            if was_online:
                self._store.notify(StoreEventType.AUTOSAVE_OFFLINE, AutosaveStatus("offline"))
            return
        if not was_online and (self._pending or self._timer is None):
            # A request deferred while offline skips the throttle window
            self.schedule_auto_save("online-retry", force=self._pending)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, reason: str) -> None:
        self._timer = None
        self._spawn(self._run_autosave(reason))

    async def _run_autosave(self, reason: str) -> None:
        try:
            await self.save_project(reason)
        finally:
            if self._timer is None:
                self._pending = False

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ========== Saving ==========

    async def save_project(self, reason: str = "direct") -> bool:
        """Collect and persist the project now.

        Bypasses debounce and throttle but honors single-flight: a call
        made while a save is running queues one rerun and returns True.
        """
        if self._is_saving:
            self._save_queued = True
            self._queued_manual = self._queued_manual or reason == MANUAL_SAVE_REASON
            self._logger.debug(f"Save in flight, queued rerun ({reason})")
            return True

        self._is_saving = True
        try:
            self._store.notify(StoreEventType.AUTOSAVE_SAVING, AutosaveStatus(reason))
            snapshot = self.collect_snapshot()
            # Keep the store identical to what is persisted
            self._store.set_state(snapshot, silent=True)
            payload = snapshot.to_dict()
            payload.pop(CHAT_HISTORY_KEY, None)

            result = await self._gateway.save_snapshot(self._with_change_summary(payload, reason))
            if not result.success:
                raise TransportError(result.error or "Save failed")

            self._last_save_at = self._clock()
            if result.id_mappings:
                self._apply_id_mappings(result.id_mappings)
            self._logger.info(f"Project saved ({reason})")
            self._store.notify(StoreEventType.SAVED, payload)
            self._store.notify(StoreEventType.AUTOSAVE_SAVED, AutosaveStatus(reason, at=utc_now_iso()))
            return True
        except Exception as e:
            self._logger.error(f"Failed to save project ({reason}): {e}")
            self._store.notify(StoreEventType.ERROR, e)
            self._store.notify(StoreEventType.AUTOSAVE_ERROR, AutosaveStatus(reason, error=e))
            return False
        finally:
            self._is_saving = False
            if self._save_queued:
                self._save_queued = False
                waiter, self._rerun = self._rerun, None
                rerun_reason = MANUAL_SAVE_REASON if self._queued_manual else "queued"
                self._queued_manual = False
                rerun = self._spawn(self.save_project(rerun_reason))
                if waiter is not None:
                    rerun.add_done_callback(lambda done: _settle(waiter, done))

    @staticmethod
    def _with_change_summary(payload: Dict[str, Any], reason: str) -> Dict[str, Any]:
        """Tag each phase document so the gateway can decide whether to version it."""
        summary = MANUAL_SAVE_SUMMARY if reason == MANUAL_SAVE_REASON else AUTO_SAVE_SUMMARY
        request = dict(payload)
        for phase in PHASE_NAMES:
            if isinstance(request.get(phase), dict):
                request[phase] = {**request[phase], "change_summary": summary}
        return request

    def _apply_id_mappings(self, mappings: Dict[str, str]) -> None:
        snapshot = self._store.get_state()
        replaced = snapshot.remap_ids(mappings)
        if replaced:
            self._store.set_state(snapshot, silent=True)
            self._logger.debug(f"Applied {replaced} server id mappings")

    async def _save_latest(self) -> bool:
        """Save now, or wait for the rerun if a save is already running."""
        if not self._is_saving:
            return await self.save_project("flush")
        self._save_queued = True
        if self._rerun is None:
            self._rerun = asyncio.get_running_loop().create_future()
        self._logger.debug("Flush waiting for the queued rerun")
        return await self._rerun

    async def flush(self, timeout: Optional[float] = None) -> bool:
        """Best-effort save bounded by ``timeout`` seconds.

        Reports the outcome of a save that started after the call, so an
        in-flight save with older data is not taken as success. The save
        itself is not cancelled when the deadline passes, so the
        single-flight state stays consistent if it completes later.
        """
        task = self._spawn(self._save_latest())
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self._logger.warning(f"Flush did not finish within {timeout}s; save continues in background")
            return False

    async def drain(self) -> None:
        """Wait for every in-flight and queued save to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel the pending timer and wait for running saves."""
        self._cancel_timer()
        self._pending = False
        await self.drain()
