# /src/draftsync/store.py
# ObservableStore - snapshot holder with synchronous pub/sub

import copy
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .events.envelope import StoreEvent
from .events.types import StoreEventType
from .snapshot import ProjectSnapshot


# Type alias for subscription callbacks
SubscriptionCallback = Callable[[StoreEvent], None]


class ObservableStore:
    """Central holder of the project snapshot.

    The store:
    - Hands out deep copies only; nobody gets a live reference
    - Notifies subscribers synchronously, in subscription order
    - Isolates subscriber failures from each other
    - Supports silent scopes for bulk restores

    One instance is constructed per project and passed to every component.
    """

    def __init__(self, initial: Optional[ProjectSnapshot] = None):
        self._state = copy.deepcopy(initial) if initial is not None else ProjectSnapshot()
        self._subscriptions: Dict[str, Tuple[StoreEventType, SubscriptionCallback]] = {}
        self._silent_depth = 0
        self._version = 0
        self._logger = logging.getLogger(__name__)

    @property
    def version(self) -> int:
        """Incremented on every set_state."""
        return self._version

    @property
    def silent(self) -> bool:
        return self._silent_depth > 0

    # ========== State ==========

    def get_state(self) -> ProjectSnapshot:
        """Return a deep copy of the current snapshot."""
        return copy.deepcopy(self._state)

    def set_state(self, snapshot: ProjectSnapshot, silent: bool = False) -> None:
        """Replace the snapshot and notify STATE_CHANGED unless silenced."""
        self._state = copy.deepcopy(snapshot)
        self._version += 1
        if not silent:
            self.notify(StoreEventType.STATE_CHANGED, copy.deepcopy(self._state))

    def update_state(self, silent: bool = False, **updates: Any) -> None:
        """Shallow top-level update, e.g. ``update_state(chat_history=[...])``."""
        snapshot = self.get_state()
        for name, value in updates.items():
            if not hasattr(snapshot, name):
                raise AttributeError(f"ProjectSnapshot has no field {name!r}")
            setattr(snapshot, name, value)
        self.set_state(snapshot, silent=silent)

    # ========== Silent mode ==========

    def set_silent_mode(self, enabled: bool) -> None:
        """Suspend or resume all notifications regardless of per-call flags."""
        self._silent_depth = 1 if enabled else 0

    @contextmanager
    def silent_updates(self) -> Iterator["ObservableStore"]:
        """Suppress notifications inside the block; restored even on error."""
        self._silent_depth += 1
        try:
            yield self
        finally:
            self._silent_depth = max(0, self._silent_depth - 1)

    # ========== Subscriptions (Pub/Sub) ==========

    def subscribe(self, event_type: StoreEventType, callback: SubscriptionCallback) -> str:
        """Subscribe to one event type.

        Args:
            event_type: The event to listen for
            callback: Called with the StoreEvent envelope

        Returns:
            Subscription ID (use to unsubscribe)
        """
        subscription_id = str(uuid.uuid4())
        self._subscriptions[subscription_id] = (StoreEventType(event_type), callback)
        self._logger.debug(f"New subscription: {subscription_id} ({event_type})")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Returns True if successfully unsubscribed, False if not found."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            self._logger.debug(f"Unsubscribed: {subscription_id}")
            return True
        return False

    def notify(self, event_type: StoreEventType, payload: Any = None) -> Optional[StoreEvent]:
        """Deliver an event to its subscribers.

        Returns the dispatched envelope, or None while silenced.
        """
        if self.silent:
            return None
        event = StoreEvent.create(StoreEventType(event_type), payload)
        # Snapshot the list so handlers may (un)subscribe while we iterate
        targets: List[Tuple[str, SubscriptionCallback]] = [
            (sub_id, callback)
            for sub_id, (subscribed, callback) in self._subscriptions.items()
            if subscribed == event.event_type
        ]
        for sub_id, callback in targets:
            self._safe_callback(sub_id, callback, event)
        return event

    def _safe_callback(self, subscription_id: str, callback: SubscriptionCallback, event: StoreEvent) -> None:
        """Safely invoke a subscription callback, catching exceptions."""
        try:
            callback(event)
        except Exception as e:
            self._logger.error(
                f"Subscription {subscription_id} handler for {event.event_type.value} failed: {e}"
            )

    def clear_subscriptions(self) -> None:
        self._subscriptions.clear()
