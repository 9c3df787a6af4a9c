# /tests/test_store.py
# Tests for ObservableStore

import pytest

from draftsync import ObservableStore, ProjectSnapshot, StoreEvent, StoreEventType
from draftsync.snapshot import IdeaItem, PhaseDocument


def make_snapshot(title="Essay") -> ProjectSnapshot:
    snapshot = ProjectSnapshot.new()
    snapshot.metadata.title = title
    snapshot.plan.ideas.append(IdeaItem(id="1", content="Hook"))
    return snapshot


class TestStateAccess:
    def test_get_state_returns_copy(self):
        """Mutating the returned snapshot never touches the store."""
        store = ObservableStore(make_snapshot())

        state = store.get_state()
        state.metadata.title = "Changed"
        state.plan.ideas.clear()

        fresh = store.get_state()
        assert fresh.metadata.title == "Essay"
        assert len(fresh.plan.ideas) == 1

    def test_set_state_copies_input(self):
        """The caller's object is not retained by reference."""
        store = ObservableStore()
        snapshot = make_snapshot()
        store.set_state(snapshot)

        snapshot.metadata.title = "Mutated later"
        assert store.get_state().metadata.title == "Essay"

    def test_version_increments(self):
        store = ObservableStore()
        assert store.version == 0
        store.set_state(make_snapshot())
        store.set_state(make_snapshot(), silent=True)
        assert store.version == 2

    def test_update_state(self):
        """update_state replaces top-level fields."""
        store = ObservableStore(make_snapshot())
        store.update_state(chat_history=[{"role": "user", "content": "Hi", "timestamp": None}])

        assert store.get_state().chat_history[0]["content"] == "Hi"
        assert store.get_state().metadata.title == "Essay"

    def test_update_state_unknown_field(self):
        store = ObservableStore()
        with pytest.raises(AttributeError):
            store.update_state(nonsense=1)


class TestNotifications:
    def test_state_changed_delivers_envelope(self):
        """Subscribers get a StoreEvent carrying a copy of the new snapshot."""
        store = ObservableStore()
        received = []
        store.subscribe(StoreEventType.STATE_CHANGED, received.append)

        store.set_state(make_snapshot())

        assert len(received) == 1
        event = received[0]
        assert isinstance(event, StoreEvent)
        assert event.event_type == StoreEventType.STATE_CHANGED
        assert event.payload.metadata.title == "Essay"

        # Subscribers cannot reach the live snapshot
        event.payload.metadata.title = "Hacked"
        assert store.get_state().metadata.title == "Essay"

    def test_silent_set_state(self):
        store = ObservableStore()
        received = []
        store.subscribe(StoreEventType.STATE_CHANGED, received.append)

        store.set_state(make_snapshot(), silent=True)
        assert received == []

    def test_delivery_order(self):
        """Handlers run synchronously in subscription order."""
        store = ObservableStore()
        order = []
        store.subscribe(StoreEventType.SAVED, lambda e: order.append("first"))
        store.subscribe(StoreEventType.SAVED, lambda e: order.append("second"))
        store.subscribe(StoreEventType.ERROR, lambda e: order.append("other"))

        store.notify(StoreEventType.SAVED, {})
        assert order == ["first", "second"]

    def test_failing_subscriber_is_isolated(self):
        """One raising handler does not block the next."""
        store = ObservableStore()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        store.subscribe(StoreEventType.READY, broken)
        store.subscribe(StoreEventType.READY, received.append)

        store.notify(StoreEventType.READY, None)
        assert len(received) == 1

    def test_unsubscribe(self):
        store = ObservableStore()
        received = []
        sub_id = store.subscribe(StoreEventType.SAVED, received.append)

        assert store.unsubscribe(sub_id) is True
        assert store.unsubscribe(sub_id) is False

        store.notify(StoreEventType.SAVED, {})
        assert received == []

    def test_subscribe_by_event_name(self):
        """Plain event names are accepted where the enum is expected."""
        store = ObservableStore()
        received = []
        store.subscribe("autosave_offline", received.append)

        store.notify(StoreEventType.AUTOSAVE_OFFLINE, None)
        assert len(received) == 1


class TestSilentMode:
    def test_silent_mode_suppresses_everything(self):
        store = ObservableStore()
        received = []
        store.subscribe(StoreEventType.STATE_CHANGED, received.append)
        store.subscribe(StoreEventType.SAVED, received.append)

        store.set_silent_mode(True)
        store.set_state(make_snapshot())
        assert store.notify(StoreEventType.SAVED, {}) is None
        store.set_silent_mode(False)

        assert received == []
        store.set_state(make_snapshot())
        assert len(received) == 1

    def test_silent_scope_nests(self):
        store = ObservableStore()
        with store.silent_updates():
            with store.silent_updates():
                assert store.silent
            assert store.silent
        assert not store.silent

    def test_silent_scope_restores_on_error(self):
        """Notifications resume even if the body raises."""
        store = ObservableStore()
        received = []
        store.subscribe(StoreEventType.STATE_CHANGED, received.append)

        with pytest.raises(ValueError):
            with store.silent_updates():
                store.set_state(make_snapshot())
                raise ValueError("restore failed")

        assert not store.silent
        assert received == []
        store.set_state(make_snapshot())
        assert len(received) == 1

    def test_bulk_restore_is_applied(self):
        """State set inside a silent scope is kept."""
        store = ObservableStore()
        snapshot = make_snapshot("Restored")
        snapshot.phases["write"] = PhaseDocument.from_content("one two three")

        with store.silent_updates():
            store.set_state(snapshot)

        state = store.get_state()
        assert state.metadata.title == "Restored"
        assert state.phase("write").word_count == 3
