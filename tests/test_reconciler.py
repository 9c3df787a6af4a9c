# /tests/test_reconciler.py
# Tests for UpdateReconciler

from draftsync import ObservableStore, ProjectSnapshot, StoreEventType, UpdateReconciler
from draftsync.reconciler import deep_merge


class TestMerge:
    def test_nested_dicts_merge_recursively(self):
        current = {"metadata": {"title": "Essay", "extra": {"a": 1, "b": 2}}, "theme": "light"}
        update = {"metadata": {"extra": {"b": 3}}, "theme": "dark"}

        merged = UpdateReconciler().merge(current, update)

        assert merged == {"metadata": {"title": "Essay", "extra": {"a": 1, "b": 3}}, "theme": "dark"}
        # Inputs are left alone
        assert current["metadata"]["extra"]["b"] == 2

    def test_lists_are_replaced(self):
        current = {"plan": {"ideas": [{"id": "1"}, {"id": "2"}], "section_order": ["a"]}}
        update = {"plan": {"ideas": [{"id": "3"}]}}

        merged = UpdateReconciler().merge(current, update)

        assert merged["plan"]["ideas"] == [{"id": "3"}]
        assert merged["plan"]["section_order"] == ["a"]

    def test_chat_history_only_appends_new_entries(self):
        """Existing entries survive; duplicates by normalized key are dropped."""
        current = {"chat_history": [
            {"role": "user", "content": "Hi", "timestamp": "2024-01-15T10:30:00.000Z"},
            {"role": "assistant", "content": "Local only", "timestamp": "2024-01-15T10:31:00.000Z"},
        ]}
        update = {"chatHistory": [
            {"role": "user", "content": "Hi", "timestamp": "2024-01-15 10:30:00"},
            {"role": "assistant", "content": "Hello!", "timestamp": 1705314720},
            {"role": "assistant", "content": "Hello!", "timestamp": 1705314720},
        ]}

        merged = UpdateReconciler().merge(current, update)

        assert [m["content"] for m in merged["chat_history"]] == ["Hi", "Local only", "Hello!"]
        assert "chatHistory" not in merged

    def test_chat_history_non_list_is_ignored(self):
        current = {"chat_history": [{"role": "user", "content": "Hi", "timestamp": None}]}
        merged = UpdateReconciler().merge(current, {"chat_history": None})
        assert merged["chat_history"] == current["chat_history"]

    def test_deep_merge(self):
        assert deep_merge({"a": {"b": 1}}, {"a": {"c": 2}, "d": [1]}) == {"a": {"b": 1, "c": 2}, "d": [1]}


class TestApply:
    def test_apply_publishes_merged_snapshot(self):
        snapshot = ProjectSnapshot.new()
        snapshot.metadata.title = "Essay"
        store = ObservableStore(snapshot)
        received = []
        store.subscribe(StoreEventType.STATE_CHANGED, received.append)

        result = UpdateReconciler().apply(store, {
            "write": {"content": "A new opening line"},
            "plan": {"ideas": [{"id": "7", "content": "Counterargument"}]},
        })

        state = store.get_state()
        assert result.phase("write").content == "A new opening line"
        assert state.phase("write").word_count == 4
        assert state.metadata.title == "Essay"
        assert [idea.content for idea in state.plan.ideas] == ["Counterargument"]
        assert len(received) == 1

    def test_apply_nothing(self):
        store = ObservableStore()
        assert UpdateReconciler().apply(store, None) is None
        assert UpdateReconciler().apply(store, {}) is None
        assert store.version == 0
