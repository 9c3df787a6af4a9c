# /tests/test_transcript.py
# Tests for TranscriptEngine

import asyncio

import pytest

from draftsync import (
    ChatMessage,
    ConflictError,
    FailureKind,
    MemoryGateway,
    MessageRole,
    MessageStatus,
    ObservableStore,
    SerializationError,
    Settings,
    StoreEventType,
    TextTranscriptView,
    TranscriptEngine,
    TranscriptState,
    TransportError,
)


def ts(minute: int) -> str:
    """SQL-style timestamp, the way the server stores them."""
    return f"2024-01-15 10:{minute:02d}:00"


def iso(minute: int) -> str:
    return f"2024-01-15T10:{minute:02d}:00.000Z"


class RecordingView(TextTranscriptView):
    def __init__(self):
        super().__init__()
        self.calls = []

    def render(self, messages, prepend=False):
        self.calls.append(([m.id for m in messages], prepend))
        super().render(messages, prepend)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_engine(gateway=None, **kwargs):
    store = ObservableStore()
    gateway = gateway or MemoryGateway()
    kwargs.setdefault("view", RecordingView())
    engine = TranscriptEngine(store, gateway, **kwargs)
    return engine, store, gateway


class TestInitialLoad:
    @pytest.mark.asyncio
    async def test_loads_sorted_page(self):
        """Three messages come back oldest first with nothing more to fetch."""
        engine, store, gateway = make_engine(page_size=50)
        gateway.add_record("assistant", "third", ts(3))
        gateway.add_record("user", "first", ts(1))
        gateway.add_record("assistant", "second", ts(2))

        assert await engine.load_initial() is True

        messages = engine.get_messages()
        assert [m.content for m in messages] == ["first", "second", "third"]
        assert [m.timestamp for m in messages] == [iso(1), iso(2), iso(3)]
        assert all(m.status is MessageStatus.LOADED for m in messages)
        assert engine.state is TranscriptState.LOADED
        assert engine.has_more is False
        assert engine.cursor.oldest_timestamp == iso(1)
        assert [r["content"] for r in store.get_state().chat_history] == ["first", "second", "third"]
        assert engine.view.message_ids == [m.id for m in messages]

    @pytest.mark.asyncio
    async def test_load_is_idempotent(self):
        engine, store, gateway = make_engine()
        gateway.add_record("user", "Hi", ts(1))

        await engine.load_initial()
        await engine.load_initial()

        assert gateway.calls["load_message_page"] == 1
        assert len(engine.get_messages()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_loads_fetch_once(self):
        engine, store, gateway = make_engine(gateway=MemoryGateway(latency=0.02), history_timeout=None)
        gateway.add_record("user", "Hi", ts(1))

        results = await asyncio.gather(engine.load_initial(), engine.load_initial())

        assert results == [True, False]
        assert gateway.calls["load_message_page"] == 1

    @pytest.mark.asyncio
    async def test_force_reload_clears_local_state(self):
        engine, store, gateway = make_engine()
        gateway.add_record("user", "Hi", ts(1))
        await engine.load_initial()
        engine.remove_message(engine.get_messages()[0].id)

        await engine.load_initial(force_reload=True)

        assert gateway.calls["load_message_page"] == 2
        assert [m.content for m in engine.get_messages()] == ["Hi"]

    @pytest.mark.asyncio
    async def test_falls_back_to_sessionless_history(self):
        """Legacy histories without a session id are still found."""
        engine, store, gateway = make_engine(session_id="essay-1")
        gateway.add_record("user", "old question", ts(1), session_id=None)

        await engine.load_initial()

        assert gateway.calls["load_message_page"] == 2
        assert [m.content for m in engine.get_messages()] == ["old question"]

    @pytest.mark.asyncio
    async def test_has_more_when_page_is_full(self):
        engine, store, gateway = make_engine(page_size=2)
        for minute in (1, 2, 3):
            gateway.add_record("user", f"m{minute}", ts(minute))

        await engine.load_initial()

        assert engine.has_more is True
        assert [m.content for m in engine.get_messages()] == ["m2", "m3"]

    @pytest.mark.asyncio
    async def test_unparseable_timestamp_is_kept_without_label(self):
        engine, store, gateway = make_engine()
        gateway.add_record("user", "when?", "not a time")
        gateway.add_record("assistant", "now", ts(5))

        await engine.load_initial()

        first, second = engine.get_messages()
        assert first.content == "when?"
        assert first.timestamp is None
        assert first.time_label == ""
        assert engine.view.output().splitlines()[0] == "You: when?"
        assert engine.view.output().splitlines()[1].startswith("[")

    @pytest.mark.asyncio
    async def test_ties_break_by_numeric_id(self):
        engine, store, gateway = make_engine()
        gateway.add_record("user", "later id", ts(1), record_id=10)
        gateway.add_record("user", "earlier id", ts(1), record_id=2)

        await engine.load_initial()

        assert [m.id for m in engine.get_messages()] == ["2", "10"]

    @pytest.mark.asyncio
    async def test_from_settings(self):
        settings = Settings(page_size=10, session_id="s1", history_timeout_ms=0, recent_window_ms=2000)
        engine = TranscriptEngine.from_settings(ObservableStore(), MemoryGateway(), settings)
        assert engine.session_id == "s1"
        assert engine.cursor.page_size == 10


class TestLoadFailures:
    @pytest.mark.asyncio
    async def test_transport_failure_offers_retry(self):
        engine, store, gateway = make_engine()
        failures = []
        store.subscribe(StoreEventType.TRANSCRIPT_ERROR, failures.append)
        gateway.add_record("user", "Hi", ts(1))
        gateway.fail("load_message_page")

        assert await engine.load_initial() is False

        assert engine.state is TranscriptState.ERROR
        assert failures[0].payload.kind is FailureKind.TRANSPORT
        assert engine.view.error is failures[0].payload
        assert engine.view.retry is not None

        gateway.heal()
        await engine.view.retry()

        assert engine.state is TranscriptState.LOADED
        assert [m.content for m in engine.get_messages()] == ["Hi"]
        assert engine.view.error is None

    @pytest.mark.asyncio
    async def test_serialization_failure_is_distinct(self):
        engine, store, gateway = make_engine()
        failures = []
        store.subscribe(StoreEventType.TRANSCRIPT_ERROR, failures.append)
        gateway.fail("load_message_page", SerializationError("expected JSON"))

        await engine.load_initial()

        assert failures[0].payload.kind is FailureKind.SERIALIZATION
        assert failures[0].payload.message == "expected JSON"

    @pytest.mark.asyncio
    async def test_initial_load_times_out(self):
        engine, store, gateway = make_engine(gateway=MemoryGateway(latency=0.2), history_timeout=0.02)

        assert await engine.load_initial() is False
        assert engine.state is TranscriptState.ERROR
        assert engine.view.error.kind is FailureKind.TRANSPORT


class TestPagination:
    @pytest.mark.asyncio
    async def test_fetch_older_prepends_in_order(self):
        engine, store, gateway = make_engine(page_size=4)
        for minute in range(1, 9):
            gateway.add_record("user", f"m{minute}", ts(minute))
        await engine.load_initial()
        assert [m.content for m in engine.get_messages()] == ["m5", "m6", "m7", "m8"]
        assert engine.cursor.oldest_timestamp == iso(5)

        added = await engine.fetch_older()

        assert added == 4
        messages = engine.get_messages()
        assert [m.content for m in messages] == [f"m{n}" for n in range(1, 9)]
        assert engine.cursor.oldest_timestamp == iso(1)
        # Only the revealed messages were rendered, at the head
        assert engine.view.calls[-1] == ([m.id for m in messages[:4]], True)
        assert engine.view.message_ids == [m.id for m in messages]

        assert await engine.fetch_older() == 0
        assert engine.has_more is False

        # Exhausted for good
        calls = gateway.calls["load_message_page"]
        assert await engine.fetch_older() == 0
        assert gateway.calls["load_message_page"] == calls

    @pytest.mark.asyncio
    async def test_fetch_older_keeps_undated_messages_first(self):
        """Undated cached messages sort as the epoch, ahead of any older page."""
        engine, store, gateway = make_engine(page_size=2)
        for minute in range(1, 5):
            gateway.add_record("user", f"m{minute}", ts(minute))
        engine.sync_from_state([{"role": "assistant", "content": "legacy"}])
        await engine.load_initial()
        assert [m.content for m in engine.get_messages()] == ["legacy", "m3", "m4"]

        assert await engine.fetch_older() == 2

        messages = engine.get_messages()
        assert [m.content for m in messages] == ["legacy", "m1", "m2", "m3", "m4"]
        assert [m.sort_key() for m in messages] == sorted(m.sort_key() for m in messages)
        assert engine.view.message_ids == [m.id for m in messages]
        # The page could not go at the head, so the view was redrawn
        assert engine.view.calls[-1] == ([m.id for m in messages], False)

    @pytest.mark.asyncio
    async def test_fetch_older_requires_loaded(self):
        engine, store, gateway = make_engine()
        assert await engine.fetch_older() == 0
        assert gateway.calls["load_message_page"] == 0

    @pytest.mark.asyncio
    async def test_fetch_older_is_serialized(self):
        gateway = MemoryGateway()
        engine, store, _ = make_engine(gateway=gateway, page_size=1, history_timeout=None)
        for minute in (1, 2, 3):
            gateway.add_record("user", f"m{minute}", ts(minute))
        await engine.load_initial()
        gateway.latency = 0.02

        results = await asyncio.gather(engine.fetch_older(), engine.fetch_older())

        assert sorted(results) == [0, 1]
        assert [m.content for m in engine.get_messages()] == ["m2", "m3"]

    @pytest.mark.asyncio
    async def test_fetch_older_failure_releases_flag(self):
        engine, store, gateway = make_engine(page_size=1)
        gateway.add_record("user", "m1", ts(1))
        gateway.add_record("user", "m2", ts(2))
        await engine.load_initial()
        gateway.fail("load_message_page")

        assert await engine.fetch_older() == 0
        assert engine.is_fetching_older is False
        assert engine.has_more is True

        gateway.heal()
        assert await engine.fetch_older() == 1


class TestAddMessage:
    @pytest.mark.asyncio
    async def test_new_message_is_appended_remotely(self):
        engine, store, gateway = make_engine(session_id="s1")
        await engine.load_initial()
        message = ChatMessage.create("user", "Hello")

        assert await engine.add_message(message) is True

        assert engine.get_messages() == [message]
        assert store.get_state().chat_history[-1]["content"] == "Hello"
        record = gateway.messages[-1]
        assert (record["session_id"], record["role"], record["content"]) == ("s1", "user", "Hello")
        assert engine.view.calls[-1] == ([message.id], False)

    @pytest.mark.asyncio
    async def test_loaded_message_is_not_appended(self):
        engine, store, gateway = make_engine()
        message = ChatMessage.from_record({"id": 1, "role": "user", "content": "old", "timestamp": ts(1)})

        assert await engine.add_message(message) is True
        assert gateway.calls["append_message"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_send(self):
        """Sending the same text twice in quick succession stores it once."""
        engine, store, gateway = make_engine()
        await engine.load_initial()

        assert await engine.add_message(ChatMessage.create("user", "Hello")) is True
        await asyncio.sleep(0.01)
        assert await engine.add_message(ChatMessage.create("user", "Hello")) is False

        assert len(engine.get_messages()) == 1
        assert len(gateway.messages) == 1

    @pytest.mark.asyncio
    async def test_recency_window_expires(self):
        clock = FakeClock()
        engine, store, gateway = make_engine(recent_window=5.0, clock=clock)
        first = ChatMessage("a", MessageRole.USER, "Hello", iso(1))
        second = ChatMessage("b", MessageRole.USER, "Hello", iso(2))

        assert await engine.add_message(first) is True
        clock.now = 6.0
        assert await engine.add_message(second) is True

    @pytest.mark.asyncio
    async def test_same_content_other_role_is_accepted(self):
        engine, store, gateway = make_engine()
        assert await engine.add_message(ChatMessage("a", MessageRole.USER, "Thanks", iso(1))) is True
        assert await engine.add_message(ChatMessage("b", MessageRole.ASSISTANT, "Thanks", iso(1))) is True

    @pytest.mark.asyncio
    async def test_dedup_against_loaded_history(self):
        """An optimistic copy and the loaded record collapse into one."""
        engine, store, gateway = make_engine()
        gateway.add_record("user", "Hello", ts(30), record_id=1)
        await engine.load_initial()

        optimistic = ChatMessage("user_local", MessageRole.USER, "Hello", iso(30))
        assert await engine.add_message(optimistic) is False
        assert len(engine.get_messages()) == 1

    @pytest.mark.asyncio
    async def test_dedup_when_optimistic_comes_first(self):
        engine, store, gateway = make_engine()
        gateway.add_record("user", "Hello", ts(30), record_id=1)

        optimistic = ChatMessage("user_local", MessageRole.USER, "Hello", iso(30))
        assert await engine.add_message(optimistic) is True
        await engine.load_initial()

        assert [m.content for m in engine.get_messages()] == ["Hello"]

    @pytest.mark.asyncio
    async def test_invalid_messages_are_rejected(self):
        engine, store, gateway = make_engine()
        assert await engine.add_message(ChatMessage("", MessageRole.USER, "x", iso(1))) is False
        assert await engine.add_message(ChatMessage("a", MessageRole.USER, "", iso(1))) is False
        assert await engine.add_message({"role": "user", "content": "x"}) is False
        assert engine.get_messages() == []

    @pytest.mark.asyncio
    async def test_append_failure_keeps_message(self):
        engine, store, gateway = make_engine()
        failed = []
        engine.on_append_failed(lambda message, error: failed.append((message, error)))
        gateway.fail("append_message")
        message = ChatMessage.create("user", "Hello")

        assert await engine.add_message(message) is True

        assert engine.get_messages() == [message]
        assert failed[0][0] is message
        assert isinstance(failed[0][1], TransportError)

    @pytest.mark.asyncio
    async def test_out_of_order_insert(self):
        engine, store, gateway = make_engine()
        late = ChatMessage("b", MessageRole.USER, "late", iso(5))
        early = ChatMessage.from_record({"id": 1, "role": "user", "content": "early", "timestamp": ts(1)})

        await engine.add_message(late)
        await engine.add_message(early)

        assert [m.content for m in engine.get_messages()] == ["early", "late"]
        assert engine.view.message_ids == ["1", "b"]

    @pytest.mark.asyncio
    async def test_same_millisecond_reply_follows_prompt(self):
        """A reply stamped in the same millisecond as its prompt stays after it."""
        engine, store, gateway = make_engine()
        await engine.load_initial()
        stamp = "2024-01-15T10:00:00.000Z"
        prompt = ChatMessage("user_1705312800000_zzz", MessageRole.USER, "question", stamp)
        reply = ChatMessage("assistant_1705312800000_aaa", MessageRole.ASSISTANT, "answer", stamp)

        assert await engine.add_message(prompt) is True
        assert await engine.add_message(reply) is True

        assert [m.content for m in engine.get_messages()] == ["question", "answer"]
        assert engine.view.message_ids == [prompt.id, reply.id]
        assert [r["content"] for r in store.get_state().chat_history] == ["question", "answer"]

    @pytest.mark.asyncio
    async def test_recent_entries_are_pruned(self):
        clock = FakeClock()
        engine, store, gateway = make_engine(recent_window=5.0, clock=clock)

        for n in range(20):
            clock.now = n * 60.0
            assert await engine.add_message(ChatMessage(f"m{n}", MessageRole.USER, f"note {n}", iso(n))) is True

        assert len(engine._recent) == 1

    @pytest.mark.asyncio
    async def test_admit_raises_conflict_for_duplicates(self):
        engine, store, gateway = make_engine(recent_window=5.0, clock=FakeClock())
        first = ChatMessage("a", MessageRole.USER, "Hello", iso(1))
        assert await engine.add_message(first) is True

        with pytest.raises(ConflictError):
            engine._admit(ChatMessage("b", MessageRole.USER, "Hello", iso(1)), 0.0)
        with pytest.raises(ConflictError):
            engine._admit(ChatMessage("c", MessageRole.USER, "Hello", iso(2)), 1.0)
        engine._admit(ChatMessage("d", MessageRole.USER, "Hello", iso(2)), 10.0)


class TestCachedState:
    @pytest.mark.asyncio
    async def test_cached_history_before_load(self):
        engine, store, gateway = make_engine()
        added = engine.sync_from_state([{"role": "user", "content": "cached", "timestamp": iso(1)}])
        assert added == 1
        assert [m.content for m in engine.get_messages()] == ["cached"]

    @pytest.mark.asyncio
    async def test_cached_history_ignored_after_load(self):
        """A stale snapshot never overwrites fetched history."""
        engine, store, gateway = make_engine()
        gateway.add_record("user", "fresh", ts(2))
        await engine.load_initial()

        added = engine.sync_from_state([{"role": "user", "content": "stale", "timestamp": iso(1)}])

        assert added == 0
        assert [m.content for m in engine.get_messages()] == ["fresh"]


class TestRegenerate:
    @pytest.mark.asyncio
    async def test_regenerate_replaces_reply(self):
        engine, store, gateway = make_engine()
        await engine.load_initial()
        question = ChatMessage("q", MessageRole.USER, "Question?", iso(1))
        answer = ChatMessage("a", MessageRole.ASSISTANT, "Old answer", iso(2))
        await engine.add_message(question)
        await engine.add_message(answer)
        prompts = []

        async def reply_factory(prompt):
            prompts.append(prompt)
            return "New answer"

        regenerated = await engine.regenerate(answer, reply_factory)

        assert prompts == ["Question?"]
        assert regenerated.content == "New answer"
        assert [m.content for m in engine.get_messages()] == ["Question?", "New answer"]
        assert "a" not in engine.view.message_ids
        assert gateway.calls["delete_item"] == 0

    @pytest.mark.asyncio
    async def test_regenerate_same_text_is_allowed(self):
        engine, store, gateway = make_engine()
        await engine.add_message(ChatMessage("q", MessageRole.USER, "Question?", iso(1)))
        answer = ChatMessage("a", MessageRole.ASSISTANT, "Same", iso(2))
        await engine.add_message(answer)

        async def reply_factory(prompt):
            return "Same"

        assert (await engine.regenerate(answer, reply_factory)).content == "Same"

    @pytest.mark.asyncio
    async def test_only_assistant_messages(self):
        engine, store, gateway = make_engine()
        question = ChatMessage("q", MessageRole.USER, "Question?", iso(1))
        await engine.add_message(question)

        async def reply_factory(prompt):
            return "x"

        assert await engine.regenerate(question, reply_factory) is None
        assert engine.get_messages() == [question]

    @pytest.mark.asyncio
    async def test_needs_preceding_user_message(self):
        engine, store, gateway = make_engine()
        answer = ChatMessage("a", MessageRole.ASSISTANT, "Welcome", iso(1))
        await engine.add_message(answer)

        async def reply_factory(prompt):
            return "x"

        assert await engine.regenerate(answer, reply_factory) is None
        assert engine.get_messages() == [answer]


class TestRemoval:
    @pytest.mark.asyncio
    async def test_remove_and_clear(self):
        engine, store, gateway = make_engine()
        gateway.add_record("user", "one", ts(1))
        gateway.add_record("user", "two", ts(2))
        await engine.load_initial()
        first = engine.get_messages()[0]

        assert engine.remove_message(first.id) is True
        assert engine.remove_message(first.id) is False
        assert [m.content for m in engine.get_messages()] == ["two"]

        engine.clear()
        assert engine.get_messages() == []
        assert engine.state is TranscriptState.UNLOADED
        assert len(engine.view) == 0
        assert store.get_state().chat_history == []
