"""Tests for SessionStore lifecycle, limits and timeouts."""

from datetime import datetime, timedelta, timezone

import pytest

from core.conversation.context import InMemoryConversationStorage, SessionConfig, SessionStore
from core.exceptions import StorageError
from core.scheduling import VirtualScheduler
from models.schemas import MessageRole, SessionStatus


class FailingStorage(InMemoryConversationStorage):
    async def save_session(self, record):
        raise StorageError("disk full")


class TestCreate:
    """Test session creation."""

    @pytest.mark.asyncio
    async def test_create_returns_active_empty_session(self, session_store, storage):
        session = await session_store.create("user-1")

        assert session.status == SessionStatus.ACTIVE
        assert session.conversation_history == []
        assert session.metadata.message_count == 0
        assert session_store.get(session.id) is session
        assert storage.sessions[session.id]["status"] == "active"

    @pytest.mark.asyncio
    async def test_create_applies_options(self, session_store):
        session = await session_store.create("user-1", {
            "model": "custom-model",
            "temperature": 0.2,
            "context": {"channel": "web"},
        })

        assert session.metadata.model == "custom-model"
        assert session.metadata.temperature == 0.2
        assert session.context.model_dump()["channel"] == "web"

    @pytest.mark.asyncio
    async def test_create_publishes_event(self, session_store):
        created = []
        session_store.session_created.subscribe(created.append)

        session = await session_store.create("user-1")

        assert created == [session]

    @pytest.mark.asyncio
    async def test_user_index(self, session_store):
        first = await session_store.create("user-1")
        second = await session_store.create("user-1")
        await session_store.create("user-2")

        sessions = session_store.get_user_sessions("user-1")
        assert [s.id for s in sessions] == [first.id, second.id]
        assert session_store.get_stats()["total_users"] == 2


class TestMessages:
    """Test message appends and limits."""

    @pytest.mark.asyncio
    async def test_add_message_updates_metadata(self, session_store):
        session = await session_store.create("user-1")

        updated = await session_store.add_message(session.id, MessageRole.USER, "hello there friend")

        assert updated.metadata.message_count == 1
        assert updated.metadata.total_tokens == len("hello there friend") // 4
        assert updated.conversation_history[0].role == MessageRole.USER

    @pytest.mark.asyncio
    async def test_add_message_to_unknown_session(self, session_store):
        assert await session_store.add_message("missing", MessageRole.USER, "hi") is None

    @pytest.mark.asyncio
    async def test_message_limit_terminates_on_crossing_call(self, storage, scheduler):
        store = SessionStore(storage, scheduler, SessionConfig(max_message_count=3))
        closed = []
        store.session_closed.subscribe(closed.append)
        session = await store.create("user-1")

        for i in range(3):
            assert await store.add_message(session.id, MessageRole.USER, f"message {i}") is not None

        assert await store.add_message(session.id, MessageRole.USER, "one too many") is None
        assert store.get(session.id) is None
        assert storage.sessions[session.id]["status"] == "terminated"
        assert closed[0].reason == "message_limit_exceeded"
        assert store.get_stats()["terminated_sessions"] == 1

    @pytest.mark.asyncio
    async def test_token_limit_terminates(self, storage, scheduler):
        store = SessionStore(storage, scheduler, SessionConfig(max_tokens=50))
        closed = []
        store.session_closed.subscribe(closed.append)
        session = await store.create("user-1")

        assert await store.add_message(session.id, MessageRole.ASSISTANT, "reply", tokens=40) is not None
        assert await store.add_message(session.id, MessageRole.ASSISTANT, "reply", tokens=20) is None
        assert closed[0].reason == "token_limit_exceeded"


class TestUpdate:
    """Test field updates."""

    @pytest.mark.asyncio
    async def test_update_context_merges(self, session_store):
        session = await session_store.create("user-1", {"context": {"channel": "web"}})

        updated = await session_store.update_context(session.id, {"last_intent": "greeting"})

        dumped = updated.context.model_dump()
        assert dumped["channel"] == "web"
        assert dumped["last_intent"] == "greeting"

    @pytest.mark.asyncio
    async def test_update_metadata_patch(self, session_store):
        session = await session_store.create("user-1")

        updated = await session_store.update(session.id, {"metadata": {"temperature": 1.1}})

        assert updated.metadata.temperature == 1.1
        assert updated.metadata.model == "deepseek-chat"

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, session_store):
        session = await session_store.create("user-1")

        with pytest.raises(ValueError):
            await session_store.update(session.id, {"user_id": "someone-else"})

    @pytest.mark.asyncio
    async def test_update_rejects_terminal_status(self, session_store):
        session = await session_store.create("user-1")

        with pytest.raises(ValueError):
            await session_store.update(session.id, {"status": "terminated"})

    @pytest.mark.asyncio
    async def test_update_missing_session(self, session_store):
        assert await session_store.update("missing", {"metadata": {}}) is None


class TestTermination:
    """Test explicit termination."""

    @pytest.mark.asyncio
    async def test_terminate(self, session_store, storage):
        session = await session_store.create("user-1")
        closed = []
        session_store.session_closed.subscribe(closed.append)

        assert await session_store.terminate(session.id) is True

        assert session_store.get(session.id) is None
        assert session_store.get_user_sessions("user-1") == []
        assert storage.sessions[session.id]["status"] == "terminated"
        assert closed[0].reason == "manual"

    @pytest.mark.asyncio
    async def test_terminate_unknown(self, session_store):
        assert await session_store.terminate("missing") is False

    @pytest.mark.asyncio
    async def test_terminated_session_accepts_no_messages(self, session_store):
        session = await session_store.create("user-1")
        await session_store.terminate(session.id)

        assert await session_store.add_message(session.id, MessageRole.USER, "hi") is None
        assert await session_store.update_context(session.id, {"x": 1}) is None


class TestTimeouts:
    """Test idle and duration limits driven by the virtual clock."""

    @pytest.mark.asyncio
    async def test_idle_session_expires(self, session_store, scheduler, storage):
        session_store.start()
        session = await session_store.create("user-1")

        await scheduler.advance(660)

        assert session_store.get(session.id) is None
        assert storage.sessions[session.id]["status"] == "expired"
        assert session_store.get_stats()["expired_sessions"] == 1

    @pytest.mark.asyncio
    async def test_activity_resets_idle_timer(self, session_store, scheduler):
        session = await session_store.create("user-1")

        await scheduler.advance(500)
        await session_store.add_message(session.id, MessageRole.USER, "still here")
        await scheduler.advance(500)

        assert session_store.get(session.id) is not None

    @pytest.mark.asyncio
    async def test_duration_limit_is_never_reset(self, session_store, scheduler, storage):
        closed = []
        session_store.session_closed.subscribe(closed.append)
        session = await session_store.create("user-1")

        for _ in range(7):
            await scheduler.advance(500)
            assert await session_store.add_message(session.id, MessageRole.USER, "ping") is not None

        await scheduler.advance(100)

        assert session_store.get(session.id) is None
        assert storage.sessions[session.id]["status"] == "expired"
        assert closed[0].reason == "duration_exceeded"

    @pytest.mark.asyncio
    async def test_sweep_expires_with_auto_cleanup(self, session_store, scheduler):
        closed = []
        session_store.session_closed.subscribe(closed.append)
        session = await session_store.create("user-1")
        session.metadata.last_activity = scheduler.now() - timedelta(seconds=700)

        assert await session_store.cleanup_expired() == 1

        assert session_store.get(session.id) is None
        assert closed[0].session.status == SessionStatus.EXPIRED
        assert closed[0].reason == "auto_cleanup"

    @pytest.mark.asyncio
    async def test_status_never_moves_back(self, session_store, scheduler):
        session_store.start()
        closed = []
        session_store.session_closed.subscribe(closed.append)
        session = await session_store.create("user-1")
        statuses = [session.status]

        await scheduler.advance(300)
        statuses.append(session.status)

        await session_store.update(session.id, {"status": "idle"})
        statuses.append(session.status)
        assert session_store.get_stats()["idle_sessions"] == 1

        await session_store.add_message(session.id, MessageRole.USER, "back again")
        await session_store.update_context(session.id, {"topic": "billing"})
        statuses.append(session.status)
        with pytest.raises(ValueError):
            await session_store.update(session.id, {"status": "active"})
        statuses.append(session.status)

        await scheduler.advance(700)
        statuses.append(closed[0].session.status)

        assert statuses == [
            SessionStatus.ACTIVE,
            SessionStatus.ACTIVE,
            SessionStatus.IDLE,
            SessionStatus.IDLE,
            SessionStatus.IDLE,
            SessionStatus.EXPIRED,
        ]

    @pytest.mark.asyncio
    async def test_shutdown_stops_sweep_and_persists(self, session_store, scheduler, storage):
        session_store.start()
        session = await session_store.create("user-1")

        await session_store.shutdown()

        assert session_store.get(session.id) is None
        assert scheduler.pending == 0
        assert storage.sessions[session.id]["status"] == "active"


class TestRestore:
    """Test re-admitting persisted sessions."""

    @pytest.mark.asyncio
    async def test_restore_live_record(self, storage, scheduler):
        first = SessionStore(storage, scheduler)
        session = await first.create("user-1")
        await first.add_message(session.id, MessageRole.USER, "remember me")

        second = SessionStore(storage, scheduler)
        restored = await second.restore(session.id)

        assert restored is not None
        assert restored.status == SessionStatus.ACTIVE
        assert restored.conversation_history[0].content == "remember me"
        assert second.get_user_sessions("user-1")[0].id == session.id

    @pytest.mark.asyncio
    async def test_restore_keeps_idle_status(self, storage, scheduler):
        first = SessionStore(storage, scheduler)
        session = await first.create("user-1")
        await first.update(session.id, {"status": "idle"})

        restored = await SessionStore(storage, scheduler).restore(session.id)

        assert restored.status == SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_restore_refuses_record_past_its_limits(self, storage, scheduler):
        first = SessionStore(storage, scheduler, SessionConfig(max_idle_time=600))
        session = await first.create("user-1")

        later = VirtualScheduler(start=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=700))
        second = SessionStore(storage, later, SessionConfig(max_idle_time=600))

        assert await second.restore(session.id) is None
        assert storage.sessions[session.id]["status"] == "expired"

    @pytest.mark.asyncio
    async def test_restore_refuses_terminated(self, session_store, storage, scheduler):
        session = await session_store.create("user-1")
        await session_store.terminate(session.id)

        other = SessionStore(storage, scheduler)
        assert await other.restore(session.id) is None

    @pytest.mark.asyncio
    async def test_restore_unknown(self, session_store):
        assert await session_store.restore("never-existed") is None


class TestPersistence:
    """Test best-effort persistence."""

    @pytest.mark.asyncio
    async def test_persist_failure_is_published_not_raised(self, scheduler):
        store = SessionStore(FailingStorage(), scheduler)
        failures = []
        store.persist_failed.subscribe(failures.append)

        session = await store.create("user-1")

        assert store.get(session.id) is session
        assert failures[0].session_id == session.id
        assert isinstance(failures[0].error, StorageError)
