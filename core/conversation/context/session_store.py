"""
Session lifecycle management.

The SessionStore owns every live Session, indexed by session id and by user,
and enforces the two timeout limits:

- idle timeout, re-armed on every mutating call
- absolute duration, fixed from creation and never reset

Both limits are enforced by per-session scheduler timers and, as a safety net,
by a periodic sweep. Persistence is best effort: a failed write is logged and
published on ``persist_failed`` but the in-memory session stays authoritative.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.conversation.context.storage import ConversationStorage
from core.events import EventChannel
from core.scheduling import Scheduler, TimerHandle
from models.schemas import (
    ConversationMessage,
    MessageRole,
    Session,
    SessionContext,
    SessionMetadata,
    SessionStatus,
)

logger = logging.getLogger(__name__)

# Status only moves forward; expired and terminated share the terminal rank
STATUS_ORDER = {
    SessionStatus.ACTIVE: 0,
    SessionStatus.IDLE: 1,
    SessionStatus.EXPIRED: 2,
    SessionStatus.TERMINATED: 2,
}


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token"""
    if not text:
        return 0
    return max(1, len(text) // 4)


@dataclass
class SessionConfig:
    """Limits and defaults applied to every session (times in seconds)"""
    max_idle_time: float = 30 * 60
    max_session_duration: float = 2 * 60 * 60
    max_message_count: int = 100
    max_tokens: int = 100000
    auto_cleanup: bool = True
    cleanup_interval: float = 5 * 60
    default_model: str = "deepseek-chat"
    default_temperature: float = 0.7


@dataclass
class SessionClosed:
    """Payload of session_closed: the final session snapshot and why it ended"""
    session: Session
    reason: str


@dataclass
class PersistFailure:
    session_id: str
    error: Exception


class SessionStore:
    """In-memory index of live sessions with timeout-driven expiry"""

    UPDATABLE_FIELDS = {"context", "metadata", "status"}

    def __init__(self, storage: ConversationStorage, scheduler: Scheduler,
                 config: Optional[SessionConfig] = None):
        self.storage = storage
        self.scheduler = scheduler
        self.config = config or SessionConfig()

        self._sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, List[str]] = {}
        self._idle_timers: Dict[str, TimerHandle] = {}
        self._duration_timers: Dict[str, TimerHandle] = {}
        self._cleanup_handle: Optional[TimerHandle] = None

        self._expired_count = 0
        self._terminated_count = 0

        self.session_created: EventChannel[Session] = EventChannel("session_created")
        self.session_closed: EventChannel[SessionClosed] = EventChannel("session_closed")
        self.persist_failed: EventChannel[PersistFailure] = EventChannel("persist_failed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.config.auto_cleanup and self._cleanup_handle is None:
            self._cleanup_handle = self.scheduler.call_every(
                self.config.cleanup_interval, self.cleanup_expired, name="session-sweep"
            )
            logger.info(f"Session sweep scheduled every {self.config.cleanup_interval}s")

    async def shutdown(self) -> None:
        """Stop the sweep, persist every live session and clear the indexes"""
        if self._cleanup_handle:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None

        for session_id in list(self._sessions):
            self._cancel_timers(session_id)
            await self._persist(self._sessions[session_id])

        logger.info(f"Session store shut down, {len(self._sessions)} sessions persisted")
        self._sessions.clear()
        self._user_sessions.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_user_sessions(self, user_id: str) -> List[Session]:
        return [
            self._sessions[sid]
            for sid in self._user_sessions.get(user_id, [])
            if sid in self._sessions
        ]

    def get_stats(self) -> Dict[str, int]:
        stats = {
            "total_sessions": len(self._sessions),
            "active_sessions": 0,
            "idle_sessions": 0,
            "expired_sessions": self._expired_count,
            "terminated_sessions": self._terminated_count,
            "total_users": len([u for u, ids in self._user_sessions.items() if ids]),
        }
        for session in self._sessions.values():
            if session.status == SessionStatus.ACTIVE:
                stats["active_sessions"] += 1
            elif session.status == SessionStatus.IDLE:
                stats["idle_sessions"] += 1
        return stats

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(self, user_id: str, options: Optional[Dict[str, Any]] = None) -> Session:
        options = options or {}
        now = self.scheduler.now()

        session = Session(
            user_id=user_id,
            status=SessionStatus.ACTIVE,
            context=SessionContext.model_validate(options.get("context") or {}),
            metadata=SessionMetadata(
                created_at=now,
                last_activity=now,
                model=options.get("model") or self.config.default_model,
                temperature=(
                    options["temperature"]
                    if options.get("temperature") is not None
                    else self.config.default_temperature
                ),
            ),
        )

        self._admit(session)
        await self._persist(session)

        logger.info(f"Created session {session.id} for user {user_id}", extra={"session_id": session.id})
        self.session_created.publish(session)
        return session

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Optional[Session]:
        """
        Merge fields into a live session.

        ``context`` replaces the context wholesale, ``metadata`` is a partial
        patch and ``status`` may only move forward (active to idle); ending a
        session goes through terminate().
        """
        session = self._sessions.get(session_id)
        if not session:
            return None

        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")

        if "status" in fields:
            status = SessionStatus(fields["status"])
            if status.is_terminal:
                raise ValueError("Terminal status must be set through terminate()")
            if STATUS_ORDER[status] < STATUS_ORDER[session.status]:
                raise ValueError(f"Session status cannot move from {session.status.value} to {status.value}")
            session.status = status
        if "context" in fields:
            session.context = SessionContext.model_validate(fields["context"] or {})
        if "metadata" in fields:
            session.metadata = session.metadata.model_copy(update=fields["metadata"] or {})

        self._touch(session)
        await self._persist(session)
        return session

    async def add_message(self, session_id: str, role: MessageRole, content: str,
                          metadata: Optional[Dict[str, Any]] = None,
                          tokens: Optional[int] = None) -> Optional[Session]:
        """
        Append a message.

        Returns None either when the session is not live or when this message
        pushed the session over its message or token cap; in the latter case
        the session has been terminated.
        """
        session = self._sessions.get(session_id)
        if not session:
            return None

        message = ConversationMessage(
            role=MessageRole(role),
            content=content,
            timestamp=self.scheduler.now(),
            metadata=metadata,
        )
        session.conversation_history.append(message)
        session.metadata.message_count += 1
        session.metadata.total_tokens += tokens if tokens is not None else estimate_tokens(content)
        session.metadata.last_activity = self.scheduler.now()

        if session.metadata.message_count > self.config.max_message_count:
            logger.info(f"Session {session_id} exceeded {self.config.max_message_count} messages")
            await self.terminate(session_id, "message_limit_exceeded")
            return None

        if session.metadata.total_tokens > self.config.max_tokens:
            logger.info(f"Session {session_id} exceeded {self.config.max_tokens} tokens")
            await self.terminate(session_id, "token_limit_exceeded")
            return None

        self._touch(session)
        await self._persist(session)
        return session

    async def update_context(self, session_id: str, patch: Dict[str, Any]) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if not session:
            return None

        session.context = session.context.merged(patch)
        self._touch(session)
        await self._persist(session)
        return session

    async def terminate(self, session_id: str, reason: str = "manual") -> bool:
        session = self._sessions.get(session_id)
        if not session:
            return False

        await self._close(session, SessionStatus.TERMINATED, reason)
        return True

    async def restore(self, session_id: str) -> Optional[Session]:
        """Re-admit a persisted session unless it has already run out of time"""
        if session_id in self._sessions:
            return self._sessions[session_id]

        try:
            record = await self.storage.load_session(session_id)
        except Exception as e:
            logger.error(f"Failed to load session {session_id}: {str(e)}")
            return None
        if not record:
            return None

        session = Session.from_record(record)
        if session.status.is_terminal:
            logger.info(f"Session {session_id} is {session.status.value}, not restoring")
            return None

        if self._limit_elapsed(session):
            session.status = SessionStatus.EXPIRED
            self._expired_count += 1
            await self._persist(session)
            logger.info(f"Session {session_id} expired while offline, not restoring")
            return None

        self._admit(session)
        logger.info(f"Restored session {session_id}")
        return session

    async def cleanup_expired(self) -> int:
        """
        Sweep the live index.

        Sessions past either limit are expired with reason ``auto_cleanup``;
        the sweep never changes the status of a session it keeps.
        """
        expired = [s for s in self._sessions.values() if self._limit_elapsed(s)]

        for session in expired:
            await self._close(session, SessionStatus.EXPIRED, "auto_cleanup")

        if expired:
            logger.info(f"Session sweep expired {len(expired)} sessions")
        return len(expired)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _admit(self, session: Session) -> None:
        self._sessions[session.id] = session
        user_ids = self._user_sessions.setdefault(session.user_id, [])
        if session.id not in user_ids:
            user_ids.append(session.id)
        self._arm_idle_timer(session)
        self._arm_duration_timer(session)

    def _touch(self, session: Session) -> None:
        session.metadata.last_activity = self.scheduler.now()
        self._arm_idle_timer(session)

    def _idle_seconds(self, session: Session) -> float:
        return self.scheduler.seconds_since(session.metadata.last_activity)

    def _limit_elapsed(self, session: Session) -> bool:
        return (
            self._idle_seconds(session) >= self.config.max_idle_time or
            self.scheduler.seconds_since(session.metadata.created_at) >= self.config.max_session_duration
        )

    def _arm_idle_timer(self, session: Session) -> None:
        existing = self._idle_timers.pop(session.id, None)
        if existing:
            existing.cancel()
        session_id = session.id
        self._idle_timers[session_id] = self.scheduler.call_later(
            self.config.max_idle_time,
            lambda: self._on_timeout(session_id, "idle_timeout"),
            name=f"idle:{session_id}",
        )

    def _arm_duration_timer(self, session: Session) -> None:
        existing = self._duration_timers.pop(session.id, None)
        if existing:
            existing.cancel()
        remaining = self.config.max_session_duration - self.scheduler.seconds_since(session.metadata.created_at)
        session_id = session.id
        self._duration_timers[session_id] = self.scheduler.call_later(
            max(remaining, 0.0),
            lambda: self._on_timeout(session_id, "duration_exceeded"),
            name=f"duration:{session_id}",
        )

    def _cancel_timers(self, session_id: str) -> None:
        for timers in (self._idle_timers, self._duration_timers):
            handle = timers.pop(session_id, None)
            if handle:
                handle.cancel()

    async def _on_timeout(self, session_id: str, reason: str) -> None:
        session = self._sessions.get(session_id)
        if not session:
            return
        if self._limit_elapsed(session):
            await self._close(session, SessionStatus.EXPIRED, reason)

    async def _close(self, session: Session, status: SessionStatus, reason: str) -> None:
        self._cancel_timers(session.id)
        session.status = status
        session.metadata.last_activity = self.scheduler.now()

        self._sessions.pop(session.id, None)
        user_ids = self._user_sessions.get(session.user_id, [])
        if session.id in user_ids:
            user_ids.remove(session.id)
        if not user_ids:
            self._user_sessions.pop(session.user_id, None)

        if status == SessionStatus.EXPIRED:
            self._expired_count += 1
        else:
            self._terminated_count += 1

        await self._persist(session)
        logger.info(f"Session {session.id} {status.value} ({reason})", extra={"session_id": session.id})
        self.session_closed.publish(SessionClosed(session=session, reason=reason))

    async def _persist(self, session: Session) -> None:
        try:
            await self.storage.save_session(session.to_record())
        except Exception as e:
            logger.error(f"Failed to persist session {session.id}: {str(e)}")
            self.persist_failed.publish(PersistFailure(session_id=session.id, error=e))
