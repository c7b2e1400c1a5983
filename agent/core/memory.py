"""Server-side conversation memory.

Sessions live in an in-memory ``SessionRegistry`` owned by the application.
The registry is the only component that mutates a session: callers receive
immutable snapshots and go through ``append``/``clear``/``delete`` for every
change.

Locking:
- one map lock, held only for dict lookups and mutations;
- one lock per session guarding its history, timestamps and provider state;
- one turn lock per session serializing conversation turns and clears.

Lock order is always session lock -> map lock, never the reverse.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from agent.core.exceptions import SessionExists, SessionNotFound


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
ProviderStateFactory = Callable[[], Any]

_UNCHANGED: Any = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Exchange:
    """One user input paired with the generated reply."""

    id: str
    user_input: str
    assistant_output: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user": self.user_input,
            "assistant": self.assistant_output,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SessionSummary:
    id: str
    created_at: datetime
    last_activity_at: datetime
    message_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at.isoformat(),
            "lastActivityAt": self.last_activity_at.isoformat(),
            "messageCount": self.message_count,
        }


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time copy of a session. Never reflects later changes."""

    id: str
    created_at: datetime
    last_activity_at: datetime
    history: Tuple[Exchange, ...]
    provider_state: Any = None

    @property
    def message_count(self) -> int:
        return len(self.history)

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
            message_count=self.message_count,
        )


@dataclass(frozen=True)
class EvictionResult:
    evicted: int
    remaining: int


@dataclass(eq=False)
class Session:
    id: str
    created_at: datetime
    last_activity_at: datetime
    provider_state: Any = None
    history: List[Exchange] = field(default_factory=list)
    in_flight: int = 0
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    turn_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def touch(self, now: datetime) -> None:
        # last_activity_at never moves backwards, even if the clock does.
        if now > self.last_activity_at:
            self.last_activity_at = now

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
            history=tuple(self.history),
            provider_state=self.provider_state,
        )


class SessionRegistry:
    """Thread-safe mapping from session id to ``Session``.

    Args:
        provider_state_factory: Builds a fresh provider state for new and
            cleared sessions. Defaults to ``None`` states.
        clock: Returns the current time. Injected by tests.
    """

    def __init__(
        self,
        provider_state_factory: Optional[ProviderStateFactory] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._new_provider_state: ProviderStateFactory = provider_state_factory or (lambda: None)
        self._clock: Clock = clock or utcnow

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def _lookup(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    @contextmanager
    def _locked(self, session_id: str) -> Iterator[Session]:
        session = self._lookup(session_id)
        with session.lock:
            # Removed between lookup and lock acquisition.
            if session.closed:
                raise SessionNotFound(session_id)
            yield session

    def create(self, session_id: Optional[str] = None) -> SessionSnapshot:
        """Register a new empty session.

        Raises:
            SessionExists: ``session_id`` is already registered.
        """
        sid = session_id or str(uuid4())
        now = self._clock()
        session = Session(
            id=sid,
            created_at=now,
            last_activity_at=now,
            provider_state=self._new_provider_state(),
        )
        snapshot = session.snapshot()
        with self._lock:
            if sid in self._sessions:
                raise SessionExists(sid)
            self._sessions[sid] = session
        logger.info("Session created: id=%s", sid)
        return snapshot

    def get(self, session_id: str) -> SessionSnapshot:
        with self._locked(session_id) as session:
            return session.snapshot()

    def append(
        self,
        session_id: str,
        user_input: str,
        assistant_output: str,
        provider_state: Any = _UNCHANGED,
    ) -> Tuple[Exchange, int]:
        """Record one exchange and, optionally, swap in a new provider state.

        Returns the new exchange and the history length after the append.
        """
        with self._locked(session_id) as session:
            return self._record(session, user_input, assistant_output, provider_state)

    def _record(
        self, session: Session, user_input: str, assistant_output: str, provider_state: Any
    ) -> Tuple[Exchange, int]:
        # Caller holds session.lock.
        now = self._clock()
        exchange = Exchange(
            id=str(uuid4()),
            user_input=user_input,
            assistant_output=assistant_output,
            created_at=now,
        )
        session.history.append(exchange)
        session.touch(now)
        if provider_state is not _UNCHANGED:
            session.provider_state = provider_state
        count = len(session.history)
        logger.debug("Exchange appended: session=%s count=%s", session.id, count)
        return exchange, count

    def clear(self, session_id: str) -> datetime:
        """Empty the history and reset the provider state.

        Waits for an in-flight conversation turn on the same session.
        """
        session = self._lookup(session_id)
        fresh_state = self._new_provider_state()
        with session.turn_lock:
            with self._locked(session_id) as locked:
                if locked is not session:
                    raise SessionNotFound(session_id)
                now = self._clock()
                session.history = []
                session.provider_state = fresh_state
                session.touch(now)
        logger.info("Session cleared: id=%s", session_id)
        return now

    def delete(self, session_id: str) -> datetime:
        with self._locked(session_id) as session:
            with self._lock:
                if self._sessions.get(session_id) is session:
                    del self._sessions[session_id]
            session.closed = True
            now = self._clock()
        logger.info("Session deleted: id=%s", session_id)
        return now

    def list(self) -> List[SessionSummary]:
        with self._lock:
            sessions = list(self._sessions.values())
        summaries = []
        for session in sessions:
            with session.lock:
                if not session.closed:
                    summaries.append(session.snapshot().summary())
        return summaries

    def evict_stale(self, max_age: timedelta) -> EvictionResult:
        """Remove every session idle for longer than ``max_age``.

        A session with a turn in flight is skipped for this pass. The age
        check and the removal happen under the session's lock so a session
        touched concurrently is never removed.
        """
        now = self._clock()
        with self._lock:
            candidates = list(self._sessions.values())

        evicted = 0
        for session in candidates:
            with session.lock:
                if session.closed or session.in_flight:
                    continue
                if now - session.last_activity_at <= max_age:
                    continue
                with self._lock:
                    if self._sessions.get(session.id) is session:
                        del self._sessions[session.id]
                session.closed = True
                evicted += 1

        remaining = len(self)
        if evicted:
            logger.debug("Evicted %s stale sessions, %s remaining", evicted, remaining)
        return EvictionResult(evicted=evicted, remaining=remaining)

    @contextmanager
    def turn(self, session_id: str) -> Iterator[Turn]:
        """Serialize one conversation turn on ``session_id``.

        While the turn is open the session is protected from eviction, and
        other turns or clears on the same session wait. Other sessions are
        unaffected. Yields a ``Turn`` bound to this session object: a reply
        recorded through it never lands in a session re-created under the
        same id.
        """
        with self._locked(session_id) as session:
            session.in_flight += 1
        try:
            with session.turn_lock:
                with session.lock:
                    if session.closed:
                        raise SessionNotFound(session_id)
                    snapshot = session.snapshot()
                yield Turn(self, session, snapshot)
        finally:
            with session.lock:
                session.in_flight -= 1


class Turn:
    """An open conversation turn on one specific session object."""

    def __init__(self, registry: SessionRegistry, session: Session, snapshot: SessionSnapshot) -> None:
        self._registry = registry
        self._session = session
        self.snapshot = snapshot

    def append(
        self, user_input: str, assistant_output: str, provider_state: Any = _UNCHANGED
    ) -> Tuple[Exchange, int]:
        """Record the reply on the session this turn was opened on.

        Raises:
            SessionNotFound: that session was deleted or evicted meanwhile,
                even if a new session now uses the same id.
        """
        session = self._session
        with session.lock:
            if session.closed:
                raise SessionNotFound(session.id)
            return self._registry._record(session, user_input, assistant_output, provider_state)
