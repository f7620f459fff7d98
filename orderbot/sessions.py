import asyncio
import logging
import time

from .models import Session

log = logging.getLogger("orderbot.sessions")


class SessionStore:
    """
    In-memory map user id -> Session, one live session per user.

    ``lock(user_id)`` hands out one asyncio.Lock per user so that two
    messages from the same user are processed one after the other while
    different users never wait on each other.

    Sessions live for the process lifetime unless ``idle_seconds`` is set,
    in which case ``evict_idle()`` drops sessions not touched for that long.
    """

    def __init__(self, idle_seconds: int = 0, clock=time.monotonic):
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._idle_seconds = idle_seconds
        self._clock = clock

    def lock(self, user_id) -> asyncio.Lock:
        key = str(user_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def get_or_create(self, user_id) -> Session:
        key = str(user_id)
        session = self._sessions.get(key)
        if session is None:
            session = Session(user_id=key, last_seen=self._clock())
            self._sessions[key] = session
        return session

    def get(self, user_id) -> Session | None:
        return self._sessions.get(str(user_id))

    def save(self, session: Session) -> None:
        session.last_seen = self._clock()
        self._sessions[session.user_id] = session

    def delete(self, user_id) -> None:
        self._sessions.pop(str(user_id), None)

    def __len__(self) -> int:
        return len(self._sessions)

    def evict_idle(self) -> int:
        if not self._idle_seconds:
            return 0
        cutoff = self._clock() - self._idle_seconds
        stale = []
        for key, s in self._sessions.items():
            lock = self._locks.get(key)
            # a session with a message in flight is not idle
            if s.last_seen < cutoff and not (lock and lock.locked()):
                stale.append(key)
        for key in stale:
            self._sessions.pop(key, None)
            self._locks.pop(key, None)
        if stale:
            log.info("Evicted %s idle sessions", len(stale))
        return len(stale)
