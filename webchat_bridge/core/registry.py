"""In-memory registry of upstream conversation sessions.

One :class:`SessionRegistry` per running provider. It owns every
:class:`ConversationSession`; other components read sessions freely but
change them only through :meth:`update` / :meth:`touch`. Sessions idle for
longer than ``max_age`` are evicted by :meth:`sweep`, which
:meth:`run_sweeper` calls every ``sweep_interval`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from ..types import ConversationSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Keyed map of sessions with TTL eviction and an injected clock."""

    def __init__(
        self,
        *,
        max_age: float = 3600.0,
        sweep_interval: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_age = max_age
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._sessions: dict[str, ConversationSession] = {}
        self._lock = asyncio.Lock()
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def get(self, key: str) -> ConversationSession | None:
        return self._sessions.get(key)

    def keys(self) -> list[str]:
        return list(self._sessions)

    def new_session(self, key: str, chat_id: str) -> ConversationSession:
        now = self.clock()
        return ConversationSession(
            key=key, chat_id=chat_id, created_at=now, last_access=now,
        )

    async def put_if_absent(self, session: ConversationSession) -> ConversationSession:
        """Insert *session* unless its key is taken; return the stored one."""
        async with self._lock:
            existing = self._sessions.get(session.key)
            if existing is not None:
                existing.last_access = self.clock()
                return existing
            self._sessions[session.key] = session
            return session

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[str]],
    ) -> ConversationSession:
        """Return the session for *key*, creating it via *factory* if absent.

        *factory* returns the new upstream chat id. It may do network I/O, so
        it runs outside the lock; if another task inserted the key meanwhile,
        that session wins and the freshly created chat id is discarded.
        """
        session = self.get(key)
        if session is not None:
            await self.touch(key)
            return session
        chat_id = await factory()
        return await self.put_if_absent(self.new_session(key, chat_id))

    async def update(self, key: str, **changes) -> ConversationSession | None:
        async with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return None
            for name, value in changes.items():
                if not hasattr(session, name) or name in ("key", "turn_lock"):
                    raise AttributeError(f"ConversationSession has no settable field {name!r}")
                setattr(session, name, value)
            session.last_access = self.clock()
            return session

    async def touch(self, key: str) -> None:
        async with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                session.last_access = self.clock()

    async def remove(self, key: str, *, only_idle: bool = False) -> ConversationSession | None:
        """Drop *key*. With ``only_idle`` a session whose turn lock is held stays."""
        async with self._lock:
            session = self._sessions.get(key)
            if session is None or (only_idle and session.in_flight):
                return None
            return self._sessions.pop(key)

    async def sweep(self) -> list[str]:
        """Evict sessions idle longer than ``max_age``. Returns evicted keys.

        Sessions with a turn in flight are never evicted.
        """
        cutoff = self.clock() - self.max_age
        async with self._lock:
            stale = [
                key for key, s in self._sessions.items()
                if s.last_access < cutoff and not s.in_flight
            ]
            for key in stale:
                del self._sessions[key]
        if stale:
            self.evicted += len(stale)
            logger.info("Evicted %d idle session(s), %d remain", len(stale), len(self))
        return stale

    async def run_sweeper(self) -> None:
        """Sweep forever at ``sweep_interval``. Cancel the task to stop."""
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep()
