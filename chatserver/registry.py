"""
Echo Chat - Session Registry
==============================
The in-memory map of live connections to usernames: the single source of
truth for "who is online now".

The registry is an owned object created by the app factory and handed to
the handshake, router and supervisor. Nothing here is module-level state.

Consistency:
    The credential store's is_online flag is true for a username if and
    only if that username has a session here. Every transition of the pair
    happens inside claim(username), which holds a per-username asyncio.Lock,
    so two handshakes for the same name can never both succeed.

Delivery:
    broadcast() and deliver() iterate a snapshot and send concurrently.
    Delivery is at-most-once and best-effort: a failed destination is
    logged and skipped, never retried and never reported to the sender.
    The failed session closes itself (see Session.send), and its own
    handler then runs the disconnect cleanup.

Usage:
    async with registry.claim("alice"):
        ...check store, verify password, mark online...
        registry.add(session)

    await registry.broadcast("alice has joined", exclude=session)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from chatserver.errors import DeliveryFailure
from chatserver.logger import ServerLogger
from chatserver.session import Session
from chatserver.store import user_key


class SessionRegistry:
    """
    Live authenticated sessions, indexed by connection and by username.

    Attributes:
        logger: Logger for delivery failures.
    """

    def __init__(self, logger: ServerLogger | None = None):
        self.logger = logger or ServerLogger(echo=False)
        self._sessions: dict[Session, str] = {}
        self._by_name: dict[str, Session] = {}
        # Per-username locks, present only while held or awaited
        self._locks: dict[str, asyncio.Lock] = {}
        self._claims: dict[str, int] = {}

    @asynccontextmanager
    async def claim(self, username: str) -> AsyncIterator[None]:
        """Serialize online-state transitions for one username."""
        key = user_key(username)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._claims[key] = self._claims.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._claims[key] -= 1
            if not self._claims[key]:
                del self._claims[key]
                del self._locks[key]

    def add(self, session: Session) -> None:
        """
        Register an authenticated session.

        Raises:
            RuntimeError: If the session is not authenticated or another live
                session already holds the username.
        """
        if not session.is_authenticated or session.username is None:
            raise RuntimeError(f"Refusing to register unauthenticated {session!r}")
        key = user_key(session.username)
        holder = self._by_name.get(key)
        if holder is not None and holder is not session:
            raise RuntimeError(f"'{session.username}' already has a live session")
        self._sessions[session] = session.username
        self._by_name[key] = session

    def remove(self, session: Session) -> bool:
        """
        Unregister a session by connection identity.

        Returns:
            True only for the call that actually removed it.
        """
        username = self._sessions.pop(session, None)
        if username is None:
            return False
        key = user_key(username)
        if self._by_name.get(key) is session:
            del self._by_name[key]
        return True

    def find(self, username: str) -> Session | None:
        """Case-insensitive lookup of the live session for username."""
        return self._by_name.get(user_key(username))

    def snapshot(self) -> list[Session]:
        """Copy of the current sessions, safe to iterate across awaits."""
        return list(self._sessions)

    def usernames(self) -> list[str]:
        return sorted(self._sessions.values(), key=user_key)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session: object) -> bool:
        return session in self._sessions

    async def broadcast(self, text: str, exclude: Session | None = None) -> int:
        """
        Send text to every registered session except `exclude`.

        Returns:
            Number of sessions the frame was written to.
        """
        targets = [s for s in self.snapshot() if s is not exclude]
        return await deliver(targets, text, self.logger)


async def deliver(sessions: Iterable[Session], text: str, logger: ServerLogger) -> int:
    """
    Best-effort, at-most-once delivery of one frame to several sessions.

    Sessions that are no longer writable are skipped. A failure on one
    destination is logged and does not affect the others.

    Returns:
        Number of successful writes.
    """
    targets = [s for s in sessions if s.is_writable]
    if not targets:
        return 0

    results = await asyncio.gather(
        *(s.send(text) for s in targets),
        return_exceptions=True,
    )

    delivered = 0
    for result in results:
        if isinstance(result, DeliveryFailure):
            logger.warning(str(result))
        elif isinstance(result, BaseException):
            logger.error(f"Unexpected delivery error: {result!r}")
        else:
            delivered += 1
    return delivered
