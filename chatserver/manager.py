"""
Echo Chat - Connection Supervisor
===================================
Owns the full lifecycle of every WebSocket connection.

Lifecycle of one connection (one asyncio task each):
    1. accept
    2. handshake    : first frame -> AuthHandshake (bounded by auth.timeout)
    3. serve        : every later frame -> MessageRouter
    4. cleanup      : unregister, mark offline, "<user> has left"

Cleanup runs exactly once per connection, whether the loop ended on a
client close frame, a read error or a write error: it lives in the
handler's finally block and only proceeds past registry.remove() when
that call actually removed the session.

Shutdown:
    shutdown() tells every live session the server is going away, closes
    every connection (including ones still handshaking), refuses new ones,
    and waits up to shutdown_grace seconds for the handlers to clean up.

Usage:
    supervisor = ConnectionSupervisor(registry, handshake, router)

    @app.websocket("/")
    async def chat(websocket: WebSocket):
        await supervisor.handle(websocket)

    await supervisor.shutdown(grace=5)
"""

import asyncio
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from chatserver.auth import AuthHandshake
from chatserver.errors import AuthTimeout, HandshakeRejected, ServiceUnavailable
from chatserver.logger import ServerLogger
from chatserver.registry import SessionRegistry, deliver
from chatserver.router import MessageRouter
from chatserver.session import (
    CLOSE_GOING_AWAY,
    CLOSE_POLICY_VIOLATION,
    CLOSE_TRY_AGAIN_LATER,
    Session,
)

SHUTDOWN_NOTICE = "Server is shutting down..."


class ConnectionSupervisor:
    """
    Binds per-connection I/O to the handshake, router and registry.

    Attributes:
        registry:     Live authenticated sessions.
        handshake:    Runs the first-frame credential exchange and owns the
                      online-flag writes.
        router:       Routes chat frames after authentication.
        auth_timeout: Seconds to wait for the first frame (0 = no limit).
        send_timeout: Seconds allowed for a single write to one connection.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        handshake: AuthHandshake,
        router: MessageRouter,
        logger: ServerLogger | None = None,
        auth_timeout: float = 30.0,
        send_timeout: float = 5.0,
    ):
        self.registry = registry
        self.handshake = handshake
        self.router = router
        self.logger = logger or ServerLogger(echo=False)
        self.auth_timeout = auth_timeout
        self.send_timeout = send_timeout

        self._connections: set[Session] = set()
        self._drained = asyncio.Event()
        self._drained.set()
        self._shutting_down = False

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def status(self) -> dict[str, Any]:
        """Snapshot of who is connected."""
        return {
            "online": self.registry.usernames(),
            "online_count": len(self.registry),
            "pending": sum(1 for s in self._connections if not s.is_authenticated),
            "shutting_down": self._shutting_down,
        }

    # -------------------------------------------------------------------------
    # Per-connection lifecycle
    # -------------------------------------------------------------------------

    async def handle(self, websocket: WebSocket) -> None:
        """Run one connection from accept to cleanup."""
        if self._shutting_down:
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        await websocket.accept()
        session = Session(websocket, send_timeout=self.send_timeout, logger=self.logger)
        self._connections.add(session)
        self._drained.clear()
        self.logger.connection(f"New connection from {session.peer}")

        try:
            if await self._authenticate(session):
                await self._serve(session)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            self.logger.error(f"Connection error for {session!r}: {e!r}")
        finally:
            # Cleanup completes even if this handler task is cancelled
            await asyncio.shield(self._release(session))

    async def _release(self, session: Session) -> None:
        try:
            await self._cleanup(session)
        finally:
            self._connections.discard(session)
            if not self._connections:
                self._drained.set()

    async def _authenticate(self, session: Session) -> bool:
        """
        Run the handshake. On rejection the reason is sent and the
        connection closed.

        Returns:
            True if the session is now authenticated.
        """
        try:
            raw = await self._first_frame(session)
            user = await self.handshake.authenticate(session, raw)
        except HandshakeRejected as e:
            self.logger.connection(f"Handshake from {session.peer} rejected: {e.reason}")
            await deliver([session], e.frame, self.logger)
            session.mark_closed()
            await session.close(code=CLOSE_POLICY_VIOLATION, reason=e.reason)
            return False

        others = [name for name in self.registry.usernames() if name != user.username]
        welcome = f"Welcome to the chat, {user.username}!"
        welcome += f" Online now: {', '.join(others)}" if others else " You are the first one here."
        await deliver([session], welcome, self.logger)
        await self.registry.broadcast(f"{user.username} has joined", exclude=session)
        return True

    async def _first_frame(self, session: Session) -> str:
        if not self.auth_timeout:
            return await session.receive()
        try:
            return await asyncio.wait_for(session.receive(), timeout=self.auth_timeout)
        except asyncio.TimeoutError:
            raise AuthTimeout(f"no credentials received within {self.auth_timeout:g}s")

    async def _serve(self, session: Session) -> None:
        """Dispatch frames until the client goes away."""
        while session.is_authenticated:
            text = await session.receive()
            await self.router.dispatch(session, text)

    async def _cleanup(self, session: Session) -> None:
        """Tear down one connection. Safe to reach from any exit path."""
        session.mark_closed()
        await session.close()

        username = session.username
        if username is None:
            self.logger.connection(f"Unauthenticated connection from {session.peer} closed")
            return

        async with self.registry.claim(username):
            if not self.registry.remove(session):
                return
            try:
                await self.handshake.set_online(username, False)
            except ServiceUnavailable as e:
                self.logger.error(f"Could not mark '{username}' offline: {e}")

        self.logger.connection(f"'{username}' disconnected ({session.peer})")
        if not self._shutting_down:
            await self.registry.broadcast(f"{username} has left")

    # -------------------------------------------------------------------------
    # Process shutdown
    # -------------------------------------------------------------------------

    async def shutdown(self, grace: float = 5.0) -> None:
        """
        Notify, close every connection, and stop accepting new ones.

        Waits up to `grace` seconds for the per-connection handlers to finish
        their cleanup. Idempotent.
        """
        if self._shutting_down:
            return
        self._shutting_down = True

        sessions = list(self._connections)
        self.logger.info(f"Shutting down, closing {len(sessions)} connection(s)")
        await deliver(self.registry.snapshot(), SHUTDOWN_NOTICE, self.logger)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        try:
            await asyncio.wait_for(
                asyncio.gather(*(s.close(code=CLOSE_GOING_AWAY, reason="server shutdown") for s in sessions)),
                timeout=grace,
            )
            await asyncio.wait_for(self._drained.wait(), timeout=max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            self.logger.warning(
                f"{len(self._connections)} connection(s) still open after {grace:g}s grace period"
            )
        self.logger.info("Connection supervisor stopped")
