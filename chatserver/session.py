"""
Echo Chat - Session
=====================
The per-connection state machine.

States:
    - AWAITING_CREDENTIALS : Connected, the handshake has not finished
    - AUTHENTICATED        : Handshake succeeded, frames go to the router
    - CLOSED               : Rejected or disconnected; terminal

Transitions are explicit (authenticate() / mark_closed()) and checked, so a
frame can never be re-parsed as credentials once the handshake is over.

A write that fails or times out closes the connection with 1011. The
connection's read loop then sees the disconnect and runs the normal
cleanup, the same as for a read error or a client close.
"""

import asyncio
from enum import Enum

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from chatserver.errors import DeliveryFailure
from chatserver.logger import ServerLogger

# WebSocket close codes (RFC 6455)
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013


class SessionState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Session:
    """
    One physical connection and, once authenticated, its username.

    Sessions hash by identity, so the registry is keyed by connection rather
    than by name.

    Attributes:
        websocket:    The underlying Starlette/FastAPI WebSocket.
        peer:         "host:port" of the remote end, for logs.
        username:     Set on authentication, None before.
        state:        Current SessionState.
        send_timeout: Upper bound in seconds for a single write (and close).
    """

    def __init__(
        self,
        websocket: WebSocket,
        send_timeout: float = 5.0,
        logger: ServerLogger | None = None,
    ):
        self.websocket = websocket
        self.peer = _format_peer(websocket)
        self.username: str | None = None
        self.state = SessionState.AWAITING_CREDENTIALS
        self.send_timeout = send_timeout
        self.logger = logger or ServerLogger(echo=False)
        self._send_lock = asyncio.Lock()
        self._write_failed = False

    def __repr__(self) -> str:
        return f"<Session {self.username or '?'}@{self.peer} {self.state.value}>"

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    @property
    def is_writable(self) -> bool:
        """True while frames can still be sent to this connection."""
        if self.state is SessionState.CLOSED or self._write_failed:
            return False
        return (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    def authenticate(self, username: str) -> None:
        """AWAITING_CREDENTIALS -> AUTHENTICATED."""
        if self.state is not SessionState.AWAITING_CREDENTIALS:
            raise RuntimeError(f"Cannot authenticate session in state {self.state.value}")
        self.username = username
        self.state = SessionState.AUTHENTICATED

    def mark_closed(self) -> bool:
        """
        Move to CLOSED.

        Returns:
            True only for the call that performed the transition.
        """
        if self.state is SessionState.CLOSED:
            return False
        self.state = SessionState.CLOSED
        return True

    async def receive(self) -> str:
        """
        Wait for the next text frame.

        Binary frames are decoded as UTF-8.

        Raises:
            WebSocketDisconnect: When the client closes or the transport drops.
        """
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000))
        text = message.get("text")
        if text is None:
            text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
        return text

    async def send(self, text: str) -> None:
        """
        Send one text frame.

        Writes to the same connection are serialized; each write is bounded
        by send_timeout. A failed write closes the connection, so a stuck
        peer costs at most one timeout.

        Raises:
            DeliveryFailure: If the connection is not writable, the write
                fails, or it times out.
        """
        name = self.username or self.peer
        if not self.is_writable:
            raise DeliveryFailure(name, ConnectionError("connection not writable"))
        try:
            async with self._send_lock:
                await asyncio.wait_for(self.websocket.send_text(text), timeout=self.send_timeout)
        except Exception as e:
            self._write_failed = True
            await self.close(code=CLOSE_INTERNAL_ERROR, reason="write failed")
            raise DeliveryFailure(name, e) from e

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close the connection if it is still open. Never raises."""
        if WebSocketState.DISCONNECTED in (
            self.websocket.application_state,
            self.websocket.client_state,
        ):
            return
        try:
            await asyncio.wait_for(
                self.websocket.close(code=code, reason=reason), timeout=self.send_timeout
            )
        except Exception as e:
            self.logger.warning(f"Close of {self!r} failed: {e!r}")


def _format_peer(websocket: WebSocket) -> str:
    client = websocket.client
    if client is None:
        return "unknown"
    return f"{client.host}:{client.port}"
