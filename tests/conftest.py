"""
Shared fixtures for the chat server tests.
"""
import asyncio
from types import SimpleNamespace

import pytest
from starlette.websockets import WebSocketState

from chatserver.auth import AuthHandshake
from chatserver.logger import ServerLogger
from chatserver.registry import SessionRegistry
from chatserver.router import MessageRouter
from chatserver.session import Session
from chatserver.store import CredentialStore, MessageLog

# Minimum bcrypt cost so tests stay fast
TEST_ROUNDS = 4


class FakeWebSocket:
    """Stands in for a Starlette WebSocket: records sent frames, replays queued input."""

    def __init__(self, host="127.0.0.1", port=50000, fail_send=False):
        self.client = SimpleNamespace(host=host, port=port)
        self.application_state = WebSocketState.CONNECTING
        self.client_state = WebSocketState.CONNECTED
        self.sent = []
        self.inbox = asyncio.Queue()
        self.close_code = None
        self.fail_send = fail_send

    async def accept(self):
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text):
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.sent.append(text)

    async def receive(self):
        message = await self.inbox.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def close(self, code=1000, reason=None):
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    def feed(self, text):
        self.inbox.put_nowait({"type": "websocket.receive", "text": text})

    def hang_up(self, code=1000):
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": code})


def connected_session(port=50000, fail_send=False):
    websocket = FakeWebSocket(port=port, fail_send=fail_send)
    websocket.application_state = WebSocketState.CONNECTED
    return Session(websocket, send_timeout=1.0)


def online(registry, username, port=50000, fail_send=False):
    """An authenticated session already in the registry."""
    session = connected_session(port=port, fail_send=fail_send)
    session.authenticate(username)
    registry.add(session)
    return session


async def wait_until(predicate, timeout=2.0):
    """Poll until predicate() is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def logger():
    return ServerLogger(echo=False)


@pytest.fixture
def store(tmp_path, logger):
    return CredentialStore(str(tmp_path), logger=logger)


@pytest.fixture
def message_log(tmp_path):
    return MessageLog(str(tmp_path))


@pytest.fixture
def registry(logger):
    return SessionRegistry(logger=logger)


@pytest.fixture
def handshake(store, registry, logger):
    return AuthHandshake(store, registry, logger=logger, bcrypt_rounds=TEST_ROUNDS)


@pytest.fixture
def router(registry, message_log, logger):
    return MessageRouter(registry, message_log, logger=logger)
