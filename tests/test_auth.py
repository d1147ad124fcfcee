"""
Unit tests for the authentication handshake
"""
import asyncio
import json
import threading
import time
from unittest.mock import patch

import pytest

from chatserver.auth import AuthHandshake, hash_password, verify_password
from chatserver.errors import (
    AlreadyOnline,
    BadCredentialsFormat,
    PersistenceUnavailable,
    ServiceUnavailable,
    UnknownUser,
    WrongPassword,
)
from chatserver.session import SessionState
from tests.conftest import TEST_ROUNDS, connected_session


def creds(username, password):
    return json.dumps({"username": username, "password": password})


@pytest.mark.fast
@pytest.mark.parametrize("raw", [
    "alice",
    "",
    "[1, 2]",
    '"just a string"',
    '{"username": "alice"}',
    '{"password": "pw"}',
    '{"username": "", "password": "pw"}',
    '{"username": "alice", "password": ""}',
    '{"username": "al ice", "password": "pw"}',
    '{"username": 42, "password": "pw"}',
    '{"username": "alice", "password": null}',
])
def test_parse_rejects_malformed(raw):
    with pytest.raises(BadCredentialsFormat) as exc:
        AuthHandshake.parse(raw)
    assert exc.value.frame.startswith("ERROR: BadCredentialsFormat")


@pytest.mark.fast
def test_parse_rejects_password_longer_than_bcrypt_limit():
    with pytest.raises(BadCredentialsFormat):
        AuthHandshake.parse(creds("alice", "x" * 73))


@pytest.mark.fast
def test_parse_accepts_valid_payload():
    parsed = AuthHandshake.parse(creds("alice", "pw with spaces"))
    assert parsed.username == "alice"
    assert parsed.password == "pw with spaces"


@pytest.mark.fast
def test_hash_roundtrip():
    hashed = hash_password("secret", rounds=TEST_ROUNDS)
    assert hashed != "secret"
    assert verify_password("secret", hashed)
    assert not verify_password("Secret", hashed)
    assert not verify_password("secret", "not-a-bcrypt-hash")


@pytest.mark.fast
@pytest.mark.asyncio
async def test_first_login_registers_and_goes_online(handshake, store, registry):
    session = connected_session()
    user = await handshake.authenticate(session, creds("alice", "pw1"))

    assert user.username == "alice"
    assert session.state is SessionState.AUTHENTICATED
    assert registry.find("alice") is session
    record = store.find_by_username("alice")
    assert record.is_online is True
    assert record.password_hash != "pw1"


@pytest.mark.fast
@pytest.mark.asyncio
async def test_reconnect_with_same_password(handshake, store, registry):
    first = connected_session(port=1)
    await handshake.authenticate(first, creds("alice", "pw1"))
    registry.remove(first)
    store.set_online("alice", False)

    second = connected_session(port=2)
    await handshake.authenticate(second, creds("alice", "pw1"))
    assert registry.find("alice") is second
    assert len(store) == 1


@pytest.mark.fast
@pytest.mark.asyncio
async def test_wrong_password_changes_nothing(handshake, store, registry):
    first = connected_session(port=1)
    await handshake.authenticate(first, creds("alice", "pw1"))
    registry.remove(first)
    store.set_online("alice", False)

    second = connected_session(port=2)
    with pytest.raises(WrongPassword):
        await handshake.authenticate(second, creds("alice", "other"))

    assert second.state is SessionState.AWAITING_CREDENTIALS
    assert store.find_by_username("alice").is_online is False
    assert len(store) == 1
    assert len(registry) == 0


@pytest.mark.fast
@pytest.mark.asyncio
async def test_already_online_rejected_before_password_check(handshake, registry):
    await handshake.authenticate(connected_session(port=1), creds("alice", "pw1"))

    with patch("chatserver.auth.verify_password") as verify:
        with pytest.raises(AlreadyOnline):
            await handshake.authenticate(connected_session(port=2), creds("ALICE", "wrong"))
        verify.assert_not_called()
    assert len(registry) == 1


@pytest.mark.fast
@pytest.mark.asyncio
async def test_concurrent_logins_exactly_one_wins(handshake, store, registry):
    """N simultaneous handshakes for one username: one session, never two."""
    sessions = [connected_session(port=i) for i in range(10)]
    results = await asyncio.gather(
        *(handshake.authenticate(s, creds("alice", "pw1")) for s in sessions),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, AlreadyOnline) for r in losers)
    assert len(registry) == 1
    assert len(store) == 1
    assert sum(s.state is SessionState.AUTHENTICATED for s in sessions) == 1


@pytest.mark.fast
@pytest.mark.asyncio
async def test_unknown_user_without_auto_register(store, registry, logger):
    handshake = AuthHandshake(store, registry, logger=logger, auto_register=False, bcrypt_rounds=TEST_ROUNDS)
    with pytest.raises(UnknownUser):
        await handshake.authenticate(connected_session(), creds("alice", "pw1"))
    assert len(store) == 0


@pytest.mark.fast
@pytest.mark.asyncio
async def test_store_failure_is_service_unavailable(handshake, store, registry):
    def broken(*args):
        raise PersistenceUnavailable("disk on fire")

    store.find_by_username = broken
    session = connected_session()
    with pytest.raises(ServiceUnavailable) as exc:
        await handshake.authenticate(session, creds("alice", "pw1"))
    assert exc.value.frame.startswith("ERROR: ServiceUnavailable")
    assert len(registry) == 0


@pytest.mark.fast
@pytest.mark.asyncio
async def test_handshake_is_not_reentrant(handshake):
    session = connected_session()
    await handshake.authenticate(session, creds("alice", "pw1"))
    with pytest.raises(RuntimeError):
        session.authenticate("bob")


@pytest.mark.fast
@pytest.mark.asyncio
async def test_rejected_unknown_users_leave_no_locks_behind(store, registry, logger):
    handshake = AuthHandshake(store, registry, logger=logger, auto_register=False, bcrypt_rounds=TEST_ROUNDS)
    for i in range(20):
        with pytest.raises(UnknownUser):
            await handshake.authenticate(connected_session(port=i), creds(f"ghost{i}", "pw"))
    assert registry._locks == {}
    assert registry._claims == {}


@pytest.mark.slow
@pytest.mark.asyncio
async def test_late_online_write_is_rolled_back(store, registry, logger):
    handshake = AuthHandshake(
        store, registry, logger=logger, bcrypt_rounds=TEST_ROUNDS, store_timeout=0.1,
    )
    original = store.set_online
    writes = []

    def slow_set_online(username, online):
        time.sleep(0.3)
        original(username, online)
        writes.append(online)

    store.set_online = slow_set_online
    with pytest.raises(ServiceUnavailable):
        await handshake.authenticate(connected_session(port=1), creds("alice", "pw1"))
    assert len(registry) == 0

    # the timed-out True lands, then the flag is reset to match the registry
    deadline = asyncio.get_running_loop().time() + 3.0
    while writes != [True, False]:
        assert asyncio.get_running_loop().time() < deadline, writes
        await asyncio.sleep(0.02)
    assert store.find_by_username("alice").is_online is False

    store.set_online = original
    session = connected_session(port=2)
    await handshake.authenticate(session, creds("alice", "pw1"))
    assert registry.find("alice") is session
    assert store.find_by_username("alice").is_online is True


@pytest.mark.fast
@pytest.mark.asyncio
async def test_timed_out_write_reconciles_after_it_lands(handshake, store, registry):
    handshake.store_timeout = 0.05
    release = threading.Event()
    original = store.set_online

    def blocked(username, online):
        release.wait(2.0)
        original(username, online)

    store.create("alice", "hash")
    store.set_online = blocked
    async with registry.claim("alice"):
        with pytest.raises(ServiceUnavailable):
            await handshake.set_online("alice", True)
    release.set()
    # the late write lands and is reset since alice has no live session
    deadline = asyncio.get_running_loop().time() + 3.0
    while handshake._reconciling:
        assert asyncio.get_running_loop().time() < deadline
        await asyncio.sleep(0.02)
    assert store.find_by_username("alice").is_online is False
