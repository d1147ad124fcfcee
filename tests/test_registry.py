"""
Unit tests for the session registry and best-effort delivery
"""
import asyncio

import pytest

from chatserver.registry import deliver
from chatserver.session import CLOSE_INTERNAL_ERROR
from tests.conftest import connected_session, online


@pytest.mark.fast
def test_find_is_case_insensitive(registry):
    alice = online(registry, "Alice")
    assert registry.find("alice") is alice
    assert registry.find("ALICE") is alice
    assert registry.find("bob") is None


@pytest.mark.fast
def test_add_rejects_unauthenticated(registry):
    with pytest.raises(RuntimeError):
        registry.add(connected_session())


@pytest.mark.fast
def test_add_rejects_second_session_for_same_name(registry):
    online(registry, "alice")
    with pytest.raises(RuntimeError):
        online(registry, "ALICE", port=50001)
    assert len(registry) == 1


@pytest.mark.fast
def test_remove_happens_exactly_once(registry):
    alice = online(registry, "alice")
    assert registry.remove(alice) is True
    assert registry.remove(alice) is False
    assert alice not in registry
    assert registry.find("alice") is None


@pytest.mark.fast
def test_usernames_sorted(registry):
    online(registry, "carol", port=1)
    online(registry, "Bob", port=2)
    online(registry, "alice", port=3)
    assert registry.usernames() == ["alice", "Bob", "carol"]


@pytest.mark.fast
@pytest.mark.asyncio
async def test_broadcast_excludes_and_counts(registry):
    alice = online(registry, "alice", port=1)
    bob = online(registry, "bob", port=2)
    carol = online(registry, "carol", port=3)

    delivered = await registry.broadcast("alice has joined", exclude=alice)

    assert delivered == 2
    assert alice.websocket.sent == []
    assert bob.websocket.sent == ["alice has joined"]
    assert carol.websocket.sent == ["alice has joined"]


@pytest.mark.fast
@pytest.mark.asyncio
async def test_failed_destination_does_not_stop_others(registry):
    online(registry, "alice", port=1)
    broken = online(registry, "bob", port=2, fail_send=True)
    carol = online(registry, "carol", port=3)

    delivered = await registry.broadcast("hello")

    assert delivered == 2
    assert broken.websocket.sent == []
    assert broken.websocket.close_code == CLOSE_INTERNAL_ERROR
    assert carol.websocket.sent == ["hello"]


@pytest.mark.fast
@pytest.mark.asyncio
async def test_deliver_skips_closed_sessions(registry, logger):
    alice = online(registry, "alice")
    alice.mark_closed()
    assert await deliver([alice], "anyone?", logger) == 0
    assert alice.websocket.sent == []


@pytest.mark.fast
@pytest.mark.asyncio
async def test_broadcast_tolerates_removal_mid_flight(registry):
    """A session removed while a broadcast is running does not break it."""
    alice = online(registry, "alice", port=1)
    bob = online(registry, "bob", port=2)

    original = bob.websocket.send_text

    async def slow_send(text):
        registry.remove(alice)
        await asyncio.sleep(0)
        await original(text)

    bob.websocket.send_text = slow_send
    delivered = await registry.broadcast("hello")

    assert delivered == 2
    assert bob.websocket.sent == ["hello"]


@pytest.mark.fast
@pytest.mark.asyncio
async def test_claim_serializes_same_username(registry):
    order = []

    async def critical(tag):
        async with registry.claim("Alice"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-out")

    await asyncio.gather(critical("a"), critical("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


@pytest.mark.fast
@pytest.mark.asyncio
async def test_claim_does_not_block_other_usernames(registry):
    async with registry.claim("alice"):
        await asyncio.wait_for(_enter(registry, "bob"), timeout=1.0)


async def _enter(registry, name):
    async with registry.claim(name):
        pass


@pytest.mark.fast
@pytest.mark.asyncio
async def test_claim_entries_released_after_last_holder(registry):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with registry.claim("alice"):
            entered.set()
            await release.wait()

    async def waiter():
        async with registry.claim("ALICE"):
            pass

    first = asyncio.create_task(holder())
    await entered.wait()
    second = asyncio.create_task(waiter())
    await asyncio.sleep(0)
    assert registry._claims == {"alice": 2}

    release.set()
    await asyncio.gather(first, second)
    assert registry._locks == {}
    assert registry._claims == {}


@pytest.mark.fast
@pytest.mark.asyncio
async def test_claim_released_when_body_raises(registry):
    with pytest.raises(ValueError):
        async with registry.claim("alice"):
            raise ValueError("boom")
    assert registry._locks == {}
