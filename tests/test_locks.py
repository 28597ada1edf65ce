"""Test the lock manager."""

import asyncio

import pytest

from converge.errors import LockHeldError
from converge.events import EventBus
from converge.locks import LockManager
from converge.state import MemoryBackend


@pytest.fixture
def backend():
    b = MemoryBackend()
    b.create_workspace("default")
    return b


def test_acquire_and_release(backend):
    bus = EventBus()
    locks = LockManager(backend, bus)

    async def run():
        handle = await locks.acquire("default", "alice", "apply", timeout=0)
        assert backend.get_lock("default").holder_id == "alice"
        locks.release(handle)
        assert backend.get_lock("default") is None

    asyncio.run(run())
    assert [e.type for e in bus.recent()] == ["lock.acquired", "lock.released"]


def test_second_holder_gets_lock_held(backend):
    locks = LockManager(backend)

    async def run():
        await locks.acquire("default", "alice", "apply", timeout=0)
        with pytest.raises(LockHeldError) as exc:
            await locks.acquire("default", "bob", "apply", timeout=0)
        assert exc.value.holder == "alice"
        assert exc.value.operation == "apply"

    asyncio.run(run())


def test_acquire_retries_until_released(backend):
    locks = LockManager(backend, retry_interval=0.01)

    async def run():
        first = await locks.acquire("default", "alice", "apply", timeout=0)

        async def release_later():
            await asyncio.sleep(0.05)
            locks.release(first)

        releaser = asyncio.create_task(release_later())
        second = await locks.acquire("default", "bob", "apply", timeout=2)
        await releaser
        return second

    handle = asyncio.run(run())
    assert backend.get_lock("default").holder_id == "bob"
    assert handle.lock.holder_id == "bob"


def test_acquire_times_out(backend):
    locks = LockManager(backend, retry_interval=0.01)

    async def run():
        await locks.acquire("default", "alice", "apply", timeout=0)
        with pytest.raises(LockHeldError):
            await locks.acquire("default", "bob", "apply", timeout=0.05)

    asyncio.run(run())


def test_release_is_idempotent(backend):
    locks = LockManager(backend)

    async def run():
        handle = await locks.acquire("default", "alice", "apply", timeout=0)
        locks.release(handle)
        locks.release(handle)

    asyncio.run(run())
    assert backend.get_lock("default") is None


def test_stale_release_leaves_new_holder(backend):
    locks = LockManager(backend)

    async def run():
        old = await locks.acquire("default", "alice", "apply", timeout=0)
        locks.force_release("default")
        await locks.acquire("default", "bob", "apply", timeout=0)
        locks.release(old)

    asyncio.run(run())
    assert backend.get_lock("default").holder_id == "bob"


def test_force_release_is_audited(backend):
    bus = EventBus()
    locks = LockManager(backend, bus)

    async def run():
        await locks.acquire("default", "crashed-host", "apply", timeout=0)

    asyncio.run(run())
    removed = locks.force_release("default", operator="oncall")
    assert removed.holder_id == "crashed-host"
    assert backend.get_lock("default") is None

    events = bus.of_type("lock.force_released")
    assert len(events) == 1
    assert events[0].data["operator"] == "oncall"
    assert events[0].data["removed"]["holder_id"] == "crashed-host"


def test_hold_releases_on_error(backend):
    locks = LockManager(backend)

    async def run():
        async with locks.hold("default", "alice", "apply", timeout=0):
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(run())
    assert backend.get_lock("default") is None
