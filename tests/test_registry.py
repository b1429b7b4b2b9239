"""Tests for the session registry.

These tests verify:
1. At most one session per key, whatever the interleaving
2. Failed creations are not registered and can be retried
3. Removal, including removal while a session is still starting
4. Teardown joins every stop
"""

import asyncio

import pytest

from rlsp.errors import LaunchFailed
from rlsp.registry import SessionRegistry
from rlsp.servers.session import DEFAULT_KEY, SessionState

FOLDER_A = "file:///work/a"
FOLDER_B = "file:///work/b"
FOLDER_C = "file:///work/c"


class TestGetOrCreate:
    """Tests for duplicate suppression."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_session(self, factory):
        registry = SessionRegistry(factory)
        gate = factory.gates[FOLDER_A] = asyncio.Event()

        first = asyncio.ensure_future(registry.get_or_create(FOLDER_A, "/work/a"))
        second = asyncio.ensure_future(registry.get_or_create(FOLDER_A, "/work/a"))
        await asyncio.sleep(0)
        assert registry.is_pending(FOLDER_A)
        assert FOLDER_A not in registry

        gate.set()
        results = await asyncio.gather(first, second)

        assert results[0] is results[1]
        assert len(factory.created) == 1
        assert registry.get(FOLDER_A) is results[0]
        assert not registry.is_pending(FOLDER_A)

    @pytest.mark.asyncio
    async def test_interleaved_folders(self, factory):
        registry = SessionRegistry(factory)
        keys = [FOLDER_A, FOLDER_B, FOLDER_A, FOLDER_C, FOLDER_B, FOLDER_A]

        await asyncio.gather(*(registry.get_or_create(key, key) for key in keys))

        assert len(registry) == 3
        assert sorted(session.key for session in factory.created) == [FOLDER_A, FOLDER_B, FOLDER_C]
        assert all(session.state is SessionState.RUNNING for session in factory.created)

    @pytest.mark.asyncio
    async def test_existing_session_reused(self, factory):
        registry = SessionRegistry(factory)

        first = await registry.get_or_create(FOLDER_A, "/work/a")
        second = await registry.get_or_create(FOLDER_A, "/work/a")

        assert first is second
        assert first.start_calls == 1

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_registered(self, factory):
        registry = SessionRegistry(factory)
        factory.failures[FOLDER_A] = LaunchFailed("no connection")

        results = await asyncio.gather(
            registry.get_or_create(FOLDER_A, "/work/a"),
            registry.get_or_create(FOLDER_A, "/work/a"),
            return_exceptions=True,
        )

        assert all(isinstance(result, LaunchFailed) for result in results)
        assert len(factory.created) == 1
        assert FOLDER_A not in registry
        assert not registry.is_pending(FOLDER_A)

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_other_keys(self, factory):
        registry = SessionRegistry(factory)
        factory.failures[FOLDER_A] = LaunchFailed("no connection")

        results = await asyncio.gather(
            registry.get_or_create(FOLDER_A, "/work/a"),
            registry.get_or_create(FOLDER_B, "/work/b"),
            return_exceptions=True,
        )

        assert isinstance(results[0], LaunchFailed)
        assert results[1].state is SessionState.RUNNING
        assert list(registry.sessions) == [FOLDER_B]

    @pytest.mark.asyncio
    async def test_next_request_after_failure_retries(self, factory):
        registry = SessionRegistry(factory)
        factory.failures[FOLDER_A] = LaunchFailed("no connection")
        with pytest.raises(LaunchFailed):
            await registry.get_or_create(FOLDER_A, "/work/a")

        del factory.failures[FOLDER_A]
        session = await registry.get_or_create(FOLDER_A, "/work/a")

        assert session.state is SessionState.RUNNING
        assert len(factory.for_key(FOLDER_A)) == 2

    @pytest.mark.asyncio
    async def test_default_session(self, factory):
        registry = SessionRegistry(factory)

        session = await registry.get_or_create(DEFAULT_KEY, "/home/user")
        await registry.get_or_create(FOLDER_A, "/work/a")

        assert registry.default is session
        assert list(registry.sessions) == [FOLDER_A]
        assert len(registry) == 2


class TestRemove:
    """Tests for evicting sessions."""

    @pytest.mark.asyncio
    async def test_remove_absent_key_is_noop(self, factory):
        registry = SessionRegistry(factory)

        await registry.remove(FOLDER_A)

        assert factory.created == []
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_remove_stops_and_evicts(self, factory):
        registry = SessionRegistry(factory)
        session = await registry.get_or_create(FOLDER_A, "/work/a")

        await registry.remove(FOLDER_A)

        assert session.state is SessionState.STOPPED
        assert FOLDER_A not in registry

    @pytest.mark.asyncio
    async def test_reopen_after_remove_creates_new_session(self, factory):
        registry = SessionRegistry(factory)
        old = await registry.get_or_create(FOLDER_A, "/work/a")
        await registry.remove(FOLDER_A)

        new = await registry.get_or_create(FOLDER_A, "/work/a")

        assert new is not old
        assert new.state is SessionState.RUNNING
        assert old.state is SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_remove_while_starting_stops_once_running(self, factory):
        registry = SessionRegistry(factory)
        gate = factory.gates[FOLDER_A] = asyncio.Event()
        creation = asyncio.ensure_future(registry.get_or_create(FOLDER_A, "/work/a"))
        await asyncio.sleep(0)

        await registry.remove(FOLDER_A)
        gate.set()
        session = await creation

        assert session.stop_calls == 1
        assert session.state is SessionState.STOPPED
        assert FOLDER_A not in registry

    @pytest.mark.asyncio
    async def test_terminated_session_is_evicted(self, factory):
        registry = SessionRegistry(factory)
        session = await registry.get_or_create(FOLDER_A, "/work/a")

        session.terminate()

        assert FOLDER_A not in registry
        replacement = await registry.get_or_create(FOLDER_A, "/work/a")
        assert replacement is not session


class TestStopAll:
    """Tests for global teardown."""

    @pytest.mark.asyncio
    async def test_waits_for_slowest_stop(self, factory):
        registry = SessionRegistry(factory)
        factory.stop_delays = {DEFAULT_KEY: 0.2, FOLDER_A: 0.0, FOLDER_B: 0.05}
        for key in (DEFAULT_KEY, FOLDER_A, FOLDER_B):
            await registry.get_or_create(key, "/")

        await registry.stop_all()

        assert all(session.state is SessionState.STOPPED for session in factory.created)
        assert all(session.stop_calls == 1 for session in factory.created)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_stops_sessions_still_starting(self, factory):
        registry = SessionRegistry(factory)
        gate = factory.gates[FOLDER_A] = asyncio.Event()
        creation = asyncio.ensure_future(registry.get_or_create(FOLDER_A, "/work/a"))
        await asyncio.sleep(0)

        teardown = asyncio.ensure_future(registry.stop_all())
        await asyncio.sleep(0)
        assert not teardown.done()

        gate.set()
        await teardown

        session = await creation
        assert session.state is SessionState.STOPPED
        assert FOLDER_A not in registry

    @pytest.mark.asyncio
    async def test_failed_creation_does_not_break_teardown(self, factory):
        registry = SessionRegistry(factory)
        await registry.get_or_create(FOLDER_B, "/work/b")
        factory.failures[FOLDER_A] = LaunchFailed("no connection")
        factory.gates[FOLDER_A] = gate = asyncio.Event()
        creation = asyncio.ensure_future(registry.get_or_create(FOLDER_A, "/work/a"))
        await asyncio.sleep(0)

        teardown = asyncio.ensure_future(registry.stop_all())
        gate.set()
        await teardown

        with pytest.raises(LaunchFailed):
            await creation
        assert factory.for_key(FOLDER_B)[0].state is SessionState.STOPPED
