"""Session registry and cancellation handle."""

from __future__ import annotations

import asyncio
import sys

import anyio
import pytest

from agentrelay.relay.context import CancellationHandle
from agentrelay.relay.errors import SessionBusyError, ShuttingDownError
from agentrelay.relay.registry import SessionRegistry


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


def test_sessions_are_created_once(registry: SessionRegistry) -> None:
    assert registry.get("s1") is None
    session = registry.get_or_create("s1")
    assert registry.get_or_create("s1") is session
    assert session.external_thread_id is None


def test_thread_id_last_writer_wins(registry: SessionRegistry) -> None:
    registry.upsert_thread_id("s1", "t1")
    registry.upsert_thread_id("s1", "t2")
    assert registry.get("s1").external_thread_id == "t2"


def test_mark_completed_tracks_latest_thread(registry: SessionRegistry) -> None:
    registry.mark_completed("unknown")
    assert registry.last_completed_thread_id is None

    registry.upsert_thread_id("s1", "t1")
    registry.upsert_thread_id("s2", "t2")
    registry.mark_completed("s1")
    registry.mark_completed("s2")
    assert registry.last_completed_thread_id == "t2"


@pytest.mark.anyio
async def test_one_cancellation_handle_per_session(registry: SessionRegistry) -> None:
    first = CancellationHandle("s1")
    registry.register_cancellation("s1", first)

    with pytest.raises(SessionBusyError):
        registry.register_cancellation("s1", CancellationHandle("s1"))

    assert registry.is_running("s1")
    assert registry.take_cancellation("s1") is first
    assert registry.take_cancellation("s1") is None
    assert registry.active_count == 0


@pytest.mark.anyio
async def test_release_only_drops_own_handle(registry: SessionRegistry) -> None:
    old = CancellationHandle("s1")
    new = CancellationHandle("s1")
    registry.register_cancellation("s1", old)
    registry.take_cancellation("s1")
    registry.register_cancellation("s1", new)

    registry.release_cancellation("s1", old)
    assert registry.is_running("s1")

    registry.release_cancellation("s1", new)
    assert not registry.is_running("s1")


@pytest.mark.anyio
async def test_shutdown_refuses_new_runs_and_drains(registry: SessionRegistry) -> None:
    handle = CancellationHandle("s1")
    registry.register_cancellation("s1", handle)
    registry.begin_shutdown()

    with pytest.raises(ShuttingDownError):
        registry.register_cancellation("s2", CancellationHandle("s2"))
    assert await registry.wait_until_drained(timeout=0.05) is False

    assert registry.cancel_all() == 1
    assert handle.cancelled
    assert await registry.wait_until_drained(timeout=1.0) is True


@pytest.mark.anyio
async def test_cancel_is_idempotent_and_terminates_process() -> None:
    proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "import time; time.sleep(30)")
    handle = CancellationHandle("s1", grace_period=2.0)
    handle.attach(proc)

    handle.cancel()
    handle.cancel()
    with anyio.fail_after(10):
        await handle.stop_process()

    assert handle.cancelled
    assert proc.returncode is not None


@pytest.mark.anyio
async def test_attach_after_cancel_terminates_immediately() -> None:
    handle = CancellationHandle("s1", grace_period=2.0)
    handle.cancel()

    proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "import time; time.sleep(30)")
    handle.attach(proc)
    with anyio.fail_after(10):
        await handle.stop_process()

    assert proc.returncode is not None
