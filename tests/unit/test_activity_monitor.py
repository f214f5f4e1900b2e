"""Unit tests for the idle-detection state machine."""

import asyncio

import pytest

from claude_hub.activity_monitor import ActivityMonitor
from claude_hub.models import ActivityStatus

IDLE = 0.2


def _make_monitor(idle_timeout: float = IDLE):
    transitions = []
    monitor = ActivityMonitor("s1", idle_timeout=idle_timeout, on_transition=transitions.append)
    return monitor, transitions


@pytest.mark.asyncio
async def test_initial_state_is_active_without_transition():
    monitor, transitions = _make_monitor()
    monitor.start()
    assert monitor.status is ActivityStatus.ACTIVE
    assert transitions == []
    monitor.stop()


@pytest.mark.asyncio
async def test_silence_after_spawn_becomes_waiting():
    monitor, transitions = _make_monitor()
    monitor.start()
    await asyncio.sleep(IDLE * 2)
    assert monitor.status is ActivityStatus.WAITING
    assert transitions == [ActivityStatus.WAITING]


@pytest.mark.asyncio
async def test_output_before_deadline_cancels_pending_transition():
    monitor, transitions = _make_monitor()
    monitor.start()
    for _ in range(4):
        await asyncio.sleep(IDLE * 0.5)
        monitor.record_output()
    assert monitor.status is ActivityStatus.ACTIVE
    assert transitions == []

    await asyncio.sleep(IDLE * 2)
    assert monitor.status is ActivityStatus.WAITING
    assert transitions == [ActivityStatus.WAITING]


@pytest.mark.asyncio
async def test_output_while_waiting_returns_to_active():
    monitor, transitions = _make_monitor()
    monitor.start()
    await asyncio.sleep(IDLE * 2)
    monitor.record_output()
    assert monitor.status is ActivityStatus.ACTIVE
    assert transitions == [ActivityStatus.WAITING, ActivityStatus.ACTIVE]
    assert monitor.last_output_at is not None
    monitor.stop()


@pytest.mark.asyncio
async def test_repeated_output_does_not_rebroadcast_active():
    monitor, transitions = _make_monitor()
    monitor.start()
    for _ in range(10):
        monitor.record_output()
    assert transitions == []
    monitor.stop()


@pytest.mark.asyncio
async def test_only_one_timer_is_live():
    monitor, _ = _make_monitor(idle_timeout=10)
    monitor.start()
    handles = []
    for _ in range(5):
        monitor.record_output()
        handles.append(monitor._timer)
    assert all(h.cancelled() for h in handles[:-1])
    assert not handles[-1].cancelled()
    monitor.stop()
    assert handles[-1].cancelled()


@pytest.mark.asyncio
async def test_exit_is_terminal():
    monitor, transitions = _make_monitor()
    monitor.start()
    monitor.mark_exited()
    assert monitor.status is ActivityStatus.EXITED

    monitor.record_output()
    monitor.start()
    monitor.mark_exited()
    await asyncio.sleep(IDLE * 2)

    assert monitor.status is ActivityStatus.EXITED
    assert transitions == [ActivityStatus.EXITED]
    assert monitor._timer is None


@pytest.mark.asyncio
async def test_exit_while_waiting():
    monitor, transitions = _make_monitor()
    monitor.start()
    await asyncio.sleep(IDLE * 2)
    monitor.mark_exited()
    assert transitions == [ActivityStatus.WAITING, ActivityStatus.EXITED]


@pytest.mark.asyncio
async def test_callback_error_does_not_break_state_machine():
    def _boom(status):
        raise RuntimeError("viewer gone")

    monitor = ActivityMonitor("s1", idle_timeout=IDLE, on_transition=_boom)
    monitor.start()
    await asyncio.sleep(IDLE * 2)
    assert monitor.status is ActivityStatus.WAITING
    monitor.mark_exited()
    assert monitor.status is ActivityStatus.EXITED
