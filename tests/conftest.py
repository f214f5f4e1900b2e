"""Shared pytest fixtures for Claude Hub tests."""

import json
import signal
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from claude_hub.main import HubContext
from claude_hub.models import Session
from claude_hub.process_supervisor import ProcessSupervisor
from claude_hub.session_registry import SessionRegistry


class RecordingConnection:
    """Stand-in viewer connection that records every message sent to it."""

    def __init__(self, connection_id: str = "conn", fail: bool = False):
        self.id = connection_id
        self.session_id = None
        self.messages: list[dict] = []
        self.fail = fail

    def send(self, message: dict) -> bool:
        if self.fail:
            raise ConnectionError("transport closed")
        self.messages.append(message)
        return True

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == message_type]


@pytest.fixture
def make_connection():
    """Factory for RecordingConnection instances."""
    def _make(connection_id: str = "conn", fail: bool = False) -> RecordingConnection:
        return RecordingConnection(connection_id, fail=fail)
    return _make


@pytest.fixture
def temp_state_file() -> Generator[Path, None, None]:
    """
    Create a temporary state file for testing.

    Yields:
        Path to temporary state file
    """
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        temp_path = Path(f.name)
        json.dump({"sessions": []}, f)

    yield temp_path

    if temp_path.exists():
        temp_path.unlink()


@pytest.fixture
def sample_session() -> Session:
    """
    Create a pre-configured Session object for testing.

    Returns:
        Session with realistic test data
    """
    return Session(
        id="test123",
        name="Test Session",
        cwd="/tmp",
        args=["--verbose"],
        created_at=datetime(2024, 1, 1, 12, 0, 0),
        last_active_at=datetime(2024, 1, 1, 12, 30, 0),
    )


@pytest.fixture
def mock_supervisor() -> MagicMock:
    """
    Mock ProcessSupervisor with no live processes.

    Returns:
        MagicMock whose get() returns None
    """
    mock = MagicMock(spec=ProcessSupervisor)
    mock.command = "claude"
    mock.get.return_value = None
    return mock


@pytest.fixture
def registry(temp_state_file: Path, mock_supervisor: MagicMock) -> SessionRegistry:
    """SessionRegistry backed by a temporary state file and a mock supervisor."""
    return SessionRegistry(state_file=str(temp_state_file), supervisor=mock_supervisor)


@pytest.fixture
def hub_config(tmp_path: Path) -> dict:
    """Config that runs `cat` instead of the real CLI."""
    return {
        "paths": {"state_file": str(tmp_path / "sessions.json")},
        "cli": {"command": "cat"},
        "monitor": {"idle_timeout": 0.5},
    }


@pytest.fixture
def hub_context(hub_config: dict) -> HubContext:
    return HubContext(hub_config)


@pytest.fixture
def live_client(hub_context: HubContext) -> Generator[TestClient, None, None]:
    """
    TestClient over a fully wired hub with real pty processes.

    One event loop serves every request and WebSocket in the test, so
    processes spawned by one connection survive into the next.
    """
    with TestClient(hub_context.app) as client:
        yield client
        for entry in hub_context.supervisor.entries():
            if entry.alive:
                entry.kill(signal.SIGKILL)
        # Let the exit watchers finish on the client's loop
        client.portal.call(_wait_all_exited, hub_context.supervisor)


async def _wait_all_exited(supervisor: ProcessSupervisor) -> None:
    for entry in supervisor.entries():
        await entry.wait_exited(5)
