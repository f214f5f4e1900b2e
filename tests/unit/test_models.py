"""Unit tests for models."""

from datetime import datetime, timezone

from claude_hub.models import (
    ActivityStatus,
    HubError,
    Session,
    SessionNotFound,
    SpawnFailure,
    generate_session_id,
)


class TestSession:
    """Tests for Session dataclass."""

    def test_to_dict_uses_wire_keys(self, sample_session):
        data = sample_session.to_dict()
        assert data == {
            "id": "test123",
            "name": "Test Session",
            "cwd": "/tmp",
            "args": ["--verbose"],
            "createdAt": "2024-01-01T12:00:00",
            "lastActiveAt": "2024-01-01T12:30:00",
        }

    def test_from_dict_restores_fields(self, sample_session):
        restored = Session.from_dict(sample_session.to_dict())
        assert restored == sample_session

    def test_from_dict_accepts_js_timestamps(self):
        session = Session.from_dict({
            "id": "lq3x9abc",
            "name": "Session 1",
            "cwd": "/home/u/project",
            "args": [],
            "createdAt": "2025-01-02T03:04:05.678Z",
            "lastActiveAt": "2025-01-02T03:05:00.000Z",
        })
        assert session.created_at == datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)

    def test_from_dict_defaults(self):
        session = Session.from_dict({"id": "abc"})
        assert session.name == ""
        assert session.args == []
        assert session.cwd

    def test_args_are_copied(self):
        args = ["--model", "opus"]
        session = Session.from_dict({"id": "abc", "args": args})
        args.append("--oops")
        assert session.args == ["--model", "opus"]


def test_generated_ids_are_distinct():
    ids = {generate_session_id() for _ in range(1000)}
    assert len(ids) == 1000


def test_status_values():
    assert [s.value for s in ActivityStatus] == ["active", "waiting", "exited", "disconnected"]


def test_errors_share_base():
    assert issubclass(SessionNotFound, HubError)
    assert issubclass(SpawnFailure, HubError)
    err = SpawnFailure("s1", "No such file")
    assert err.session_id == "s1"
    assert str(err) == "No such file"
    assert SessionNotFound("s2").session_id == "s2"
