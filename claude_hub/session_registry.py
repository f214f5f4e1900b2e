"""Session metadata registry and persistence."""

import asyncio
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .models import ActivityStatus, Session, SessionNotFound, generate_session_id

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_INTERVAL = 30  # seconds


class SessionRegistry:
    """Maps session identifiers to persisted metadata and live status.

    Every mutating call rewrites the state file; a periodic snapshot also
    rewrites it so activity timestamps survive a crash between mutations.
    Mutations and snapshots share one lock, so a snapshot never observes a
    half-applied change.
    """

    def __init__(
        self,
        state_file: str,
        supervisor=None,
        snapshot_interval: float = DEFAULT_SNAPSHOT_INTERVAL,
    ):
        self.state_file = Path(os.path.expanduser(state_file))
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.supervisor = supervisor
        self.snapshot_interval = snapshot_interval

        self.sessions: dict[str, Session] = {}
        self._retired_ids: set[str] = set()
        self._lock = threading.RLock()
        self._snapshot_task: Optional[asyncio.Task] = None

        self._load_state()

    def _load_state(self) -> bool:
        """
        Load session records from disk.

        Returns:
            True if state loaded successfully (or no state file exists),
            False if an error occurred during loading.
        """
        if not self.state_file.exists():
            return True
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            # Older state files are a bare list of records
            records = data if isinstance(data, list) else data.get("sessions", [])
            for record in records:
                session = Session.from_dict(record)
                self.sessions[session.id] = session
            logger.info(f"Loaded {len(self.sessions)} sessions from {self.state_file}")
            return True
        except Exception as e:
            logger.error(f"CRITICAL: Failed to load state from {self.state_file}: {e}")
            logger.error(f"Session state may be lost! Please check {self.state_file}")
            return False

    def _save_state(self) -> bool:
        """
        Save all session records using temp file + atomic rename.

        Returns:
            True if state saved successfully, False if an error occurred.
        """
        temp_file = self.state_file.with_suffix(".tmp")
        with self._lock:
            try:
                data = {"sessions": [s.to_dict() for s in self.sessions.values()]}
                with open(temp_file, "w") as f:
                    json.dump(data, f, indent=2)
                temp_file.rename(self.state_file)
                return True
            except Exception as e:
                logger.error(f"CRITICAL: Failed to save state to {self.state_file}: {e}")
                logger.error("Session state NOT persisted! Data may be lost on restart.")
                try:
                    if temp_file.exists():
                        temp_file.unlink()
                except OSError:
                    pass
                return False

    def create(self, name: Optional[str] = None, cwd: Optional[str] = None, args: Optional[List[str]] = None) -> Session:
        """Create, store and persist a new session record."""
        with self._lock:
            session_id = generate_session_id()
            while session_id in self.sessions or session_id in self._retired_ids:
                session_id = generate_session_id()

            now = datetime.now()
            session = Session(
                id=session_id,
                name=name or f"Session {len(self.sessions) + 1}",
                cwd=cwd or os.path.expanduser("~"),
                args=list(args or []),
                created_at=now,
                last_active_at=now,
            )
            self.sessions[session.id] = session
            self._save_state()

        logger.info(f"Created session {session.id} ({session.name}) in {session.cwd}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self.sessions.get(session_id)

    def status_of(self, session_id: str) -> ActivityStatus:
        entry = self.supervisor.get(session_id) if self.supervisor is not None else None
        return entry.status if entry is not None else ActivityStatus.DISCONNECTED

    def list(self) -> List[dict]:
        """All records in creation order, each annotated with live status."""
        with self._lock:
            sessions = list(self.sessions.values())
        return [{**s.to_dict(), "status": self.status_of(s.id).value} for s in sessions]

    def rename(self, session_id: str, name: str) -> Session:
        """
        Rename a session.

        Raises:
            SessionNotFound: no such session.
        """
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            session.name = name
            self._save_state()
        logger.info(f"Renamed session {session_id} to {name!r}")
        return session

    def delete(self, session_id: str) -> None:
        """
        Delete a session record and terminate its process if one is live.

        Raises:
            SessionNotFound: no such session.
        """
        with self._lock:
            if session_id not in self.sessions:
                raise SessionNotFound(session_id)
            del self.sessions[session_id]
            self._retired_ids.add(session_id)
            self._save_state()

        if self.supervisor is not None:
            self.supervisor.remove(session_id)
        logger.info(f"Deleted session {session_id}")

    def touch(self, session_id: str) -> None:
        """Record activity; persisted by the next snapshot."""
        with self._lock:
            session = self.sessions.get(session_id)
            if session is not None:
                session.last_active_at = datetime.now()

    def recent_dirs(self) -> List[str]:
        """Home directory first, then each session's cwd, without duplicates."""
        with self._lock:
            dirs = [os.path.expanduser("~")] + [s.cwd for s in self.sessions.values()]
        return list(dict.fromkeys(dirs))

    def snapshot(self) -> bool:
        """Unconditionally rewrite the state file."""
        return self._save_state()

    def start_snapshots(self) -> None:
        """Start the periodic snapshot task on the running loop."""
        if self._snapshot_task is None:
            self._snapshot_task = asyncio.create_task(self._snapshot_loop())
            logger.info(f"Periodic state snapshot every {self.snapshot_interval}s")

    async def stop_snapshots(self) -> None:
        if self._snapshot_task is not None:
            self._snapshot_task.cancel()
            try:
                await self._snapshot_task
            except asyncio.CancelledError:
                pass
            self._snapshot_task = None

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.snapshot_interval)
            self.snapshot()

    def __len__(self) -> int:
        return len(self.sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions
