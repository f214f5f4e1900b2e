"""Idle detection for a session's subprocess output."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .models import ActivityStatus

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 3.0  # seconds without output before a session is "waiting"


class ActivityMonitor:
    """Tracks whether a session is producing output or waiting for input.

    States move active <-> waiting on output/silence and end in exited.
    Exactly one idle timer handle is owned per monitor; every output event
    cancels it before arming a new one.
    """

    def __init__(
        self,
        session_id: str,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        on_transition: Optional[Callable[[ActivityStatus], None]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.session_id = session_id
        self.idle_timeout = idle_timeout
        self._on_transition = on_transition
        self._loop = loop
        self._status = ActivityStatus.ACTIVE
        self._timer: Optional[asyncio.TimerHandle] = None
        self.last_output_at: Optional[datetime] = None

    @property
    def status(self) -> ActivityStatus:
        return self._status

    def start(self) -> None:
        """Arm the idle timer for a freshly spawned process."""
        if self._status is ActivityStatus.EXITED:
            return
        self._restart_timer()

    def record_output(self) -> None:
        """Note an output chunk: become active and restart the idle timer."""
        if self._status is ActivityStatus.EXITED:
            return
        self.last_output_at = datetime.now()
        self._restart_timer()
        self._transition(ActivityStatus.ACTIVE)

    def mark_exited(self) -> None:
        """Enter the terminal exited state."""
        if self._status is ActivityStatus.EXITED:
            return
        self._cancel_timer()
        self._transition(ActivityStatus.EXITED)

    def stop(self) -> None:
        """Cancel the idle timer without changing state."""
        self._cancel_timer()

    def _restart_timer(self) -> None:
        self._cancel_timer()
        loop = self._loop or asyncio.get_running_loop()
        self._timer = loop.call_later(self.idle_timeout, self._on_idle)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_idle(self) -> None:
        self._timer = None
        if self._status is ActivityStatus.ACTIVE:
            logger.debug(f"Session {self.session_id} idle for {self.idle_timeout}s")
            self._transition(ActivityStatus.WAITING)

    def _transition(self, status: ActivityStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self._on_transition:
            try:
                self._on_transition(status)
            except Exception as e:
                logger.error(f"Status callback error for session {self.session_id}: {e}")
