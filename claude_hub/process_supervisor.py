"""Pseudo-terminal subprocess lifecycle, one process per session."""

import asyncio
import codecs
import logging
import os
import signal
from datetime import datetime
from typing import Callable, Iterable, Optional

from ptyprocess import PtyProcess

from .activity_monitor import ActivityMonitor, DEFAULT_IDLE_TIMEOUT
from .models import ActivityStatus, Session, SpawnFailure
from .scrollback import MAX_BYTES, TRIM_TO, ScrollbackBuffer

logger = logging.getLogger(__name__)

# Variables the wrapped CLI sets to detect that it is running inside itself
DEFAULT_STRIP_ENV = ("CLAUDECODE", "CLAUDE_CODE")

DEFAULT_COLS = 120
DEFAULT_ROWS = 40
READ_SIZE = 65536
MAX_DRAIN_READS = 256

OutputCallback = Callable[["ProcessEntry", str], None]
StatusCallback = Callable[["ProcessEntry", ActivityStatus], None]
ExitCallback = Callable[["ProcessEntry", int], None]


class ProcessEntry:
    """Runtime state for one session's subprocess.

    Everything here is mutated on the event loop thread only: pty output
    arrives via ``loop.add_reader``, the idle timer via ``call_later`` and
    viewer traffic via the WebSocket handlers. Blocking calls (waitpid,
    closing the pty) are pushed to the default executor.
    """

    def __init__(
        self,
        session_id: str,
        process: PtyProcess,
        loop: asyncio.AbstractEventLoop,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        scrollback: Optional[ScrollbackBuffer] = None,
        on_output: Optional[OutputCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ):
        self.session_id = session_id
        self.process = process
        self.loop = loop
        self.scrollback = scrollback or ScrollbackBuffer()
        self.connections: set = set()
        self.started_at = datetime.now()
        self.exit_code: Optional[int] = None
        self.monitor = ActivityMonitor(
            session_id,
            idle_timeout=idle_timeout,
            on_transition=self._handle_transition,
            loop=loop,
        )

        self._on_output = on_output
        self._on_status = on_status
        self._on_exit = on_exit
        self._fd = process.fd
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reading = False
        self._writing = False
        self._pending_input = bytearray()
        self._exit_task: Optional[asyncio.Task] = None

    @property
    def status(self) -> ActivityStatus:
        return self.monitor.status

    @property
    def alive(self) -> bool:
        return self.monitor.status is not ActivityStatus.EXITED

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def last_output_at(self) -> Optional[datetime]:
        return self.monitor.last_output_at

    def start(self) -> None:
        """Begin reading output and watching for process exit."""
        os.set_blocking(self._fd, False)
        self.loop.add_reader(self._fd, self._on_readable)
        self._reading = True
        self.monitor.start()
        self._exit_task = self.loop.create_task(self._wait_for_exit())

    # Output path

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is closed
            data = b""
        if not data:
            self._stop_reading()
            return
        self._handle_output(data)

    def _handle_output(self, data: bytes) -> None:
        self.scrollback.append(data)
        text = self._decoder.decode(data)
        if text and self._on_output:
            self._on_output(self, text)
        # After fan-out, so viewers see the chunk before status{active}
        self.monitor.record_output()

    def _drain(self) -> None:
        """Read whatever the process left in the pty before it exited."""
        for _ in range(MAX_DRAIN_READS):
            try:
                data = os.read(self._fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._handle_output(data)

    def _stop_reading(self) -> None:
        if self._reading:
            self.loop.remove_reader(self._fd)
            self._reading = False

    # Input path

    def write(self, data: bytes) -> None:
        """Queue raw bytes for the subprocess; ignored once exited."""
        if not self.alive or not data:
            return
        self._pending_input += data
        self._flush_input()

    def _flush_input(self) -> None:
        while self._pending_input:
            try:
                written = os.write(self._fd, self._pending_input)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug(f"Dropping input for session {self.session_id}: {e}")
                self._pending_input.clear()
                break
            del self._pending_input[:written]

        if self._pending_input and not self._writing:
            self.loop.add_writer(self._fd, self._flush_input)
            self._writing = True
        elif not self._pending_input and self._writing:
            self.loop.remove_writer(self._fd)
            self._writing = False

    def resize(self, cols: int, rows: int) -> None:
        """Set the pty window size; the kernel signals SIGWINCH to the child."""
        if not self.alive:
            return
        try:
            self.process.setwinsize(rows, cols)
        except Exception as e:
            logger.debug(f"Resize failed for session {self.session_id}: {e}")

    def kill(self, sig: int = signal.SIGHUP) -> None:
        """Best-effort signal to the subprocess."""
        if not self.alive:
            return
        # PtyProcess.kill polls waitpid, which races the executor's blocking wait
        try:
            os.kill(self.process.pid, sig)
        except Exception as e:
            logger.debug(f"Kill failed for session {self.session_id} (pid={self.pid}): {e}")

    # Exit path

    async def _wait_for_exit(self) -> None:
        try:
            await self.loop.run_in_executor(None, self.process.wait)
        except Exception as e:
            logger.debug(f"Wait failed for session {self.session_id}: {e}")

        self._drain()
        self._stop_reading()
        if self._writing:
            self.loop.remove_writer(self._fd)
            self._writing = False
        self._pending_input.clear()

        tail = self._decoder.decode(b"", final=True)
        if tail and self._on_output:
            self._on_output(self, tail)

        if self.process.exitstatus is not None:
            self.exit_code = self.process.exitstatus
        elif self.process.signalstatus is not None:
            self.exit_code = -self.process.signalstatus
        else:
            self.exit_code = -1

        try:
            await self.loop.run_in_executor(None, self.process.close)
        except Exception as e:
            logger.debug(f"Error closing pty for session {self.session_id}: {e}")

        logger.info(f"Session {self.session_id} process exited (pid={self.pid}, code={self.exit_code})")
        self.monitor.mark_exited()
        if self._on_exit:
            try:
                self._on_exit(self, self.exit_code)
            except Exception as e:
                logger.error(f"Exit callback error for session {self.session_id}: {e}")

    async def wait_exited(self, timeout: Optional[float] = None) -> bool:
        """Wait until the exit path has run. Returns False on timeout."""
        if self._exit_task is None:
            return not self.alive
        try:
            await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _handle_transition(self, status: ActivityStatus) -> None:
        if self._on_status:
            self._on_status(self, status)


class ProcessSupervisor:
    """Owns the pty-backed subprocess of every session that has one."""

    def __init__(
        self,
        command: str = "claude",
        strip_env: Iterable[str] = DEFAULT_STRIP_ENV,
        term: str = "xterm-256color",
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        scrollback_max_bytes: int = MAX_BYTES,
        scrollback_trim_to: int = TRIM_TO,
        default_cols: int = DEFAULT_COLS,
        default_rows: int = DEFAULT_ROWS,
    ):
        self.command = command
        self.strip_env = tuple(strip_env)
        self.term = term
        self.idle_timeout = idle_timeout
        self.scrollback_max_bytes = scrollback_max_bytes
        self.scrollback_trim_to = scrollback_trim_to
        self.default_cols = default_cols
        self.default_rows = default_rows

        self._entries: dict[str, ProcessEntry] = {}
        self._output_callback: Optional[OutputCallback] = None
        self._status_callback: Optional[StatusCallback] = None
        self._exit_callback: Optional[ExitCallback] = None

    def set_output_callback(self, callback: OutputCallback):
        """Set the callback for decoded output chunks."""
        self._output_callback = callback

    def set_status_callback(self, callback: StatusCallback):
        """Set the callback for activity status transitions."""
        self._status_callback = callback

    def set_exit_callback(self, callback: ExitCallback):
        """Set the callback invoked once a process has exited."""
        self._exit_callback = callback

    def get(self, session_id: str) -> Optional[ProcessEntry]:
        return self._entries.get(session_id)

    def entries(self) -> list[ProcessEntry]:
        return list(self._entries.values())

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def resolve_cwd(self, cwd: Optional[str]) -> str:
        """Expand the configured directory, falling back to home if it is missing."""
        home = os.path.expanduser("~")
        resolved = os.path.expanduser(cwd) if cwd else home
        if not os.path.isdir(resolved):
            logger.warning(f'cwd "{resolved}" does not exist, falling back to {home}')
            return home
        return resolved

    def build_env(self) -> dict[str, str]:
        """Copy the server environment without the CLI's nesting markers."""
        env = dict(os.environ)
        for name in self.strip_env:
            env.pop(name, None)
        env["TERM"] = self.term
        return env

    def spawn(self, session: Session, cols: Optional[int] = None, rows: Optional[int] = None) -> ProcessEntry:
        """Return the session's entry, launching its process if there is none.

        Raises:
            SpawnFailure: the process could not be started.
        """
        existing = self._entries.get(session.id)
        if existing is not None:
            return existing

        cols = cols if cols and cols > 0 else self.default_cols
        rows = rows if rows and rows > 0 else self.default_rows
        cwd = self.resolve_cwd(session.cwd)
        argv = [self.command, *session.args]

        try:
            process = PtyProcess.spawn(
                argv,
                cwd=cwd,
                env=self.build_env(),
                dimensions=(rows, cols),
            )
        except Exception as e:
            logger.error(f"Failed to start {self.command} for session {session.id}: {e}")
            raise SpawnFailure(session.id, str(e)) from e

        entry = ProcessEntry(
            session.id,
            process,
            loop=asyncio.get_running_loop(),
            idle_timeout=self.idle_timeout,
            scrollback=ScrollbackBuffer(self.scrollback_max_bytes, self.scrollback_trim_to),
            on_output=self._emit_output,
            on_status=self._emit_status,
            on_exit=self._emit_exit,
        )
        self._entries[session.id] = entry
        entry.start()
        logger.info(
            f"Spawned session {session.id}: pid={entry.pid} cwd={cwd} "
            f"size={cols}x{rows} cmd={' '.join(argv)}"
        )
        return entry

    def write(self, session_id: str, data: bytes) -> None:
        entry = self._entries.get(session_id)
        if entry is not None:
            entry.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        entry = self._entries.get(session_id)
        if entry is not None:
            entry.resize(cols, rows)

    def kill(self, session_id: str) -> None:
        entry = self._entries.get(session_id)
        if entry is not None:
            entry.kill()

    def remove(self, session_id: str) -> Optional[ProcessEntry]:
        """Terminate a session's process and forget its entry."""
        entry = self._entries.pop(session_id, None)
        if entry is not None:
            entry.kill()
            logger.info(f"Removed process entry for session {session_id}")
        return entry

    async def shutdown(self, grace: float = 3.0) -> None:
        """Terminate every live process, escalating to SIGKILL after ``grace``."""
        live = [e for e in self._entries.values() if e.alive]
        for entry in live:
            entry.kill()

        if live:
            await asyncio.gather(*(e.wait_exited(grace) for e in live))
            stragglers = [e for e in live if e.alive]
            for entry in stragglers:
                logger.warning(f"Session {entry.session_id} ignored SIGHUP, sending SIGKILL")
                entry.kill(signal.SIGKILL)
            if stragglers:
                await asyncio.gather(*(e.wait_exited(grace) for e in stragglers))

        logger.info(f"Supervisor shut down ({len(live)} live processes terminated)")

    def _emit_output(self, entry: ProcessEntry, text: str) -> None:
        if self._output_callback:
            self._output_callback(entry, text)

    def _emit_status(self, entry: ProcessEntry, status: ActivityStatus) -> None:
        if self._status_callback:
            self._status_callback(entry, status)

    def _emit_exit(self, entry: ProcessEntry, exit_code: int) -> None:
        if self._exit_callback:
            self._exit_callback(entry, exit_code)
