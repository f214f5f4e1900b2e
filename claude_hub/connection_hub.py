"""Viewer connections and output fan-out."""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Optional

from .models import ActivityStatus, SessionNotFound
from .process_supervisor import ProcessEntry, ProcessSupervisor
from .protocol import attached_message, encode, output_message, status_message

logger = logging.getLogger(__name__)


DEFAULT_MAX_PENDING = 1024  # queued frames per viewer before it is cut off
OVERFLOW_CLOSE_CODE = 1013  # "try again later"; the viewer reattaches and gets the replay


class Connection:
    """One viewer transport.

    ``send`` only enqueues; a writer task pushes frames to the transport in
    order. A failed transport send is dropped and counted, never retried.
    The queue holds at most ``max_pending`` frames. A viewer that falls that
    far behind is closed through ``transport_close`` and refuses further
    frames. The connection itself is only removed from its session when the
    transport reports that it closed.
    """

    def __init__(
        self,
        transport_send: Callable[[str], Awaitable[None]],
        connection_id: Optional[str] = None,
        max_pending: int = DEFAULT_MAX_PENDING,
        transport_close: Optional[Callable[[int], Awaitable[None]]] = None,
    ):
        self.id = connection_id or uuid.uuid4().hex[:8]
        self.session_id: Optional[str] = None
        self.dropped = 0
        self._transport_send = transport_send
        self._transport_close = transport_close
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._closed = False
        self._writer_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the writer task. Must be called from the event loop."""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer_loop())

    def send(self, message: dict) -> bool:
        """Queue a message for delivery. Returns False once closed or full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(encode(message))
        except asyncio.QueueFull:
            self.dropped += 1
            self._overflow()
            return False
        return True

    async def drain(self) -> None:
        """Wait until every queued message has been handed to the transport."""
        await self._queue.join()

    async def close(self) -> None:
        self._closed = True
        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None

    def _overflow(self) -> None:
        logger.warning(
            f"Connection {self.id} fell {self._queue.maxsize} messages behind, closing it"
        )
        self._closed = True
        if self._transport_close is not None and self._close_task is None:
            self._close_task = asyncio.ensure_future(self._close_transport())

    async def _close_transport(self) -> None:
        try:
            await self._transport_close(OVERFLOW_CLOSE_CODE)
        except Exception as e:
            logger.debug(f"Closing connection {self.id} failed: {e}")

    async def _writer_loop(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self._transport_send(text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.dropped += 1
                logger.debug(f"Dropped message to connection {self.id}: {e}")
            finally:
                self._queue.task_done()


class ConnectionHub:
    """Tracks which connections view which session and fans messages out."""

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor

    def attach(self, session_id: str, connection) -> ProcessEntry:
        """Add a connection to a live session.

        The ``attached`` acknowledgement and the scrollback replay are queued
        before this returns, so they precede any later output.

        Raises:
            SessionNotFound: the session has no process entry.
        """
        entry = self.supervisor.get(session_id)
        if entry is None:
            raise SessionNotFound(session_id)

        if connection.session_id is not None and connection.session_id != session_id:
            self.detach(connection.session_id, connection)

        entry.connections.add(connection)
        connection.session_id = session_id

        self._deliver(connection, attached_message(session_id, entry.status))
        replay = entry.scrollback.snapshot()
        if replay:
            self._deliver(connection, output_message(replay.decode("utf-8", errors="replace")))

        logger.info(
            f"Connection {connection.id} attached to session {session_id} "
            f"({len(entry.connections)} viewers, {len(replay)} bytes replayed)"
        )
        return entry

    def detach(self, session_id: str, connection) -> None:
        """Remove a connection from a session; the process keeps running."""
        entry = self.supervisor.get(session_id)
        if entry is not None and connection in entry.connections:
            entry.connections.discard(connection)
            logger.info(f"Connection {connection.id} detached from session {session_id}")
        if connection.session_id == session_id:
            connection.session_id = None

    def connection_closed(self, connection) -> None:
        """Forget a connection whose transport has closed."""
        if connection.session_id is not None:
            self.detach(connection.session_id, connection)

    def broadcast(self, session_id: str, message: dict) -> int:
        """Send a message to every viewer of a session. Returns deliveries queued."""
        entry = self.supervisor.get(session_id)
        if entry is None:
            return 0
        return self.fan_out(entry, message)

    def fan_out(self, entry: ProcessEntry, message: dict) -> int:
        delivered = 0
        for connection in list(entry.connections):
            if self._deliver(connection, message):
                delivered += 1
        return delivered

    def publish_output(self, entry: ProcessEntry, text: str) -> None:
        self.fan_out(entry, output_message(text))

    def publish_status(self, entry: ProcessEntry, status: ActivityStatus) -> None:
        self.fan_out(entry, status_message(entry.session_id, status))

    def viewer_count(self, session_id: str) -> int:
        entry = self.supervisor.get(session_id)
        return len(entry.connections) if entry is not None else 0

    def _deliver(self, connection, message: dict) -> bool:
        try:
            return connection.send(message) is not False
        except Exception as e:
            logger.debug(f"Send to connection {getattr(connection, 'id', '?')} failed: {e}")
            return False
