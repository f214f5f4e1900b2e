"""Viewer wire protocol: message codec and per-connection dispatch."""

import json
import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .models import ActivityStatus, SessionNotFound, SpawnFailure

logger = logging.getLogger(__name__)


# Inbound (viewer -> server)

class AttachMessage(BaseModel):
    """Bind the connection to a session, spawning its process if needed."""
    type: Literal["attach"]
    sessionId: str
    cols: Optional[int] = None
    rows: Optional[int] = None


class InputMessage(BaseModel):
    """Raw keystrokes for the bound session."""
    type: Literal["input"]
    data: str


class ResizeMessage(BaseModel):
    """New terminal geometry for the bound session."""
    type: Literal["resize"]
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class DetachMessage(BaseModel):
    """Unbind the connection without stopping the process."""
    type: Literal["detach"]


InboundMessage = Annotated[
    Union[AttachMessage, InputMessage, ResizeMessage, DetachMessage],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundMessage)


def parse_message(raw: Union[str, bytes]) -> Optional[BaseModel]:
    """Decode one inbound frame, or return None if it is not a valid message."""
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError:
        return None


# Outbound (server -> viewer)

def attached_message(session_id: str, status: ActivityStatus) -> dict:
    return {"type": "attached", "sessionId": session_id, "status": status.value}


def output_message(data: str) -> dict:
    return {"type": "output", "data": data}


def status_message(session_id: str, status: ActivityStatus) -> dict:
    return {"type": "status", "sessionId": session_id, "status": status.value}


def error_message(message: str) -> dict:
    return {"type": "error", "message": message}


def encode(message: dict) -> str:
    """Serialize an outbound message to compact JSON."""
    return json.dumps(message, separators=(",", ":"))


class ProtocolHandler:
    """Routes one viewer connection's messages to the hub components.

    One handler exists per transport connection. The connection is bound to
    at most one session at a time; input and resize go to that session only.
    """

    def __init__(self, connection, registry, supervisor, hub):
        self.connection = connection
        self.registry = registry
        self.supervisor = supervisor
        self.hub = hub

    @property
    def session_id(self) -> Optional[str]:
        return self.connection.session_id

    def handle(self, raw: Union[str, bytes]) -> None:
        """Dispatch one inbound frame. Malformed frames are dropped."""
        message = parse_message(raw)
        if message is None:
            logger.debug(f"Discarding malformed message on connection {self.connection.id}")
            return

        if isinstance(message, AttachMessage):
            self._attach(message)
        elif isinstance(message, InputMessage):
            self._input(message)
        elif isinstance(message, ResizeMessage):
            self._resize(message)
        elif isinstance(message, DetachMessage):
            self._detach()

    def close(self) -> None:
        """Transport closed: drop the connection from its session."""
        self.hub.connection_closed(self.connection)

    def _attach(self, message: AttachMessage) -> None:
        session_id = message.sessionId
        if self.session_id is not None:
            self.hub.detach(self.session_id, self.connection)

        session = self.registry.get(session_id)
        if session is None:
            self.connection.send(error_message("Session not found"))
            return

        try:
            self.supervisor.spawn(session, message.cols, message.rows)
        except SpawnFailure as e:
            self.connection.send(output_message(f"\r\nError starting {self.supervisor.command}: {e.reason}\r\n"))
            self.connection.send(status_message(session_id, ActivityStatus.EXITED))
            return

        try:
            self.hub.attach(session_id, self.connection)
        except SessionNotFound:
            self.connection.send(error_message("Session not found"))

    def _input(self, message: InputMessage) -> None:
        if self.session_id is None:
            return
        try:
            data = message.data.encode("utf-8")
        except UnicodeEncodeError:
            # Lone surrogates from a broken client
            logger.debug(f"Discarding unencodable input on connection {self.connection.id}")
            return
        self.supervisor.write(self.session_id, data)

    def _resize(self, message: ResizeMessage) -> None:
        if self.session_id is None:
            return
        self.supervisor.resize(self.session_id, message.cols, message.rows)

    def _detach(self) -> None:
        if self.session_id is None:
            return
        self.hub.detach(self.session_id, self.connection)
