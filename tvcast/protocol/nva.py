"""
Control-session framing for the mobile app's remote-control channel.

After the app upgrades ``/projection`` on the descriptor server, the TCP
connection carries binary frames in both directions.

Frame Format:
    [KIND: 1 byte][PARTS: 1 byte][SEQ: 4 bytes big-endian][PART...]

    KIND  0xE0 = command (app -> TV requests, TV -> app pushes)
          0xC0 = reply to a command; SEQ echoes the command's SEQ
    PART  [LENGTH: 4 bytes big-endian][UTF-8 bytes]

    Command parts: action name, JSON body (body may be omitted).
    Reply parts:   JSON body; a reply with zero parts is an empty ack.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import struct
import time
import uuid
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

KIND_COMMAND = 0xE0
KIND_REPLY = 0xC0

HEADER = struct.Struct(">BBI")
PART_LENGTH = struct.Struct(">I")

# Upper bound on a single part; the app never sends anything close to this.
MAX_PART_SIZE = 1024 * 1024

# Push actions sent by the TV
ACTION_PLAY_STATE = "OnPlayState"
ACTION_PROGRESS = "OnProgress"


class FrameError(Exception):
    """Malformed control-session frame."""

    pass


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")


@dataclass(frozen=True)
class NvaFrame:
    """One decoded control-session frame."""

    kind: int
    seq: int
    action: str = ""
    body: str = ""

    @property
    def is_command(self) -> bool:
        return self.kind == KIND_COMMAND

    def json_body(self) -> dict[str, Any]:
        """
        Parse the body as a JSON object. ``NaN`` and ``Infinity`` are rejected.

        Raises:
            FrameError: If the body is not a JSON object.
        """
        if not self.body:
            return {}
        try:
            data = json.loads(self.body, parse_constant=_reject_constant)
        except ValueError as e:
            raise FrameError(f"invalid JSON body for {self.action}: {e}") from None
        if not isinstance(data, dict):
            raise FrameError(f"body for {self.action} is not an object")
        return data


def encode_frame(kind: int, seq: int, parts: list[str]) -> bytes:
    if kind not in (KIND_COMMAND, KIND_REPLY):
        raise ValueError(f"Unknown frame kind: {kind:#x}")
    if len(parts) > 255:
        raise ValueError("Too many frame parts")

    out = bytearray(HEADER.pack(kind, len(parts), seq & 0xFFFFFFFF))
    for part in parts:
        data = part.encode("utf-8")
        out += PART_LENGTH.pack(len(data))
        out += data
    return bytes(out)


def encode_command(seq: int, action: str, content: dict[str, Any] | None = None) -> bytes:
    parts = [action]
    if content is not None:
        parts.append(json.dumps(content, separators=(",", ":")))
    return encode_frame(KIND_COMMAND, seq, parts)


def encode_reply(seq: int, content: dict[str, Any] | None = None) -> bytes:
    parts = [] if content is None else [json.dumps(content, separators=(",", ":"))]
    return encode_frame(KIND_REPLY, seq, parts)


async def read_frame(reader: asyncio.StreamReader) -> NvaFrame:
    """
    Read one frame from the stream.

    Raises:
        asyncio.IncompleteReadError: If the peer closed mid-frame or between frames.
        FrameError: If the frame is malformed.
    """
    header = await reader.readexactly(HEADER.size)
    kind, count, seq = HEADER.unpack(header)
    if kind not in (KIND_COMMAND, KIND_REPLY):
        raise FrameError(f"Unknown frame kind: {kind:#x}")

    parts: list[str] = []
    for _ in range(count):
        (length,) = PART_LENGTH.unpack(await reader.readexactly(PART_LENGTH.size))
        if length > MAX_PART_SIZE:
            raise FrameError(f"Frame part too large: {length} bytes")
        raw = await reader.readexactly(length)
        try:
            parts.append(raw.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise FrameError(f"Frame part is not UTF-8: {e}") from None

    if kind == KIND_COMMAND:
        if not parts:
            raise FrameError("Command frame without action")
        return NvaFrame(kind=kind, seq=seq, action=parts[0], body=parts[1] if len(parts) > 1 else "")

    return NvaFrame(kind=kind, seq=seq, body=parts[0] if parts else "")


class ControlSession:
    """
    One upgraded control connection.

    Owned by the ControlSessionHub; the descriptor server only creates it and
    pumps inbound frames. Outbound pushes use their own sequence counter.
    """

    def __init__(self, writer: asyncio.StreamWriter, session_id: str | None = None) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._writer = writer
        self._seq = itertools.count(1)
        self._closed = False
        self.last_activity = time.time()

        peername = writer.get_extra_info("peername")
        self.remote_address = f"{peername[0]}:{peername[1]}" if peername else "unknown"

    def __repr__(self) -> str:
        return f"ControlSession({self.session_id} from {self.remote_address})"

    @property
    def is_closed(self) -> bool:
        return self._closed

    def touch(self) -> None:
        self.last_activity = time.time()

    async def send_reply(self, seq: int, content: dict[str, Any]) -> None:
        await self._write(encode_reply(seq, content))

    async def send_empty(self, seq: int) -> None:
        await self._write(encode_reply(seq))

    async def send_command(self, action: str, content: dict[str, Any]) -> None:
        await self._write(encode_command(next(self._seq), action, content))

    async def _write(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionError(f"session {self.session_id} is closed")
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error closing session %s: %s", self.session_id, e)
