"""
Outbound device control over the cloud-TV device protocol.

The DeviceConnectionManager keeps at most one TCP session per remote device
id and drives the device lifecycle in the DeviceRegistry.

Wire Format:
    Newline-delimited JSON objects in both directions.

    Client -> device:
        {"type": "auth", "version": "1.0", "client": ..., "timestamp": ..., "requestId": ...}
        {"type": "<command>", "deviceId": ..., "timestamp": ..., <command fields>}
        {"type": "getPlaybackState", "deviceId": ..., "timestamp": ..., "requestId": ...}

    Device -> client:
        {"type": "auth", "requestId": ..., "success": true|false}
        {"type": "playbackState", "deviceId": ..., "requestId"?: ..., "currentPosition": ...,
         "duration": ..., "status": ..., "volume": ..., "playbackRate": ..., "bufferProgress": ...}
        {"type": "statusChange", "deviceId": ..., "status": "<device status>"}

A frame carrying a ``requestId`` resolves the request waiting on that id;
``playbackState`` frames are additionally published on the event bus.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any

from tvcast.core.errors import (
    AuthenticationRequiredError,
    CastError,
    CommandFailedError,
    ConnectionFailedError,
    DeviceNotFoundError,
    InvalidResponseError,
    NetworkError,
    OperationTimeoutError,
    Result,
)
from tvcast.core.events import DevicePlaybackStateEvent, DeviceStatusChangedEvent, EventBus
from tvcast.core.models import (
    IMPLIED_DEVICE_STATUS,
    CastCommand,
    Device,
    DeviceStatus,
    Play,
    PlaybackState,
    PlayLive,
    PlayVideo,
    Seek,
    SetDanmaku,
    SetPlaybackRate,
    SetVolume,
)
from tvcast.player.registry import DeviceRegistry

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0"

# Longest line accepted from a device
MAX_FRAME_SIZE = 256 * 1024


def command_to_frame(command: CastCommand, device_id: str, now: float | None = None) -> dict[str, Any]:
    """Serialize a command for the device protocol."""
    frame: dict[str, Any] = {
        "type": command.wire_type,
        "deviceId": device_id,
        "timestamp": time.time() if now is None else now,
    }

    if isinstance(command, Play):
        frame["url"] = command.url
        frame["title"] = command.title
        if command.metadata is not None:
            frame["metadata"] = command.metadata.to_payload()
    elif isinstance(command, PlayVideo):
        frame["aid"] = command.aid
        frame["cid"] = command.cid
        frame["epid"] = command.epid
        if command.metadata is not None:
            frame["metadata"] = command.metadata.to_payload()
    elif isinstance(command, PlayLive):
        frame["roomId"] = command.room_id
    elif isinstance(command, Seek):
        frame["position"] = command.position
    elif isinstance(command, SetVolume):
        frame["volume"] = command.level
    elif isinstance(command, SetPlaybackRate):
        frame["rate"] = command.rate
    elif isinstance(command, SetDanmaku):
        frame["enabled"] = command.enabled

    return frame


class DeviceSession:
    """
    One open TCP session to a remote device.

    Owned by the DeviceConnectionManager; holds the pending request futures
    keyed by request id.
    """

    def __init__(
        self,
        device_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.device_id = device_id
        self.reader = reader
        self.writer = writer
        self.reader_task: asyncio.Task[None] | None = None
        self.pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self.closed = False
        self._write_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"DeviceSession({self.device_id})"

    async def send(self, frame: dict[str, Any]) -> None:
        """
        Write one frame.

        Raises:
            ConnectionError: If the session is closed or the write fails.
        """
        data = (json.dumps(frame, separators=(",", ":")) + "\n").encode("utf-8")
        async with self._write_lock:
            if self.closed:
                raise ConnectionError(f"session to {self.device_id} is closed")
            self.writer.write(data)
            await self.writer.drain()

    def fail_pending(self, error: CastError) -> None:
        for future in self.pending.values():
            if not future.done():
                future.set_exception(error)
        self.pending.clear()


class _ConnectAttempt:
    """An in-flight connect; ``cancelled`` is set by a concurrent disconnect."""

    def __init__(self) -> None:
        self.cancelled = False
        self.result: asyncio.Future[Result[None]] = asyncio.get_running_loop().create_future()


class DeviceConnectionManager:
    """
    Owner of all outbound device sessions.

    Status changes are applied through the registry (legal edges only) and
    published as DeviceStatusChangedEvent.
    """

    def __init__(
        self,
        event_bus: EventBus,
        registry: DeviceRegistry | None = None,
        connect_timeout: float = 10.0,
        handshake_timeout: float = 10.0,
        request_timeout: float = 5.0,
        client_name: str = "tvcast",
    ) -> None:
        self.event_bus = event_bus
        self.registry = registry if registry is not None else DeviceRegistry()
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.client_name = client_name

        self._sessions: dict[str, DeviceSession] = {}
        self._attempts: dict[str, _ConnectAttempt] = {}

    def is_connected(self, device_id: str) -> bool:
        session = self._sessions.get(device_id)
        return session is not None and not session.closed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, device: Device) -> Result[None]:
        """
        Open a session to ``device`` and perform the handshake.

        Succeeds immediately if a session is already open; a second call
        while an attempt is in flight waits for that attempt's result. On any
        failure, including a ``disconnect`` issued mid-attempt, the socket is
        closed and the device ends up disconnected.
        """
        attempt = self._attempts.get(device.id)
        if attempt is not None:
            return await asyncio.shield(attempt.result)

        if self.is_connected(device.id):
            return Result.success()

        attempt = _ConnectAttempt()
        self._attempts[device.id] = attempt
        result: Result[None] = Result.failure(ConnectionFailedError("connect aborted"))
        try:
            result = await self._open_session(device, attempt)
            return result
        finally:
            if self._attempts.get(device.id) is attempt:
                del self._attempts[device.id]
            attempt.result.set_result(result)

    async def _open_session(self, device: Device, attempt: _ConnectAttempt) -> Result[None]:
        await self.registry.upsert(device)
        await self._set_status(device.id, DeviceStatus.CONNECTING)

        logger.info("Connecting to device %s at %s:%d", device.id, device.address, device.port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(device.address, device.port, limit=MAX_FRAME_SIZE),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Connection to %s timed out", device.id)
            await self._set_status(device.id, DeviceStatus.DISCONNECTED)
            return Result.failure(OperationTimeoutError("connect"))
        except OSError as e:
            logger.warning("Connection to %s failed: %s", device.id, e)
            await self._set_status(device.id, DeviceStatus.DISCONNECTED)
            return Result.failure(ConnectionFailedError(str(e)))

        session = DeviceSession(device.id, reader, writer)
        if attempt.cancelled:
            logger.info("Connect to %s cancelled by disconnect", device.id)
            await self._close_session(session)
            return Result.failure(ConnectionFailedError("disconnected while connecting"))

        self._sessions[device.id] = session
        session.reader_task = asyncio.create_task(self._read_loop(session))

        result = await self._handshake(session)
        if not result.ok:
            logger.warning("Handshake with %s failed: %s", device.id, result.error)
            await self._close_session(session)
            return result

        if session.closed or attempt.cancelled:
            await self._close_session(session)
            return Result.failure(ConnectionFailedError("connection closed during handshake"))

        await self._set_status(device.id, DeviceStatus.CONNECTED)
        logger.info("Connected to device %s", device.id)
        return Result.success()

    async def disconnect(self, device: Device) -> None:
        """
        Close the session to ``device``. Safe to call when not connected.

        A connect still in flight for the device completes with a failure.
        """
        attempt = self._attempts.get(device.id)
        if attempt is not None:
            attempt.cancelled = True

        session = self._sessions.get(device.id)
        if session is None:
            return
        logger.info("Disconnecting from device %s", device.id)
        await self._close_session(session)

    async def disconnect_all(self) -> None:
        """Close every open session and cancel in-flight connects (shutdown)."""
        for attempt in self._attempts.values():
            attempt.cancelled = True

        sessions = list(self._sessions.values())
        for session in sessions:
            await self._close_session(session)
        if sessions:
            logger.info("All devices disconnected (%d total)", len(sessions))

    async def apply_discovery(self, devices: list[Device], window_start: float) -> list[Device]:
        """
        Merge one discovery window into the registry.

        Every discovered device is upserted; idle devices not seen since
        ``window_start`` are evicted.

        Returns:
            The evicted devices.
        """
        for device in devices:
            await self.registry.upsert(device)
        return await self.registry.evict_stale(window_start)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def send_command(self, command: CastCommand, device: Device) -> Result[None]:
        """
        Write one command to a connected device.

        Commands that imply a play state update the local device status
        optimistically; the device is not asked to confirm.
        """
        session = self._sessions.get(device.id)
        if session is None or session.closed:
            return Result.failure(DeviceNotFoundError(device.id))

        current = await self.registry.get(device.id)
        if current is None or not current.status.is_session_open:
            return Result.failure(CommandFailedError(f"device {device.id} is not connected"))

        try:
            await session.send(command_to_frame(command, device.id))
        except (ConnectionError, OSError) as e:
            logger.warning("Failed to send %s to %s: %s", command.wire_type, device.id, e)
            await self._close_session(session)
            return Result.failure(NetworkError(e))

        logger.debug("Sent %s to %s", command.wire_type, device.id)

        implied = IMPLIED_DEVICE_STATUS.get(type(command))
        if implied is not None:
            await self._set_status(device.id, implied)

        return Result.success()

    async def get_playback_state(self, device: Device) -> Result[PlaybackState]:
        """Ask the device for its playback state and wait for the matching reply."""
        session = self._sessions.get(device.id)
        if session is None or session.closed:
            return Result.failure(DeviceNotFoundError(device.id))

        request = {"type": "getPlaybackState", "deviceId": device.id, "timestamp": time.time()}
        try:
            reply = await self._request(session, request, self.request_timeout, "getPlaybackState")
        except CastError as e:
            return Result.failure(e)

        if reply.get("type") != "playbackState":
            return Result.failure(InvalidResponseError(f"unexpected reply type {reply.get('type')!r}"))

        try:
            return Result.success(PlaybackState.from_wire(reply))
        except ValueError as e:
            return Result.failure(InvalidResponseError(str(e)))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _handshake(self, session: DeviceSession) -> Result[None]:
        request = {
            "type": "auth",
            "version": PROTOCOL_VERSION,
            "client": self.client_name,
            "timestamp": time.time(),
        }
        try:
            reply = await self._request(session, request, self.handshake_timeout, "handshake")
        except CastError as e:
            return Result.failure(e)

        success = reply.get("success")
        if success is True:
            return Result.success()
        if success is False:
            return Result.failure(AuthenticationRequiredError("device rejected handshake"))
        return Result.failure(InvalidResponseError("handshake reply without success flag"))

    async def _request(
        self,
        session: DeviceSession,
        frame: dict[str, Any],
        timeout: float,
        operation: str,
    ) -> dict[str, Any]:
        """
        Send ``frame`` with a fresh request id and wait for the reply carrying it.

        Raises:
            CastError: On timeout, write failure, or session closure.
        """
        request_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        session.pending[request_id] = future
        try:
            await session.send({**frame, "requestId": request_id})
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(operation) from None
        except (ConnectionError, OSError) as e:
            raise NetworkError(e) from e
        finally:
            session.pending.pop(request_id, None)

    async def _read_loop(self, session: DeviceSession) -> None:
        try:
            while not session.closed:
                try:
                    line = await session.reader.readline()
                except ValueError:
                    logger.warning("Oversized frame from %s, closing session", session.device_id)
                    break
                if not line:
                    logger.debug("Device %s closed the connection", session.device_id)
                    break

                try:
                    frame = json.loads(line)
                except ValueError:
                    logger.debug("Ignoring unparsable frame from %s", session.device_id)
                    continue
                if not isinstance(frame, dict):
                    continue

                await self._dispatch(session, frame)
        except (ConnectionError, OSError) as e:
            logger.info("Connection to %s lost: %s", session.device_id, e)
        finally:
            await self._close_session(session)

    async def _dispatch(self, session: DeviceSession, frame: dict[str, Any]) -> None:
        request_id = frame.get("requestId")
        if isinstance(request_id, str):
            future = session.pending.pop(request_id, None)
            if future is not None and not future.done():
                future.set_result(frame)

        frame_type = frame.get("type")
        if frame_type == "playbackState":
            try:
                state = PlaybackState.from_wire(frame)
            except ValueError as e:
                logger.debug("Bad playbackState from %s: %s", session.device_id, e)
                return
            await self.event_bus.publish(
                DevicePlaybackStateEvent(
                    device_id=session.device_id,
                    state=state,
                    request_id=request_id if isinstance(request_id, str) else None,
                )
            )
        elif frame_type == "statusChange":
            try:
                status = DeviceStatus(frame.get("status"))
            except ValueError:
                logger.debug("Unknown status from %s: %r", session.device_id, frame.get("status"))
                return
            await self._set_status(session.device_id, status)
            if status.is_terminal:
                await self._close_session(session)
        elif frame_type == "auth":
            pass
        else:
            logger.debug("Unknown frame type from %s: %r", session.device_id, frame_type)

    async def _close_session(self, session: DeviceSession) -> None:
        """Tear down a session. Only the first call for a session has any effect."""
        if session.closed:
            return
        session.closed = True

        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]

        session.fail_pending(ConnectionFailedError("connection closed"))

        task = session.reader_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            session.writer.close()
            await session.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error closing session to %s: %s", session.device_id, e)

        device = await self.registry.get(session.device_id)
        if device is not None and not device.status.is_terminal:
            await self._set_status(session.device_id, DeviceStatus.DISCONNECTED)

        logger.info("Session to %s closed", session.device_id)

    async def _set_status(self, device_id: str, status: DeviceStatus) -> Device | None:
        device = await self.registry.transition(device_id, status)
        if device is not None:
            await self.event_bus.publish(DeviceStatusChangedEvent(device=device, status=status))
        return device
