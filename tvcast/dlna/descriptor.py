"""
DLNA descriptor HTTP server.

A small HTTP/1.1 server for the MediaRenderer surface the
mobile app talks to. It serves the device and service descriptions, echoes
AVTransport actions, exposes the debug log routes, and upgrades
``/projection`` into a long-lived control session handed to the
ControlSessionHub.

Runs on raw asyncio streams: the upgrade route keeps the TCP connection
after the 101 reply.

Routes:
    GET       /description.xml           - device description (UUID substituted)
    GET       /dlna/NirvanaControl.xml   - control service description
    GET       /dlna/AVTransport.xml      - transport service description
    POST      /AVTransport/action        - echoes the request body
    ANY       /AVTransport/event         - 500, eventing is not supported
    GET       /debug/log                 - newest log file
    GET       /debug/old                 - oldest rotated log file
    GET|POST  /projection                - session upgrade
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from xml.sax.saxutils import escape

from tvcast.dlna.hub import ControlSessionHub
from tvcast.logs import latest_log_path, oldest_log_path
from tvcast.protocol.nva import ControlSession, FrameError, read_frame

logger = logging.getLogger(__name__)

RESOURCE_DIR = Path(__file__).parent / "resources"

UPGRADE_PATH = "/projection"
UPGRADE_PROTOCOL = "NVA/1.0"

MAX_HEADER_SIZE = 16 * 1024
MAX_BODY_SIZE = 1024 * 1024
IDLE_TIMEOUT = 30.0

TEXT_XML = "text/xml; charset=utf-8"
TEXT_PLAIN = "text/plain; charset=utf-8"

_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    500: "Internal Server Error",
}


@dataclass
class HttpRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def keep_alive(self) -> bool:
        return self.headers.get("connection", "").lower() != "close"


@dataclass
class HttpResponse:
    status: int = 200
    body: bytes = b""
    content_type: str = TEXT_PLAIN

    @classmethod
    def text(cls, text: str, content_type: str = TEXT_PLAIN) -> HttpResponse:
        return cls(200, text.encode("utf-8"), content_type)

    @classmethod
    def error(cls, status: int) -> HttpResponse:
        return cls(status, _REASONS.get(status, "Error").encode("utf-8"))

    def encode(self, keep_alive: bool = True) -> bytes:
        head = [
            f"HTTP/1.1 {self.status} {_REASONS.get(self.status, 'Unknown')}",
            f"Content-Type: {self.content_type}",
            f"Content-Length: {len(self.body)}",
            f"Connection: {'keep-alive' if keep_alive else 'close'}",
        ]
        return ("\r\n".join(head) + "\r\n\r\n").encode("latin-1") + self.body


class BadRequestError(Exception):
    """The request could not be parsed."""

    def __init__(self, status: int = 400) -> None:
        super().__init__(_REASONS.get(status, "Bad Request"))
        self.status = status


RouteHandler = Callable[[HttpRequest], Awaitable[HttpResponse]]


def load_descriptors(
    device_uuid: str, friendly_name: str, model_name: str, resource_dir: Path = RESOURCE_DIR
) -> dict[str, str]:
    """Read the XML descriptors once, with the device identity filled in."""
    description = (resource_dir / "description.xml").read_text(encoding="utf-8")
    description = (
        description.replace("{{UUID}}", device_uuid)
        .replace("{{NAME}}", escape(friendly_name))
        .replace("{{MODEL}}", escape(model_name))
    )
    return {
        "description": description,
        "control": (resource_dir / "NirvanaControl.xml").read_text(encoding="utf-8"),
        "transport": (resource_dir / "AVTransport.xml").read_text(encoding="utf-8"),
    }


async def read_request(reader: asyncio.StreamReader) -> HttpRequest | None:
    """
    Read one request from the stream.

    Returns:
        The request, or None if the peer closed the connection cleanly.

    Raises:
        BadRequestError: If the request is malformed or too large.
    """
    try:
        head = await reader.readuntil(b"\r\n\r\n")
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            return None
        raise BadRequestError() from None
    except asyncio.LimitOverrunError:
        raise BadRequestError(413) from None

    lines = head.decode("latin-1").split("\r\n")
    parts = lines[0].split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise BadRequestError()
    method, target, _version = parts

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise BadRequestError()
        headers[name.strip().lower()] = value.strip()

    try:
        length = int(headers.get("content-length", "0"))
    except ValueError:
        raise BadRequestError() from None
    if length < 0:
        raise BadRequestError()
    if length > MAX_BODY_SIZE:
        raise BadRequestError(413)

    body = await reader.readexactly(length) if length else b""
    path = target.split("?", 1)[0]
    return HttpRequest(method=method.upper(), path=path, headers=headers, body=body)


class DescriptorHTTPServer:
    """
    HTTP server for the DLNA descriptor surface.

    Attributes:
        host: The host address to bind to.
        hub: Receives upgraded control sessions.
    """

    def __init__(
        self,
        hub: ControlSessionHub,
        device_uuid: str,
        host: str = "0.0.0.0",
        friendly_name: str = "Living Room TV",
        model_name: str = "Apple TV",
        log_dir: Path | None = None,
    ) -> None:
        self.hub = hub
        self.host = host
        self.port = 0
        self.log_dir = log_dir
        self._descriptors = load_descriptors(device_uuid, friendly_name, model_name)

        self._server: asyncio.Server | None = None
        self._running = False
        self._connection_tasks: set[asyncio.Task[None]] = set()

        # Route table: path -> (allowed methods or None for any, handler)
        self._routes: dict[str, tuple[frozenset[str] | None, RouteHandler]] = {
            "/description.xml": (None, self._handle_description),
            "/dlna/NirvanaControl.xml": (None, self._handle_control_scpd),
            "/dlna/AVTransport.xml": (frozenset({"GET"}), self._handle_transport_scpd),
            "/AVTransport/action": (frozenset({"POST"}), self._handle_transport_action),
            "/AVTransport/event": (None, self._handle_transport_event),
            "/debug/log": (None, self._handle_debug_log),
            "/debug/old": (None, self._handle_debug_old),
        }

    async def start(self, port: int = 9958) -> bool:
        """
        Start accepting connections on ``port``.

        Returns:
            False if the port could not be bound (feature unavailable).
        """
        if self._running:
            logger.warning("Descriptor server already running")
            return True

        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                host=self.host,
                port=port,
                reuse_address=True,
                limit=MAX_HEADER_SIZE,
            )
        except OSError as e:
            logger.warning("Descriptor server unavailable (port %d): %s", port, e)
            return False

        sockets = self._server.sockets or ()
        self.port = sockets[0].getsockname()[1] if sockets else port
        self._running = True
        logger.info("Descriptor server listening on %s:%d", self.host, self.port)
        return True

    async def stop(self) -> None:
        """Stop the server and close all connections, sessions included."""
        if not self._running:
            return

        logger.info("Stopping descriptor server...")
        self._running = False

        if self._server:
            self._server.close()

        for task in list(self._connection_tasks):
            task.cancel()
        if self._connection_tasks:
            await asyncio.gather(*self._connection_tasks, return_exceptions=True)
            self._connection_tasks.clear()

        if self._server:
            await self._server.wait_closed()
            self._server = None

        logger.info("Descriptor server stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connection_tasks.add(task)

        peername = writer.get_extra_info("peername")
        remote_addr = f"{peername[0]}:{peername[1]}" if peername else "unknown"

        try:
            while self._running:
                try:
                    request = await asyncio.wait_for(read_request(reader), timeout=IDLE_TIMEOUT)
                except BadRequestError as e:
                    logger.debug("Bad request from %s: %s", remote_addr, e)
                    writer.write(HttpResponse.error(e.status).encode(keep_alive=False))
                    await writer.drain()
                    break
                except asyncio.TimeoutError:
                    break

                if request is None:
                    break

                logger.debug("%s %s from %s", request.method, request.path, remote_addr)

                if request.path == UPGRADE_PATH:
                    await self._run_control_session(reader, writer)
                    return

                response = await self._dispatch(request)
                writer.write(response.encode(keep_alive=request.keep_alive))
                await writer.drain()

                if not request.keep_alive:
                    break
        except asyncio.CancelledError:
            logger.debug("Connection handler cancelled for %s", remote_addr)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug("Connection from %s dropped: %s", remote_addr, e)
        finally:
            if task is not None:
                self._connection_tasks.discard(task)
            if not writer.is_closing():
                writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _dispatch(self, request: HttpRequest) -> HttpResponse:
        route = self._routes.get(request.path)
        if route is None:
            return HttpResponse.error(404)

        methods, handler = route
        if methods is not None and request.method not in methods:
            return HttpResponse.error(405)

        try:
            return await handler(request)
        except Exception as e:
            logger.exception("Error handling %s %s: %s", request.method, request.path, e)
            return HttpResponse.error(500)

    async def _run_control_session(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Answer the upgrade and pump frames into the hub until the peer leaves."""
        writer.write(
            (
                "HTTP/1.1 101 Switching Protocols\r\n"
                "Connection: Upgrade\r\n"
                f"Upgrade: {UPGRADE_PROTOCOL}\r\n"
                "\r\n"
            ).encode("latin-1")
        )
        await writer.drain()

        session = ControlSession(writer)
        self.hub.on_session_open(session)
        try:
            while not session.is_closed:
                try:
                    frame = await read_frame(reader)
                except asyncio.IncompleteReadError:
                    break
                except FrameError as e:
                    logger.warning("Closing control session %s: %s", session, e)
                    break
                await self.hub.on_frame(session, frame)
        finally:
            self.hub.on_session_close(session)
            await session.close()

    # -------------------------------------------------------------------------
    # Route handlers
    # -------------------------------------------------------------------------

    async def _handle_description(self, request: HttpRequest) -> HttpResponse:
        return HttpResponse.text(self._descriptors["description"], TEXT_XML)

    async def _handle_control_scpd(self, request: HttpRequest) -> HttpResponse:
        return HttpResponse.text(self._descriptors["control"], TEXT_XML)

    async def _handle_transport_scpd(self, request: HttpRequest) -> HttpResponse:
        return HttpResponse.text(self._descriptors["transport"], TEXT_XML)

    async def _handle_transport_action(self, request: HttpRequest) -> HttpResponse:
        text = request.body.decode("utf-8", errors="replace")
        logger.debug("AVTransport action: %s", text)
        return HttpResponse.text(text)

    async def _handle_transport_event(self, request: HttpRequest) -> HttpResponse:
        return HttpResponse.error(500)

    async def _handle_debug_log(self, request: HttpRequest) -> HttpResponse:
        return self._serve_log(latest_log_path(self.log_dir) if self.log_dir else None)

    async def _handle_debug_old(self, request: HttpRequest) -> HttpResponse:
        return self._serve_log(oldest_log_path(self.log_dir) if self.log_dir else None)

    def _serve_log(self, path: Path | None) -> HttpResponse:
        if path is None:
            return HttpResponse.error(500)
        return HttpResponse.text(path.read_text(encoding="utf-8", errors="replace"))
