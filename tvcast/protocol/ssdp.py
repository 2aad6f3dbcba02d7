"""
SSDP responder for the DLNA MediaRenderer role.

Mobile apps find the TV by multicasting ``M-SEARCH`` datagrams to
239.255.255.250:1900. Any datagram containing ``ssdp:discover`` is answered
with a unicast search response pointing at our device description. While
running we also announce ourselves with a ``NOTIFY ssdp:alive`` datagram on a
fixed interval.

Search response (unicast, CRLF separated):
    HTTP/1.1 200 OK
    LOCATION: http://<ip>:<port>/description.xml
    CACHE-CONTROL: max-age=30
    SERVER: ...
    USN: uuid:atvbilibili&<uuid>::upnp:rootdevice
    ST: upnp:rootdevice

Failure to bind port 1900 disables the responder only.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import struct
import time
from email.utils import formatdate
from typing import Callable

from tvcast.core.network import advertised_host

logger = logging.getLogger(__name__)

SSDP_MULTICAST_ADDR = "239.255.255.250"
SSDP_PORT = 1900

DISCOVERY_MARKER = b"ssdp:discover"

SEARCH_SERVER = "Linux/3.0.0, UPnP/1.0, Platinum/1.0.5.13"
NOTIFY_SERVER = "BilibiliDLNA/2.0 UPnP/1.0 BilibiliTV/1.0"
MEDIA_RENDERER_URN = "urn:schemas-upnp-org:device:MediaRenderer:1"

CACHE_MAX_AGE = 30
BOOT_ID = 1669443520
CONFIG_ID = 10177363


def build_search_response(ip: str, port: int, device_uuid: str, now: float | None = None) -> bytes:
    """Build the unicast answer to an ``M-SEARCH``."""
    lines = [
        "HTTP/1.1 200 OK",
        f"LOCATION: http://{ip}:{port}/description.xml",
        f"CACHE-CONTROL: max-age={CACHE_MAX_AGE}",
        f"SERVER: {SEARCH_SERVER}",
        "EXT:",
        f"BOOTID.UPNP.ORG: {BOOT_ID}",
        f"CONFIGID.UPNP.ORG: {CONFIG_ID}",
        f"USN: uuid:atvbilibili&{device_uuid}::upnp:rootdevice",
        "ST: upnp:rootdevice",
        f"DATE: {formatdate(now if now is not None else time.time(), usegmt=True)}",
    ]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def build_notify(ip: str, port: int, device_uuid: str) -> bytes:
    """Build the periodic ``ssdp:alive`` announcement."""
    lines = [
        "NOTIFY * HTTP/1.1",
        f"Host: {SSDP_MULTICAST_ADDR}:{SSDP_PORT}",
        f"Location: http://{ip}:{port}/description.xml",
        f"Cache-Control: max-age={CACHE_MAX_AGE}",
        f"Server: {NOTIFY_SERVER}",
        "NTS: ssdp:alive",
        f"USN: uuid:{device_uuid}::{MEDIA_RENDERER_URN}",
        f"NT: {MEDIA_RENDERER_URN}",
    ]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


class SSDPResponderProtocol(asyncio.DatagramProtocol):
    """
    Asyncio UDP protocol answering SSDP searches.

    Datagrams without the discovery marker are dropped silently.
    """

    def __init__(self, device_uuid: str, http_port: int, host: str = "0.0.0.0") -> None:
        self.device_uuid = device_uuid
        self.http_port = http_port
        self.host = host
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:  # type: ignore[override]
        self.transport = transport
        logger.info("SSDP responder listening on port %d", SSDP_PORT)

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if DISCOVERY_MARKER not in data:
            return

        client_ip = addr[0].removeprefix("::ffff:")
        logger.debug("SSDP discover from %s:%d", client_ip, addr[1])

        ip = advertised_host(self.host, client_ip)
        self._send(build_search_response(ip, self.http_port, self.device_uuid), addr)

    def _send(self, data: bytes, addr: tuple[str, int]) -> None:
        if self.transport:
            self.transport.sendto(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("SSDP responder error: %s", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc:
            logger.warning("SSDP responder connection lost: %s", exc)
        else:
            logger.info("SSDP responder stopped")


def open_multicast_socket(group: str = SSDP_MULTICAST_ADDR, port: int = SSDP_PORT) -> socket.socket:
    """
    Create a UDP socket bound to ``port`` and joined to ``group``.

    Raises:
        OSError: If the port is in use or the group cannot be joined.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind(("", port))
        membership = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class SSDPResponder:
    """
    High-level SSDP responder.

    Manages the multicast endpoint and the NOTIFY timer and provides an
    idempotent start/stop interface.
    """

    def __init__(
        self,
        device_uuid: str,
        http_port: int = 9958,
        host: str = "0.0.0.0",
        socket_factory: Callable[[], socket.socket] = open_multicast_socket,
    ) -> None:
        self.device_uuid = device_uuid
        self.http_port = http_port
        self.host = host
        self._socket_factory = socket_factory

        self._transport: asyncio.DatagramTransport | None = None
        self._protocol: SSDPResponderProtocol | None = None
        self._notify_task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self, advertise_every: float = 1.0) -> bool:
        """
        Start answering searches and announcing on ``advertise_every`` seconds.

        Returns:
            False if the multicast port could not be bound (feature unavailable).
        """
        if self._running:
            logger.warning("SSDP responder already running")
            return True

        loop = asyncio.get_running_loop()
        try:
            sock = self._socket_factory()
            self._transport, self._protocol = await loop.create_datagram_endpoint(
                lambda: SSDPResponderProtocol(self.device_uuid, self.http_port, self.host),
                sock=sock,
            )
        except OSError as e:
            logger.warning("SSDP responder unavailable (port %d): %s", SSDP_PORT, e)
            return False

        self._running = True
        self._notify_task = asyncio.create_task(self._notify_loop(advertise_every))
        logger.info("SSDP responder started (NOTIFY every %.1fs)", advertise_every)
        return True

    async def stop(self) -> None:
        """Stop the timer and close the socket. Safe to call repeatedly."""
        if not self._running:
            return

        self._running = False

        if self._notify_task:
            self._notify_task.cancel()
            try:
                await self._notify_task
            except asyncio.CancelledError:
                pass
            self._notify_task = None

        if self._transport:
            self._transport.close()
            self._transport = None
            self._protocol = None

        logger.info("SSDP responder stopped")

    async def _notify_loop(self, interval: float) -> None:
        while self._running:
            self.send_notify()
            await asyncio.sleep(interval)

    def send_notify(self) -> None:
        if self._transport is None:
            return
        ip = advertised_host(self.host)
        self._transport.sendto(
            build_notify(ip, self.http_port, self.device_uuid),
            (SSDP_MULTICAST_ADDR, SSDP_PORT),
        )

    @property
    def is_running(self) -> bool:
        return self._running
