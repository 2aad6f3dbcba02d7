"""
UDP discovery beacon for the cast receiver.

Phones that do not use mDNS multicast an ``M-SEARCH`` mentioning
``bilibili-cast``; we answer unicast with the receiver's info URL. The beacon
listens on its own port, separate from the DLNA SSDP responder.

Response:
    HTTP/1.1 200 OK
    CACHE-CONTROL: max-age=1800
    LOCATION: http://<ip>:<receiver_port>/cast/info
    SERVER: Apple TV/1.0 UPnP/1.0 Bilibili-Cast/1.0
    ST: bilibili-cast:receiver
    USN: uuid:<uuid>::bilibili-cast:receiver
"""

from __future__ import annotations

import asyncio
import logging
import socket
from functools import partial
from typing import Callable

from tvcast.core.network import advertised_host
from tvcast.protocol.ssdp import open_multicast_socket

logger = logging.getLogger(__name__)

BEACON_PORT = 9960
SEARCH_MARKER = b"M-SEARCH"
SERVICE_MARKER = b"bilibili-cast"
RECEIVER_ST = "bilibili-cast:receiver"
BEACON_SERVER = "Apple TV/1.0 UPnP/1.0 Bilibili-Cast/1.0"


def build_beacon_response(ip: str, receiver_port: int, device_uuid: str) -> bytes:
    lines = [
        "HTTP/1.1 200 OK",
        "CACHE-CONTROL: max-age=1800",
        f"LOCATION: http://{ip}:{receiver_port}/cast/info",
        f"SERVER: {BEACON_SERVER}",
        f"ST: {RECEIVER_ST}",
        f"USN: uuid:{device_uuid}::{RECEIVER_ST}",
    ]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


class CastBeaconProtocol(asyncio.DatagramProtocol):
    """Answers cast-receiver searches; everything else is dropped."""

    def __init__(self, device_uuid: str, receiver_port: int, host: str = "0.0.0.0") -> None:
        self.device_uuid = device_uuid
        self.receiver_port = receiver_port
        self.host = host
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:  # type: ignore[override]
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if SEARCH_MARKER not in data or SERVICE_MARKER not in data:
            return

        ip = advertised_host(self.host, addr[0])
        if self.transport:
            self.transport.sendto(build_beacon_response(ip, self.receiver_port, self.device_uuid), addr)
        logger.debug("Sent cast beacon response to %s:%d", addr[0], addr[1])

    def error_received(self, exc: Exception) -> None:
        logger.warning("Cast beacon error: %s", exc)


class CastBeacon:
    """Lifecycle wrapper for the beacon's UDP endpoint."""

    def __init__(
        self,
        device_uuid: str,
        receiver_port: int,
        port: int = BEACON_PORT,
        host: str = "0.0.0.0",
        socket_factory: Callable[[], socket.socket] | None = None,
    ) -> None:
        self.device_uuid = device_uuid
        self.receiver_port = receiver_port
        self.port = port
        self.host = host
        self._socket_factory = socket_factory or partial(open_multicast_socket, port=port)
        self._transport: asyncio.DatagramTransport | None = None

    async def start(self) -> bool:
        """
        Start answering beacon searches.

        Returns:
            False if the beacon port could not be bound.
        """
        if self._transport is not None:
            return True

        loop = asyncio.get_running_loop()
        try:
            sock = self._socket_factory()
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: CastBeaconProtocol(self.device_uuid, self.receiver_port, self.host),
                sock=sock,
            )
        except OSError as e:
            logger.warning("Cast beacon unavailable (port %d): %s", self.port, e)
            return False

        logger.info("Cast beacon listening on port %d", self.port)
        return True

    async def stop(self) -> None:
        if self._transport is None:
            return
        self._transport.close()
        self._transport = None
        logger.info("Cast beacon stopped")

    @property
    def is_running(self) -> bool:
        return self._transport is not None
