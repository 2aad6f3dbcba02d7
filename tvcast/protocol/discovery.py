"""
Peer cast device discovery.

This module implements the outbound side of cast: finding other TVs on the
LAN that speak the cloud-TV device protocol. One ``M-SEARCH`` datagram is
multicast with the cloud-TV service type, and every reply arriving within
the discovery window is parsed into a Device.

Reply format (SSDP-style, CRLF separated ``KEY: value`` headers):
    LOCATION  - http://<ip>:<port>/...    (required; port defaults to 9958)
    USN       - <device-id>::<suffix>      (required; id is the part before ``::``)
    SERVER    - display name
    MODEL     - device model

Replies that do not mention the service type or lack a required header are
dropped without error.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from urllib.parse import urlsplit

from tvcast.core.errors import NetworkError, Result
from tvcast.core.models import Device, DeviceCapabilities, DeviceStatus
from tvcast.protocol.ssdp import SSDP_MULTICAST_ADDR, SSDP_PORT

logger = logging.getLogger(__name__)

CLOUD_TV_SERVICE_TYPE = "bilibili:cloudtv:1"
DEFAULT_DEVICE_PORT = 9958
DEFAULT_DEVICE_NAME = "Cloud TV"
DEFAULT_DEVICE_MODEL = "Unknown"


def build_search(service_type: str = CLOUD_TV_SERVICE_TYPE) -> bytes:
    lines = [
        "M-SEARCH * HTTP/1.1",
        f"HOST: {SSDP_MULTICAST_ADDR}:{SSDP_PORT}",
        'MAN: "ssdp:discover"',
        "MX: 3",
        f"ST: {service_type}",
        "USER-AGENT: tvcast/1.0",
    ]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


def _parse_headers(text: str) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in text.split("\r\n"):
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            continue
        headers[key.strip().upper()] = value.strip()
    return headers


def parse_discovery_reply(
    data: bytes,
    address: str,
    service_type: str = CLOUD_TV_SERVICE_TYPE,
    now: float | None = None,
) -> Device | None:
    """
    Parse one discovery reply into a Device.

    Returns:
        The device, or None if the reply is not a well-formed cloud-TV reply.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None

    if service_type not in text:
        return None

    headers = _parse_headers(text)
    location = headers.get("LOCATION")
    usn = headers.get("USN")
    if not location or not usn:
        return None

    device_id = usn.split("::", 1)[0].strip()
    if not device_id:
        return None

    try:
        port = urlsplit(location).port or DEFAULT_DEVICE_PORT
    except ValueError:
        port = DEFAULT_DEVICE_PORT

    return Device(
        id=device_id,
        name=headers.get("SERVER") or DEFAULT_DEVICE_NAME,
        model=headers.get("MODEL") or DEFAULT_DEVICE_MODEL,
        address=address,
        port=port,
        capabilities=DeviceCapabilities(),
        status=DeviceStatus.AVAILABLE,
        last_seen=time.time() if now is None else now,
    )


class DiscoveryReplyProtocol(asyncio.DatagramProtocol):
    """Collects discovery replies, keyed by device id."""

    def __init__(self, service_type: str) -> None:
        self.service_type = service_type
        self.devices: dict[str, Device] = {}
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:  # type: ignore[override]
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        device = parse_discovery_reply(data, addr[0], self.service_type)
        if device is None:
            logger.debug("Dropping malformed discovery reply from %s:%d", addr[0], addr[1])
            return

        if device.id not in self.devices:
            logger.info("Discovered device: %s at %s:%d", device.name, device.address, device.port)
        self.devices[device.id] = device

    def error_received(self, exc: Exception) -> None:
        logger.debug("Discovery socket error: %s", exc)


class DeviceDiscoveryClient:
    """
    One-shot discovery of peer cast devices.

    Every ``discover`` call uses a fresh ephemeral socket, so concurrent
    calls do not see each other's replies.
    """

    def __init__(
        self,
        service_type: str = CLOUD_TV_SERVICE_TYPE,
        target: tuple[str, int] = (SSDP_MULTICAST_ADDR, SSDP_PORT),
    ) -> None:
        self.service_type = service_type
        self.target = target

    async def discover(self, timeout: float = 5.0) -> Result[list[Device]]:
        """
        Send one search and collect replies for ``timeout`` seconds.

        Returns:
            Result holding the deduplicated devices (possibly none), or a
            NetworkError if the search could not be sent at all.
        """
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: DiscoveryReplyProtocol(self.service_type),
                local_addr=("0.0.0.0", 0),
                family=socket.AF_INET,
            )
        except OSError as e:
            logger.warning("Device discovery unavailable: %s", e)
            return Result.failure(NetworkError(e))

        try:
            sock = transport.get_extra_info("socket")
            if sock is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            transport.sendto(build_search(self.service_type), self.target)
            logger.debug("Sent device discovery search to %s:%d", *self.target)

            await asyncio.sleep(timeout)
        except OSError as e:
            logger.warning("Device discovery failed: %s", e)
            return Result.failure(NetworkError(e))
        finally:
            transport.close()

        devices = list(protocol.devices.values())
        logger.info("Device discovery completed: %d device(s) found", len(devices))
        return Result.success(devices)
