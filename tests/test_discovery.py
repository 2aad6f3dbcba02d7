"""
Tests for tvcast.protocol.discovery (peer cast device discovery).
"""

from __future__ import annotations

import asyncio
import socket

from tvcast.core.errors import NetworkError
from tvcast.core.models import DeviceStatus
from tvcast.protocol.discovery import (
    CLOUD_TV_SERVICE_TYPE,
    DEFAULT_DEVICE_PORT,
    DeviceDiscoveryClient,
    DiscoveryReplyProtocol,
    build_search,
    parse_discovery_reply,
)


def make_reply(
    device_id: str = "tv-7f3a",
    location: str | None = "http://192.168.1.40:9958/description.xml",
    server: str = "Bedroom TV",
    model: str = "MiTV 4A",
) -> bytes:
    lines = ["HTTP/1.1 200 OK", f"ST: {CLOUD_TV_SERVICE_TYPE}"]
    if location is not None:
        lines.append(f"LOCATION: {location}")
    if device_id is not None:
        lines.append(f"USN: {device_id}::{CLOUD_TV_SERVICE_TYPE}")
    lines.append(f"SERVER: {server}")
    lines.append(f"MODEL: {model}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8")


# =============================================================================
# Parsing
# =============================================================================


class TestBuildSearch:
    """Tests for the search datagram."""

    def test_search_fields(self) -> None:
        """The search targets the cloud-TV service type."""
        data = build_search()
        assert data.startswith(b"M-SEARCH * HTTP/1.1\r\n")
        assert b'MAN: "ssdp:discover"' in data
        assert b"MX: 3" in data
        assert f"ST: {CLOUD_TV_SERVICE_TYPE}".encode() in data


class TestParseDiscoveryReply:
    """Tests for parse_discovery_reply."""

    def test_valid_reply(self) -> None:
        """All headers map onto the device."""
        device = parse_discovery_reply(make_reply(), "192.168.1.40", now=123.0)

        assert device is not None
        assert device.id == "tv-7f3a"
        assert device.name == "Bedroom TV"
        assert device.model == "MiTV 4A"
        assert device.address == "192.168.1.40"
        assert device.port == 9958
        assert device.status is DeviceStatus.AVAILABLE
        assert device.last_seen == 123.0

    def test_port_from_location(self) -> None:
        """The port comes from the LOCATION URL."""
        device = parse_discovery_reply(make_reply(location="http://192.168.1.40:12000/"), "192.168.1.40")
        assert device is not None
        assert device.port == 12000

    def test_default_port(self) -> None:
        """A LOCATION without port uses the default device port."""
        device = parse_discovery_reply(make_reply(location="http://192.168.1.40/"), "192.168.1.40")
        assert device is not None
        assert device.port == DEFAULT_DEVICE_PORT

    def test_missing_location_dropped(self) -> None:
        """Replies without LOCATION are dropped."""
        assert parse_discovery_reply(make_reply(location=None), "192.168.1.40") is None

    def test_other_service_dropped(self) -> None:
        """Replies for other service types are dropped."""
        data = make_reply().replace(CLOUD_TV_SERVICE_TYPE.encode(), b"upnp:rootdevice")
        assert parse_discovery_reply(data, "192.168.1.40") is None

    def test_garbage_dropped(self) -> None:
        """Undecodable data is dropped."""
        assert parse_discovery_reply(b"\xff\xfe\x00", "192.168.1.40") is None


class TestDiscoveryReplyProtocol:
    """Tests for reply collection."""

    def test_dedupes_by_id(self) -> None:
        """Repeated replies from one device yield one entry."""
        proto = DiscoveryReplyProtocol(CLOUD_TV_SERVICE_TYPE)

        proto.datagram_received(make_reply(), ("192.168.1.40", 1900))
        proto.datagram_received(make_reply(), ("192.168.1.40", 1900))
        proto.datagram_received(make_reply(device_id="tv-other"), ("192.168.1.41", 1900))
        proto.datagram_received(b"garbage", ("192.168.1.42", 1900))

        assert sorted(proto.devices) == ["tv-7f3a", "tv-other"]


# =============================================================================
# Client
# =============================================================================


class _FakeTvResponder(asyncio.DatagramProtocol):
    """Answers any search with two copies of a cloud-TV reply."""

    def __init__(self) -> None:
        self.transport: asyncio.DatagramTransport | None = None
        self.searches: list[bytes] = []

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self.searches.append(data)
        self.transport.sendto(make_reply(location="http://127.0.0.1:9958/"), addr)
        self.transport.sendto(make_reply(location="http://127.0.0.1:9958/"), addr)


class TestDeviceDiscoveryClient:
    """Tests for DeviceDiscoveryClient.discover."""

    async def test_discover_collects_replies(self) -> None:
        """Replies within the window are returned, deduplicated."""
        loop = asyncio.get_running_loop()
        transport, responder = await loop.create_datagram_endpoint(
            _FakeTvResponder, local_addr=("127.0.0.1", 0), family=socket.AF_INET
        )
        try:
            port = transport.get_extra_info("sockname")[1]
            client = DeviceDiscoveryClient(target=("127.0.0.1", port))

            result = await client.discover(timeout=0.3)
        finally:
            transport.close()

        assert result.ok
        assert [d.id for d in result.value] == ["tv-7f3a"]
        assert result.value[0].address == "127.0.0.1"
        assert len(responder.searches) == 1

    async def test_discover_empty_window(self) -> None:
        """No replies is a successful empty result."""
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0), family=socket.AF_INET
        )
        try:
            port = transport.get_extra_info("sockname")[1]
            result = await DeviceDiscoveryClient(target=("127.0.0.1", port)).discover(timeout=0.1)
        finally:
            transport.close()

        assert result.ok
        assert result.value == []

    async def test_socket_failure(self, monkeypatch) -> None:
        """A socket error is returned as a NetworkError."""
        loop = asyncio.get_running_loop()

        async def failing(*args, **kwargs):
            raise OSError("no network")

        monkeypatch.setattr(loop, "create_datagram_endpoint", failing)

        result = await DeviceDiscoveryClient().discover(timeout=0.1)

        assert not result.ok
        assert isinstance(result.error, NetworkError)
