"""LAN address helpers shared by the discovery responders."""

from __future__ import annotations

import logging
import socket

logger = logging.getLogger(__name__)


def detect_lan_ip(peer: str | None = None) -> str:
    """
    Detect the local IPv4 address that routes to ``peer``.

    Uses the UDP socket trick: "connect" a datagram socket (no packet is
    actually sent) and read back which local interface was chosen. Without
    a peer, a public address stands in for "the default route".
    """
    target = peer or "8.8.8.8"
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((target, 80))
            local_ip = s.getsockname()[0]
            if local_ip and local_ip != "0.0.0.0":
                return local_ip
    except OSError as e:
        logger.debug("Could not determine local IP for %s: %s", target, e)
    return "127.0.0.1"


def advertised_host(bound_host: str, peer: str | None = None) -> str:
    """Address to put in LOCATION headers for a socket bound to ``bound_host``."""
    if bound_host and bound_host not in ("0.0.0.0", "::", ""):
        return bound_host
    return detect_lan_ip(peer)
