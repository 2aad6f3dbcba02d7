"""
Protocol implementations for tvcast.

This package contains the network protocol handlers:
- ssdp: DLNA SSDP responder (UDP 1900)
- nva: control-session frame codec for the mobile app
- discovery: outbound discovery of peer cast devices
- connection: outbound device sessions (JSON over TCP)
"""

from tvcast.protocol.connection import DeviceConnectionManager
from tvcast.protocol.discovery import DeviceDiscoveryClient
from tvcast.protocol.ssdp import SSDPResponder

__all__ = [
    "DeviceConnectionManager",
    "DeviceDiscoveryClient",
    "SSDPResponder",
]
