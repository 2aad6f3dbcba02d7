"""
DLNA MediaRenderer emulation.

Components:
- DescriptorHTTPServer: descriptor documents and the /projection upgrade
- ControlSessionHub: live control sessions with the mobile app
"""

from tvcast.dlna.descriptor import DescriptorHTTPServer
from tvcast.dlna.hub import ControlSessionHub

__all__ = [
    "ControlSessionHub",
    "DescriptorHTTPServer",
]
