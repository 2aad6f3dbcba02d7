"""
tvcast - Local-network casting control plane for TV clients.

tvcast emulates the DLNA renderer a companion mobile app expects, runs a
cast receiver that phones push videos to, and can itself discover and drive
other cast-capable TVs.
"""

__version__ = "0.1.0"
__license__ = "GPL-2.0"

from tvcast.server import CastServer

__all__ = ["CastServer", "__version__"]
