"""
Cast receiver for phone-originated casts.

Components:
- CastReceiverService: receiving state and command mapping
- ReceiverHTTPServer: uvicorn wrapper for the command API
- MdnsAdvertiser: zeroconf service record
- CastBeacon: UDP discovery beacon
"""

from tvcast.receiver.service import CastReceiverService

__all__ = ["CastReceiverService"]
