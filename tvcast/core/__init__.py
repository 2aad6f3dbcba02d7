"""
Core module for tvcast.

This package contains the transport-independent pieces shared by every
casting component: the data model, the error taxonomy and the event bus.
"""

from tvcast.core.errors import CastError, Result
from tvcast.core.events import Event, EventBus

__all__ = [
    "CastError",
    "Event",
    "EventBus",
    "Result",
]
