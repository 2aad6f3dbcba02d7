"""
Event Bus for tvcast.

Typed pub/sub channels for cross-component notifications. Handlers subscribe
to an event class and receive every published instance of that class (or of
a subclass). Events are frozen dataclasses, so every subscriber gets the same
immutable snapshot.

Event types:
- PlayStateChangedEvent: local player (or a mirrored remote device) changed play state
- PlaybackProgressEvent: position/duration update, local or mirrored
- CastingStateChangedEvent: cast receiver started/stopped receiving
- VideoUrlReceivedEvent: a phone pushed a generic video URL
- ContentIdReceivedEvent: a phone pushed app content (aid/cid)
- CastCommandEvent: a phone sent a transport command
- DeviceStatusChangedEvent: a remote device changed status
- DevicePlaybackStateEvent: a remote device reported its playback state
- FeatureUnavailableEvent: a listener could not be started

Usage:
    bus = EventBus()

    async def on_play_state(event: PlayStateChangedEvent) -> None:
        print(f"now {event.play_state.name}")

    await bus.subscribe(PlayStateChangedEvent, on_play_state)
    await bus.publish(PlayStateChangedEvent(play_state=PlayState.PLAYING))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from tvcast.core.models import (
    CastCommand,
    CastSource,
    Device,
    DeviceStatus,
    PlaybackState,
    PlayState,
    VideoMetadata,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

# Type alias for event handlers
EventHandler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class Event:
    """Base class for all events."""

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for logging/diagnostics."""
        return {"type": type(self).__name__}


@dataclass(frozen=True)
class PlayStateChangedEvent(Event):
    """
    Fired when a play state changes.

    ``device_id`` is None for the local player and set when the state is
    mirrored from a remote device.
    """

    play_state: PlayState = PlayState.STOPPED
    device_id: str | None = None

    @property
    def is_local(self) -> bool:
        return self.device_id is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": type(self).__name__, "playState": int(self.play_state)}
        if self.device_id is not None:
            data["deviceId"] = self.device_id
        return data


@dataclass(frozen=True)
class PlaybackProgressEvent(Event):
    """Fired with whole-second progress; ``device_id`` as for PlayStateChangedEvent."""

    duration: int = 0
    position: int = 0
    device_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "duration": self.duration, "position": self.position}


@dataclass(frozen=True)
class CastingStateChangedEvent(Event):
    """Fired when the cast receiver starts or stops receiving."""

    is_receiving: bool = False
    source: CastSource = CastSource.OTHER

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "isReceiving": self.is_receiving,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class VideoUrlReceivedEvent(Event):
    """A phone pushed a generic video URL to the cast receiver."""

    url: str = ""
    title: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentIdReceivedEvent(Event):
    """A phone pushed app content identifiers to the cast receiver."""

    aid: int = 0
    cid: int = 0
    epid: int = 0
    metadata: VideoMetadata | None = None


@dataclass(frozen=True)
class CastCommandEvent(Event):
    """A transport command arrived from a cast source."""

    command: CastCommand = field(default_factory=CastCommand)
    source: CastSource = CastSource.OTHER


@dataclass(frozen=True)
class DeviceStatusChangedEvent(Event):
    """A remote device moved to a new status."""

    device: Device | None = None
    status: DeviceStatus = DeviceStatus.AVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "deviceId": self.device.id if self.device else "",
            "status": self.status.value,
        }


@dataclass(frozen=True)
class DevicePlaybackStateEvent(Event):
    """A remote device reported its playback state."""

    device_id: str = ""
    state: PlaybackState = field(default_factory=PlaybackState)
    request_id: str | None = None


@dataclass(frozen=True)
class FeatureUnavailableEvent(Event):
    """A component could not start; the rest of the service keeps running."""

    feature: str = ""
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "feature": self.feature, "reason": self.reason}


class EventBus:
    """
    Async pub/sub bus with one subscriber list per event class.

    Supports:
    - Multiple handlers per event class
    - Base-class subscriptions (subscribing to Event receives everything)
    - Async handlers
    - Error isolation (one handler failing doesn't affect others)
    """

    def __init__(self) -> None:
        self._handlers: dict[type[Event], list[EventHandler]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(
        self, event_type: type[E], handler: Callable[[E], Awaitable[None]]
    ) -> None:
        """
        Subscribe to events of a specific class.

        Args:
            event_type: Event class to subscribe to.
            handler: Async function to call when a matching event is published.
        """
        async with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            logger.debug("Subscribed to %s: %s", event_type.__name__, handler)

    async def unsubscribe(
        self, event_type: type[E], handler: Callable[[E], Awaitable[None]]
    ) -> bool:
        """
        Unsubscribe a handler from an event class.

        Returns True if handler was found and removed.
        """
        async with self._lock:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)
                logger.debug("Unsubscribed from %s: %s", event_type.__name__, handler)
                return True
            return False

    async def publish(self, event: Event) -> int:
        """
        Publish an event to all subscribed handlers.

        Args:
            event: The event to publish.

        Returns:
            Number of handlers that received the event.
        """
        async with self._lock:
            matching_handlers: list[EventHandler] = []
            for klass in type(event).__mro__:
                matching_handlers.extend(self._handlers.get(klass, ()))

        # Call handlers outside of lock
        handlers_called = 0
        for handler in matching_handlers:
            try:
                await handler(event)
                handlers_called += 1
            except Exception as e:
                logger.exception("Error in event handler for %s: %s", type(event).__name__, e)

        if handlers_called > 0:
            logger.debug("Published %s to %d handlers", type(event).__name__, handlers_called)

        return handlers_called

    def subscriber_count(self, event_type: type[Event]) -> int:
        return len(self._handlers.get(event_type, ()))
