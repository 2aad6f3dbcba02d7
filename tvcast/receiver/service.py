"""
Cast receiver service.

Accepts casts pushed by phones: generic video URLs, app content ids and
transport commands, over an HTTP command API advertised through mDNS and a
UDP beacon. Tracks whether a cast is currently being received and from
which source; every change is published as a CastingStateChangedEvent.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import FastAPI

from tvcast.core.events import (
    CastCommandEvent,
    CastingStateChangedEvent,
    ContentIdReceivedEvent,
    EventBus,
    FeatureUnavailableEvent,
    PlayStateChangedEvent,
    VideoUrlReceivedEvent,
)
from tvcast.core.models import (
    CastCommand,
    CastSource,
    Pause,
    PlayState,
    Resume,
    Seek,
    SetVolume,
    Stop,
    VideoMetadata,
)
from tvcast.receiver.beacon import BEACON_PORT, CastBeacon
from tvcast.receiver.mdns import CAPABILITIES, MdnsAdvertiser
from tvcast.receiver.routes import register_cast_routes
from tvcast.receiver.server import ReceiverHTTPServer

logger = logging.getLogger(__name__)

RECEIVER_PORT = 9959


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return float(value)


class CastReceiverService:
    """
    Receiving side of phone-to-TV casting.

    Attributes:
        is_receiving: Whether a cast is currently active.
        current_source: Where the active (or last) cast came from.
    """

    def __init__(
        self,
        event_bus: EventBus,
        device_uuid: str,
        host: str = "0.0.0.0",
        port: int = RECEIVER_PORT,
        beacon_port: int = BEACON_PORT,
        device_name: str = "Living Room TV",
        device_model: str = "Apple TV",
        version: str = "1.0",
        mdns_service_type: str = "_bilibili-cast._tcp.local.",
        mdns_service_name: str = "ATV-Bilibili-Cast-Receiver",
    ) -> None:
        self.event_bus = event_bus
        self.device_name = device_name
        self.device_model = device_model
        self.version = version

        self.is_receiving = False
        self.current_source = CastSource.OTHER
        self._running = False

        self.app = FastAPI(
            title="tvcast receiver",
            description="Cast receiver command API",
            version=version,
        )
        register_cast_routes(self.app, self)

        self.http_server = ReceiverHTTPServer(self.app, host=host, port=port)
        self.mdns = MdnsAdvertiser(
            port=port,
            host=host,
            model=device_model,
            version=version,
            service_type=mdns_service_type,
            service_name=mdns_service_name,
        )
        self.beacon = CastBeacon(device_uuid, receiver_port=port, port=beacon_port, host=host)

    async def attach(self) -> None:
        """Follow the local player so a finished cast ends reception."""
        await self.event_bus.subscribe(PlayStateChangedEvent, self._on_play_state)

    async def detach(self) -> None:
        await self.event_bus.unsubscribe(PlayStateChangedEvent, self._on_play_state)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start the HTTP command server, then mDNS, then the beacon.

        A part that cannot start is reported as a FeatureUnavailableEvent;
        the others keep running.

        Returns:
            True if the HTTP command server is up.
        """
        if self._running:
            logger.warning("Cast receiver service already running")
            return True

        self._running = True

        http_ok = await self.http_server.start()
        if not http_ok:
            await self._unavailable("cast-http", f"cannot bind port {self.http_server.port}")

        if not await self.mdns.start():
            await self._unavailable("mdns", "mDNS advertisement failed")

        if not await self.beacon.start():
            await self._unavailable("cast-beacon", f"cannot bind port {self.beacon.port}")

        logger.info("Cast receiver service started")
        return http_ok

    async def stop(self) -> None:
        """Tear down in reverse order and end any active reception."""
        if not self._running:
            return

        self._running = False

        await self.beacon.stop()
        await self.mdns.stop()
        await self.http_server.stop()

        self.is_receiving = False
        await self._notify_state()

        logger.info("Cast receiver service stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Inbound casts (called by the HTTP routes)
    # -------------------------------------------------------------------------

    def info(self) -> dict[str, Any]:
        return {
            "deviceName": self.device_name,
            "deviceModel": self.device_model,
            "version": self.version,
            "capabilities": list(CAPABILITIES),
            "status": "receiving" if self.is_receiving else "ready",
        }

    def status(self) -> dict[str, Any]:
        return {"isReceiving": self.is_receiving, "source": self.current_source.value}

    async def handle_video_url(self, url: str, title: str, extra: dict[str, Any] | None = None) -> None:
        logger.info("Received video URL: %s (%s)", url, title)
        event = VideoUrlReceivedEvent(url=url, title=title, extra=dict(extra or {}))
        await self._begin_receiving(CastSource.COMPANION_APP)
        await self.event_bus.publish(event)

    async def handle_content_id(self, aid: int, cid: int, payload: dict[str, Any] | None = None) -> None:
        payload = payload or {}
        logger.info("Received app content: aid=%d cid=%d", aid, cid)

        epid = payload.get("epid", 0)
        if isinstance(epid, bool) or not isinstance(epid, int):
            epid = 0
        event = ContentIdReceivedEvent(
            aid=aid,
            cid=cid,
            epid=epid,
            metadata=VideoMetadata.from_payload(payload),
        )

        await self._begin_receiving(CastSource.COMPANION_APP)
        await self.event_bus.publish(event)

    async def handle_control(self, action: str, params: dict[str, Any]) -> None:
        """
        Map a control action onto a command.

        Unknown actions and actions with missing arguments are ignored.
        """
        logger.debug("Received control command: %s", action)

        command: CastCommand | None = None
        if action == "play":
            command = Resume()
        elif action == "pause":
            command = Pause()
        elif action == "stop":
            command = Stop()
            self.is_receiving = False
            await self._notify_state()
        elif action == "seek":
            seconds = _number(params.get("time"))
            if seconds is not None:
                command = Seek(position=seconds)
        elif action == "volume":
            level = _number(params.get("level"))
            if level is not None:
                command = SetVolume(level=level)

        if command is None:
            logger.debug("Ignoring control action %s", action)
            return

        await self.event_bus.publish(CastCommandEvent(command=command, source=self.current_source))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _begin_receiving(self, source: CastSource) -> None:
        self.is_receiving = True
        self.current_source = source
        await self._notify_state()

    async def _notify_state(self) -> None:
        await self.event_bus.publish(
            CastingStateChangedEvent(is_receiving=self.is_receiving, source=self.current_source)
        )

    async def _on_play_state(self, event: PlayStateChangedEvent) -> None:
        if not self.is_receiving or not event.is_local:
            return
        if event.play_state in (PlayState.STOPPED, PlayState.ENDED):
            logger.info("Player %s, cast reception ended", event.play_state.name.lower())
            self.is_receiving = False
            await self._notify_state()

    async def _unavailable(self, feature: str, reason: str) -> None:
        logger.warning("Feature unavailable: %s (%s)", feature, reason)
        await self.event_bus.publish(FeatureUnavailableEvent(feature=feature, reason=reason))
