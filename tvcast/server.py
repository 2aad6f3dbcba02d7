"""
tvcast - Main Server Module

This module contains the CastServer class that wires all casting components
together and manages their lifecycle. It is the only place where components
are constructed; everything else receives its collaborators by injection.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from pathlib import Path

from tvcast.config import CastConfig, get_or_create_device_uuid
from tvcast.core.errors import Result
from tvcast.core.events import EventBus, FeatureUnavailableEvent
from tvcast.core.models import Device
from tvcast.dlna.descriptor import DescriptorHTTPServer
from tvcast.dlna.hub import ControlSessionHub
from tvcast.player.headless import HeadlessPlayer, LoggingDanmaku
from tvcast.player.registry import DeviceRegistry
from tvcast.player.router import DanmakuDisplay, PlaybackCommandRouter, Player
from tvcast.protocol.connection import DeviceConnectionManager
from tvcast.protocol.discovery import DeviceDiscoveryClient
from tvcast.protocol.ssdp import SSDPResponder
from tvcast.receiver.service import CastReceiverService

logger = logging.getLogger(__name__)


class CastServer:
    """
    Composition root for the casting subsystem.

    The server manages:
    - SSDP responder (UDP 1900) announcing the DLNA renderer
    - Descriptor HTTP server with the control-session upgrade
    - Control session hub fanning play state out to the mobile app
    - Cast receiver (HTTP command API, mDNS, UDP beacon)
    - Outbound device discovery and connections
    - Playback command router, the only caller of the player

    ``start`` and ``stop`` are idempotent. The ``enabled`` flag of the
    configuration is read when ``start`` is called; when it is off nothing
    binds a socket.
    """

    def __init__(
        self,
        config: CastConfig | None = None,
        *,
        player: Player | None = None,
        danmaku: DanmakuDisplay | None = None,
        event_bus: EventBus | None = None,
        device_uuid: str | None = None,
    ) -> None:
        """
        Initialize the cast server.

        Args:
            config: Loaded configuration (defaults if omitted).
            player: Media player collaborator; a logging stand-in if omitted.
            danmaku: Danmaku overlay collaborator.
            event_bus: Bus shared by all components (created if omitted).
            device_uuid: Device identity; read from/persisted to the uuid file if omitted.
        """
        self.config = config or CastConfig()
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.device_uuid = device_uuid or get_or_create_device_uuid(Path(self.config.uuid_file))

        if player is None:
            headless = HeadlessPlayer()
            player = headless
            danmaku = danmaku or LoggingDanmaku()
        else:
            headless = None

        self.router = PlaybackCommandRouter(
            player,
            self.event_bus,
            danmaku=danmaku,
            default_volume=self.config.default_volume,
        )
        if headless is not None:
            headless.on_state = self.router.on_player_state_changed

        # DLNA renderer
        self.hub = ControlSessionHub(self.router)
        self.descriptor_server = DescriptorHTTPServer(
            self.hub,
            self.device_uuid,
            host=self.config.host,
            friendly_name=self.config.friendly_name,
            model_name=self.config.model_name,
            log_dir=Path(self.config.log_dir),
        )
        self.ssdp = SSDPResponder(
            self.device_uuid,
            http_port=self.config.descriptor_port,
            host=self.config.host,
        )

        # Cast receiver
        self.receiver = CastReceiverService(
            self.event_bus,
            self.device_uuid,
            host=self.config.host,
            port=self.config.receiver_port,
            beacon_port=self.config.beacon_port,
            device_name=self.config.friendly_name,
            device_model=self.config.model_name,
            version=self.config.version,
            mdns_service_type=self.config.mdns_service_type,
            mdns_service_name=self.config.mdns_service_name,
        )

        # Outbound casting
        self.registry = DeviceRegistry()
        self.discovery = DeviceDiscoveryClient()
        self.connections = DeviceConnectionManager(
            self.event_bus,
            registry=self.registry,
            connect_timeout=self.config.connect_timeout,
            handshake_timeout=self.config.handshake_timeout,
            request_timeout=self.config.request_timeout,
        )

        # Server state
        self._running = False
        self._attached = False
        self._shutdown_event: asyncio.Event | None = None

    async def start(self) -> bool:
        """
        Start all components.

        Returns:
            False if casting is disabled by configuration.
        """
        if self._running:
            return True

        if not self.config.enabled:
            logger.info("Casting disabled by configuration, nothing started")
            return False

        logger.info("Starting cast server (device %s)", self.device_uuid)
        self._running = True
        self._shutdown_event = asyncio.Event()

        if not self._attached:
            await self.router.attach()
            await self.hub.attach(self.event_bus)
            await self.receiver.attach()
            self._attached = True

        if not await self.descriptor_server.start(self.config.descriptor_port):
            await self._unavailable("descriptor-http", f"cannot bind port {self.config.descriptor_port}")

        if not await self.ssdp.start(self.config.advertise_interval):
            await self._unavailable("ssdp", "cannot bind SSDP port 1900")

        await self.receiver.start()

        logger.info(
            "Cast server started | DLNA: port %d | Receiver: port %d",
            self.config.descriptor_port,
            self.config.receiver_port,
        )
        return True

    async def stop(self) -> None:
        """Stop all components gracefully. Safe to call repeatedly."""
        if not self._running:
            return

        logger.info("Stopping cast server...")
        self._running = False

        await self.receiver.stop()
        await self.ssdp.stop()
        await self.descriptor_server.stop()
        await self.connections.disconnect_all()

        await self.receiver.detach()
        await self.hub.detach()
        await self.router.detach()
        self._attached = False

        if self._shutdown_event:
            self._shutdown_event.set()

        logger.info("Cast server stopped")

    async def run(self) -> None:
        """
        Run the server until shutdown is requested.

        This method starts all components and waits for a shutdown signal
        (SIGINT or SIGTERM).
        """
        if not await self.start():
            return

        loop = asyncio.get_running_loop()

        def handle_signal() -> None:
            logger.info("Shutdown signal received")
            if self._shutdown_event:
                self._shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, handle_signal)
            except NotImplementedError:
                # Signal handlers not supported on Windows
                pass

        if self._shutdown_event:
            await self._shutdown_event.wait()

        await self.stop()

    async def discover_devices(self, timeout: float | None = None) -> Result[list[Device]]:
        """
        Run one discovery window and merge the result into the registry.

        Devices not seen in this window (and not connected) are evicted.
        """
        window_start = time.time()
        result = await self.discovery.discover(
            timeout if timeout is not None else self.config.discovery_timeout
        )
        if result.ok and result.value is not None:
            await self.connections.apply_discovery(result.value, window_start)
        return result

    @property
    def is_running(self) -> bool:
        return self._running

    async def _unavailable(self, feature: str, reason: str) -> None:
        logger.warning("Feature unavailable: %s (%s)", feature, reason)
        await self.event_bus.publish(FeatureUnavailableEvent(feature=feature, reason=reason))
