"""
Device Registry - Central repository for known remote cast devices.

The registry tracks every device found by discovery or connected to by the
DeviceConnectionManager, indexed by the device id taken from the discovery
reply. Devices are immutable snapshots; every status change replaces the
stored instance.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterator

from tvcast.core.models import Device, DeviceStatus

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Central registry for remote cast devices.

    Status changes go through ``transition``, which only applies legal
    edges of the device lifecycle.

    Thread-safety: This class uses an asyncio lock for safe concurrent
    access from multiple coroutines.
    """

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, device: Device) -> Device:
        """
        Insert a device or refresh an existing entry.

        A refreshed entry keeps its current status (discovery does not know
        about sessions) and takes the new address, name and last-seen time.

        Returns:
            The stored device.
        """
        async with self._lock:
            existing = self._devices.get(device.id)
            if existing is not None:
                device = device.with_status(existing.status)
            else:
                logger.info("Device added: %s (%s at %s:%d)", device.id, device.name, device.address, device.port)
            self._devices[device.id] = device
            return device

    async def get(self, device_id: str) -> Device | None:
        async with self._lock:
            return self._devices.get(device_id)

    async def remove(self, device_id: str) -> Device | None:
        """
        Remove a device from the registry.

        Returns:
            The removed device, or None if not found.
        """
        async with self._lock:
            device = self._devices.pop(device_id, None)
            if device:
                logger.info("Device removed: %s", device_id)
            return device

    async def get_all(self) -> list[Device]:
        """
        Get a list of all known devices.

        Returns:
            A list of all registered devices (copy, safe to iterate).
        """
        async with self._lock:
            return list(self._devices.values())

    async def transition(self, device_id: str, status: DeviceStatus) -> Device | None:
        """
        Move a device to ``status`` if that is a legal edge.

        Returns:
            The updated device, or None if the device is unknown, already in
            ``status``, or the edge is illegal.
        """
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return None
            if device.status is status:
                return None
            if not device.status.can_transition_to(status):
                logger.warning(
                    "Rejected illegal transition for %s: %s -> %s",
                    device_id,
                    device.status.value,
                    status.value,
                )
                return None

            updated = device.with_status(status)
            self._devices[device_id] = updated
            logger.debug("Device %s: %s -> %s", device_id, device.status.value, status.value)
            return updated

    async def evict_stale(self, cutoff: float) -> list[Device]:
        """
        Drop idle devices not seen since ``cutoff``.

        Only devices without a session (available, disconnected, error) are
        eligible; a connected device is kept regardless of discovery.

        Returns:
            The evicted devices.
        """
        async with self._lock:
            stale = [
                d
                for d in self._devices.values()
                if d.last_seen < cutoff and not d.status.is_session_open
                and d.status is not DeviceStatus.CONNECTING
            ]
            for device in stale:
                del self._devices[device.id]

        if stale:
            logger.info("Evicted %d stale device(s)", len(stale))
        return stale

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __iter__(self) -> Iterator[str]:
        """Iterate over registered device ids."""
        return iter(self._devices)

    def __bool__(self) -> bool:
        """A registry instance is always truthy, even when empty."""
        return True
