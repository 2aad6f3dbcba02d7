"""
mDNS advertisement for the cast receiver.

Publishes the receiver's HTTP command port as ``_bilibili-cast._tcp`` so
phones can find the TV without the UDP beacon.

TXT records:
    model         - device model shown in the phone's picker
    version       - receiver protocol version
    capabilities  - comma separated (video,audio,bilibili)
"""

from __future__ import annotations

import logging
import socket
from typing import Callable

from zeroconf import Error as ZeroconfError
from zeroconf import IPVersion
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from tvcast.core.network import advertised_host

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_TYPE = "_bilibili-cast._tcp.local."
DEFAULT_SERVICE_NAME = "ATV-Bilibili-Cast-Receiver"
CAPABILITIES = ("video", "audio", "bilibili")


def _default_zeroconf() -> AsyncZeroconf:
    return AsyncZeroconf(ip_version=IPVersion.V4Only)


def build_service_info(
    port: int,
    address: str,
    model: str,
    version: str,
    service_type: str = DEFAULT_SERVICE_TYPE,
    service_name: str = DEFAULT_SERVICE_NAME,
) -> AsyncServiceInfo:
    properties = {
        "model": model,
        "version": version,
        "capabilities": ",".join(CAPABILITIES),
    }
    return AsyncServiceInfo(
        type_=service_type,
        name=f"{service_name}.{service_type}",
        addresses=[socket.inet_aton(address)],
        port=port,
        properties=properties,
        server=f"{service_name.lower()}.local.",
    )


class MdnsAdvertiser:
    """Registers and withdraws the receiver's mDNS service record."""

    def __init__(
        self,
        port: int,
        host: str = "0.0.0.0",
        model: str = "Apple TV",
        version: str = "1.0",
        service_type: str = DEFAULT_SERVICE_TYPE,
        service_name: str = DEFAULT_SERVICE_NAME,
        zeroconf_factory: Callable[[], AsyncZeroconf] = _default_zeroconf,
    ) -> None:
        self.port = port
        self.host = host
        self.model = model
        self.version = version
        self.service_type = service_type
        self.service_name = service_name
        self._zeroconf_factory = zeroconf_factory

        self._zeroconf: AsyncZeroconf | None = None
        self._info: AsyncServiceInfo | None = None

    async def start(self) -> bool:
        """
        Publish the service.

        Returns:
            False if mDNS is unavailable on this host.
        """
        if self._zeroconf is not None:
            return True

        address = advertised_host(self.host)
        try:
            info = build_service_info(
                self.port,
                address,
                self.model,
                self.version,
                self.service_type,
                self.service_name,
            )
            zc = self._zeroconf_factory()
        except (OSError, ZeroconfError) as e:
            logger.warning("mDNS advertisement unavailable: %s", e)
            return False

        try:
            await zc.async_register_service(info)
        except (OSError, ZeroconfError) as e:
            logger.warning("mDNS registration failed: %s", e)
            await zc.async_close()
            return False

        self._zeroconf = zc
        self._info = info
        logger.info("mDNS service published: %s on %s:%d", info.name, address, self.port)
        return True

    async def stop(self) -> None:
        """Withdraw the service. Safe to call repeatedly."""
        zc, info = self._zeroconf, self._info
        self._zeroconf = None
        self._info = None
        if zc is None:
            return

        try:
            if info is not None:
                await zc.async_unregister_service(info)
        except (OSError, ZeroconfError) as e:
            logger.debug("mDNS unregister failed: %s", e)
        finally:
            await zc.async_close()

        logger.info("mDNS service withdrawn")

    @property
    def is_running(self) -> bool:
        return self._zeroconf is not None
