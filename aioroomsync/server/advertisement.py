"""mDNS advertisement of a room server."""

from __future__ import annotations

import logging
import socket

from zeroconf import IPVersion
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_roomsync._tcp.local."


def build_service_info(port: int, room: str, name: str | None = None) -> AsyncServiceInfo:
    """Describe a server and the room it hosts, named after the host unless ``name`` is given."""
    hostname = socket.gethostname()
    return AsyncServiceInfo(
        SERVICE_TYPE,
        f"{name or hostname}.{SERVICE_TYPE}",
        port=port,
        properties={"room": room},
        server=f"{hostname}.local.",
    )


class ServiceAdvertisement:
    """Advertises the server and its room so participants can join without a URL."""

    def __init__(self, port: int, room: str, name: str | None = None) -> None:
        """Initialize the advertisement, nothing is announced before start()."""
        self._info = build_service_info(port, room, name)
        self._zeroconf: AsyncZeroconf | None = None

    async def start(self) -> None:
        """Register the service."""
        if self._zeroconf is not None:
            return
        zeroconf = AsyncZeroconf(ip_version=IPVersion.All)
        try:
            await zeroconf.async_register_service(self._info)
        except Exception:
            await zeroconf.async_close()
            raise
        self._zeroconf = zeroconf
        logger.info("Advertising %s on port %d", self._info.name, self._info.port)

    async def stop(self) -> None:
        """Unregister the service and release the responder."""
        zeroconf, self._zeroconf = self._zeroconf, None
        if zeroconf is None:
            return
        try:
            await zeroconf.async_unregister_service(self._info)
        except Exception:
            logger.exception("Error unregistering %s", self._info.name)
        await zeroconf.async_close()
        logger.debug("Service advertisement stopped")
