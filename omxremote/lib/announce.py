"""
Zeroconf announcement so clients on the LAN can find the remote.

Registers ``<name>._omx-remote-api._tcp.local.`` with a ``version`` TXT
record.  Announcement is best-effort: failures are logged and the service
keeps running without it.
"""

import logging
import socket

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

log = logging.getLogger(__name__)

SERVICE_TYPE = "_omx-remote-api._tcp.local."
DEFAULT_NAME = "OMX Remote"


def lan_ip() -> str:
    """This machine's LAN address (the interface that would route outwards)."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.settimeout(0)
            s.connect(("8.8.8.8", 1))
            return s.getsockname()[0]
    except OSError:
        pass
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


def service_info(name: str, port: int, version: str, address: str | None = None) -> ServiceInfo:
    host = socket.gethostname().split(".")[0] or "omxremote"
    return ServiceInfo(
        SERVICE_TYPE,
        f"{name}.{SERVICE_TYPE}",
        parsed_addresses=[address or lan_ip()],
        port=port,
        properties={"version": version},
        server=f"{host}.local.",
    )


class Announcer:
    def __init__(self, name: str, port: int, version: str):
        self.info = service_info(name, port, version)
        self._zc: AsyncZeroconf | None = None

    async def start(self):
        log.info("Starting zeroconf service [%s] on port %d", self.info.name, self.info.port)
        try:
            self._zc = AsyncZeroconf()
            await self._zc.async_register_service(self.info)
        except Exception as e:
            log.warning("Zeroconf announcement failed: %s", e)
            await self._close()

    async def stop(self):
        if self._zc is None:
            return
        try:
            await self._zc.async_unregister_service(self.info)
        except Exception as e:
            log.debug("Zeroconf unregister failed: %s", e)
        await self._close()
        log.info("Zeroconf service withdrawn")

    async def _close(self):
        if self._zc is not None:
            await self._zc.async_close()
            self._zc = None
