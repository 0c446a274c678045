"""
mDNS Listener Module

Browses a fixed set of DNS-SD service types over multicast DNS with
zeroconf, resolves every announced instance, and turns the answers into
partial device records (IP, hostname, service type, port).

mDNS is link-local: answers come from the whole broadcast domain, so
callers must filter the result to their target range.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from pulsescan.config import (
    MDNS_BROWSE_TIMEOUT,
    MDNS_RESOLVE_TIMEOUT_MS,
    MDNS_SERVICE_TYPES,
)
from .device import DiscoveredDevice
from .merge import merge_devices
from .scan_log import resolve_log

logger = logging.getLogger(__name__)


def short_service_type(service_type: str) -> str:
    """``_ipp._tcp.local.`` -> ``_ipp._tcp``"""
    value = service_type.rstrip(".")
    if value.endswith(".local"):
        value = value[: -len(".local")]
    return value


class MDNSListener:
    """Collect mDNS/DNS-SD announcements for a bounded window."""

    def __init__(
        self,
        service_types: Optional[Sequence[str]] = None,
        browse_timeout: float = MDNS_BROWSE_TIMEOUT,
        resolve_timeout_ms: int = MDNS_RESOLVE_TIMEOUT_MS,
    ):
        """
        Args:
            service_types: Fully-qualified DNS-SD types to browse.
            browse_timeout: Seconds to collect announcements.
            resolve_timeout_ms: Per-instance resolution timeout.
        """
        self.service_types = list(service_types or MDNS_SERVICE_TYPES)
        self.browse_timeout = browse_timeout
        self.resolve_timeout_ms = resolve_timeout_ms

    async def scan(self, log: Optional[logging.Logger] = None) -> List[DiscoveredDevice]:
        """Browse, resolve, and return one record per announcing IP.

        Never raises: no responders or an unusable socket yield [].
        """
        log = resolve_log(log, logger)

        try:
            aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        except OSError as e:
            log.warning(f"mDNS scan skipped, cannot bind multicast socket: {e}")
            return []

        found: List[Tuple[str, str]] = []

        def on_service_state_change(zeroconf, service_type, name, state_change):
            if state_change is ServiceStateChange.Removed:
                return
            if (service_type, name) not in found:
                found.append((service_type, name))

        browser = None
        try:
            browser = AsyncServiceBrowser(
                aiozc.zeroconf,
                self.service_types,
                handlers=[on_service_state_change],
            )
            await asyncio.sleep(self.browse_timeout)
            resolved = await asyncio.gather(
                *(self._resolve(aiozc, service_type, name) for service_type, name in found)
            )
        except Exception as e:
            log.error(f"mDNS scan failed: {e}")
            return []
        finally:
            await self._close(aiozc, browser)

        devices = merge_devices([d for records in resolved for d in records])
        log.info(
            f"mDNS scan saw {len(found)} service instances on {len(devices)} hosts"
        )
        return devices

    async def _resolve(
        self, aiozc: AsyncZeroconf, service_type: str, name: str
    ) -> List[DiscoveredDevice]:
        info = AsyncServiceInfo(service_type, name)
        try:
            if not await info.async_request(aiozc.zeroconf, self.resolve_timeout_ms):
                logger.debug(f"mDNS instance {name} did not resolve")
                return []
        except Exception as e:
            logger.debug(f"mDNS resolution of {name} failed: {e}")
            return []

        hostname = info.server.rstrip(".") if info.server else None
        ports = {info.port} if info.port else set()
        service = short_service_type(service_type)

        return [
            DiscoveredDevice(
                ip_address=ip,
                hostname=hostname,
                services={service},
                open_ports=set(ports),
            )
            for ip in info.parsed_addresses(IPVersion.V4Only)
        ]

    @staticmethod
    async def _close(aiozc: AsyncZeroconf, browser: Optional[AsyncServiceBrowser]) -> None:
        try:
            if browser is not None:
                await browser.async_cancel()
            await aiozc.async_close()
        except Exception as e:
            logger.debug(f"mDNS shutdown error: {e}")


async def mdns_scan(log: Optional[logging.Logger] = None) -> List[DiscoveredDevice]:
    """Run an mDNS scan with the configured defaults."""
    return await MDNSListener().scan(log)
