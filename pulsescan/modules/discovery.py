"""
Discovery Orchestrator Module

Chooses a discovery strategy for a target range and reconciles the
results of several independent, unreliable sources into one device list.

Architecture:
    - Local range (overlaps a subnet on one of our interfaces):
        1. ARP warm-up: touch every host so the kernel resolves it
        2. Fixed settling delay
        3. ARP cache read, mDNS browse and SSDP search run concurrently
        4. mDNS/SSDP answers outside the range are dropped
        5. Merge in priority order ARP -> mDNS -> SSDP
    - Remote range (behind a router):
        ICMP sweep only.  MAC and manufacturer are never available.

A source that fails contributes an empty list; a run never fails as a
whole except on an invalid CIDR, which is rejected before any I/O.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from pulsescan.config import ARP_SETTLE_DELAY, DEFAULT_PING_CONCURRENCY
from .arp import arp_scan, populate_arp_cache
from .device import DiscoveredDevice
from .mdns import MDNSListener
from .merge import merge_devices, merge_into
from .network_utils import is_in_cidr, is_local_network, parse_cidr
from .ping_sweep import Probe, ping_sweep
from .scan_log import resolve_log
from .ssdp import SSDPListener

logger = logging.getLogger(__name__)

# (cidr, log) -> None and (cidr, log) -> devices
ArpWarmup = Callable[[str, Optional[logging.Logger]], Awaitable[None]]
ArpScanner = Callable[[str, Optional[logging.Logger]], Awaitable[List[DiscoveredDevice]]]

__all__ = [
    "DiscoveryEngine",
    "discover_devices",
    "merge_devices",
    "merge_into",
]


class DiscoveryEngine:
    """Runs one discovery pass over a CIDR range.

    Usage::

        engine = DiscoveryEngine()
        devices = await engine.discover("192.168.1.0/24")
        engine.last_stats   # per-source counts of that run

    The ARP functions, the announcement listeners and the ICMP probe can
    all be replaced, which is how the tests drive the engine without
    touching the network.
    """

    def __init__(
        self,
        mdns_listener: Optional[MDNSListener] = None,
        ssdp_listener: Optional[SSDPListener] = None,
        ping_probe: Optional[Probe] = None,
        settle_delay: float = ARP_SETTLE_DELAY,
        arp_warmup: Optional[ArpWarmup] = None,
        arp_scanner: Optional[ArpScanner] = None,
    ):
        """
        Args:
            mdns_listener: mDNS source (default: MDNSListener()).
            ssdp_listener: SSDP source (default: SSDPListener()).
            ping_probe: Probe for the ICMP sweep (default: system ping).
            settle_delay: Seconds to wait between ARP warm-up and read.
            arp_warmup: Cache warm-up coroutine (default: populate_arp_cache).
            arp_scanner: Cache reader (default: arp_scan).
        """
        self.mdns_listener = mdns_listener or MDNSListener()
        self.ssdp_listener = ssdp_listener or SSDPListener()
        self.ping_probe = ping_probe
        self.settle_delay = settle_delay
        self.arp_warmup = arp_warmup
        self.arp_scanner = arp_scanner
        self._stats: Dict = {}

    @property
    def last_stats(self) -> Dict:
        return dict(self._stats)

    async def discover(
        self,
        cidr: str,
        log: Optional[logging.Logger] = None,
        ping_concurrency: int = DEFAULT_PING_CONCURRENCY,
    ) -> List[DiscoveredDevice]:
        """
        Discover devices in ``cidr``.

        Raises:
            InvalidCIDRError: if ``cidr`` is not a valid IPv4 range.
        """
        log = resolve_log(log, logger)
        network = parse_cidr(cidr)
        started = time.monotonic()

        if is_local_network(str(network)):
            log.info(f"Segment {cidr} is LOCAL - using ARP, mDNS and SSDP discovery")
            devices = await self._discover_local(str(network), log)
        else:
            log.info(f"Segment {cidr} is REMOTE - using ping sweep")
            log.info("Note: MAC address and manufacturer info not available for remote networks")
            devices = await self._discover_remote(str(network), log, ping_concurrency)

        self._stats["total"] = len(devices)
        self._stats["elapsed_seconds"] = round(time.monotonic() - started, 3)
        log.info(
            f"Discovery of {cidr} finished: {len(devices)} devices "
            f"in {self._stats['elapsed_seconds']:.1f}s"
        )
        return devices

    async def _discover_local(self, cidr: str, log: logging.Logger) -> List[DiscoveredDevice]:
        warmup = self.arp_warmup or populate_arp_cache
        scanner = self.arp_scanner or arp_scan

        try:
            await warmup(cidr, log)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"ARP warm-up for {cidr} failed: {e}")
        await asyncio.sleep(self.settle_delay)

        arp_devices, mdns_devices, ssdp_devices = await asyncio.gather(
            self._guarded("ARP", scanner(cidr, log), log),
            self._guarded("mDNS", self.mdns_listener.scan(log), log),
            self._guarded("SSDP", self.ssdp_listener.scan(log), log),
        )

        mdns_in_range = [d for d in mdns_devices if is_in_cidr(d.ip_address, cidr)]
        ssdp_in_range = [d for d in ssdp_devices if is_in_cidr(d.ip_address, cidr)]

        devices = merge_devices(arp_devices, mdns_in_range, ssdp_in_range)

        self._stats = {
            "strategy": "local",
            "arp": len(arp_devices),
            "mdns": len(mdns_in_range),
            "mdns_out_of_range": len(mdns_devices) - len(mdns_in_range),
            "ssdp": len(ssdp_in_range),
            "ssdp_out_of_range": len(ssdp_devices) - len(ssdp_in_range),
        }
        log.info(
            f"Sources for {cidr}: ARP={len(arp_devices)} "
            f"mDNS={len(mdns_in_range)} (+{self._stats['mdns_out_of_range']} out of range) "
            f"SSDP={len(ssdp_in_range)} (+{self._stats['ssdp_out_of_range']} out of range)"
        )
        return devices

    async def _discover_remote(
        self, cidr: str, log: logging.Logger, ping_concurrency: int
    ) -> List[DiscoveredDevice]:
        devices = await ping_sweep(cidr, log, ping_concurrency, probe=self.ping_probe)
        self._stats = {"strategy": "remote", "ping": len(devices)}
        return devices

    @staticmethod
    async def _guarded(
        name: str, source: Awaitable[List[DiscoveredDevice]], log: logging.Logger
    ) -> List[DiscoveredDevice]:
        """Await one source, converting any failure into an empty result."""
        try:
            return list(await source)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"{name} discovery failed: {e}")
            return []


async def discover_devices(
    cidr: str,
    log: Optional[logging.Logger] = None,
    ping_concurrency: int = DEFAULT_PING_CONCURRENCY,
    *,
    settle_delay: float = ARP_SETTLE_DELAY,
) -> List[DiscoveredDevice]:
    """
    Discover devices in ``cidr`` using the strategy its locality allows.

    Args:
        cidr: Target range (e.g. '192.168.1.0/24')
        log: Logger with at least ``info`` (module logger if None)
        ping_concurrency: Maximum in-flight ICMP probes for remote ranges
        settle_delay: Seconds between ARP warm-up and cache read

    Returns:
        One record per distinct IP address.

    Raises:
        InvalidCIDRError: if ``cidr`` is not a valid IPv4 range.
    """
    engine = DiscoveryEngine(settle_delay=settle_delay)
    return await engine.discover(cidr, log, ping_concurrency)
