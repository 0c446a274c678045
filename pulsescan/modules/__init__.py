"""
pulsescan Modules Package

Discovery sources, the network classifier, and the orchestrator that
merges their results.
"""

from .device import DiscoveredDevice, lookup_vendor, normalize_mac
from .network_utils import (
    InvalidCIDRError, parse_cidr, is_in_cidr, is_local_network,
    get_host_addresses, count_hosts, get_local_networks, detect_local_network,
)
from .arp import populate_arp_cache, read_arp_table, arp_scan
from .mdns import MDNSListener, mdns_scan
from .ssdp import SSDPListener, ssdp_scan
from .ping_sweep import ping_host, ping_sweep
from .merge import merge_devices, merge_into
from .discovery import DiscoveryEngine, discover_devices

__all__ = [
    "DiscoveredDevice",
    "lookup_vendor",
    "normalize_mac",
    "InvalidCIDRError",
    "parse_cidr",
    "is_in_cidr",
    "is_local_network",
    "get_host_addresses",
    "count_hosts",
    "get_local_networks",
    "detect_local_network",
    "populate_arp_cache",
    "read_arp_table",
    "arp_scan",
    "MDNSListener",
    "mdns_scan",
    "SSDPListener",
    "ssdp_scan",
    "ping_host",
    "ping_sweep",
    "merge_devices",
    "merge_into",
    "DiscoveryEngine",
    "discover_devices",
]
