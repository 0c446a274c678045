"""
pulsescan Configuration Module

Contains all configuration constants and default values for the discovery
engine.  Every tunable can be overridden from the environment.
"""

import os
from pathlib import Path
from typing import List


# Environment Variable Overrides
def get_env_int(key: str, default: int) -> int:
    """Get integer from environment variable with fallback to default."""
    try:
        return int(os.getenv(key, default))
    except (ValueError, TypeError):
        return default

def get_env_float(key: str, default: float) -> float:
    """Get float from environment variable with fallback to default."""
    try:
        return float(os.getenv(key, default))
    except (ValueError, TypeError):
        return default

def get_env_bool(key: str, default: bool) -> bool:
    """Get boolean from environment variable with fallback to default."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")

def get_env_str(key: str, default: str) -> str:
    """Get string from environment variable with fallback to default."""
    value = os.getenv(key)
    return value.strip() if value else default

def get_env_list(key: str, default: List[str]) -> List[str]:
    """Get list from comma-separated environment variable."""
    value = os.getenv(key)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


# Project Paths
LOGS_DIR = Path(get_env_str("PULSESCAN_LOGS_DIR", str(Path.home() / ".pulsescan" / "logs")))

# ICMP Sweep
DEFAULT_PING_CONCURRENCY = 50
PING_CONCURRENCY = get_env_int("PULSESCAN_PING_CONCURRENCY", DEFAULT_PING_CONCURRENCY)
PING_TIMEOUT = get_env_float("PULSESCAN_PING_TIMEOUT", 1.0)  # seconds per echo
PING_COUNT = 1

# ARP / neighbour cache
ARP_SETTLE_DELAY = get_env_float("PULSESCAN_ARP_SETTLE_DELAY", 2.0)  # seconds
ARP_TOUCH_PORT = 9  # UDP discard
ARP_WARMUP_BATCH_SIZE = get_env_int("PULSESCAN_ARP_WARMUP_BATCH_SIZE", 256)
ARP_WARMUP_BATCH_DELAY = get_env_float("PULSESCAN_ARP_WARMUP_BATCH_DELAY", 0.01)
ARP_COMMAND_TIMEOUT = 5  # seconds
PROC_NET_ARP = Path("/proc/net/arp")

# mDNS / DNS-SD
MDNS_BROWSE_TIMEOUT = get_env_float("PULSESCAN_MDNS_BROWSE_TIMEOUT", 3.0)  # seconds
MDNS_RESOLVE_TIMEOUT_MS = get_env_int("PULSESCAN_MDNS_RESOLVE_TIMEOUT_MS", 1500)
MDNS_SERVICE_TYPES = get_env_list(
    "PULSESCAN_MDNS_SERVICE_TYPES",
    [
        "_http._tcp.local.",
        "_https._tcp.local.",
        "_workstation._tcp.local.",
        "_device-info._tcp.local.",
        "_airplay._tcp.local.",
        "_raop._tcp.local.",
        "_googlecast._tcp.local.",
        "_spotify-connect._tcp.local.",
        "_hap._tcp.local.",
        "_printer._tcp.local.",
        "_ipp._tcp.local.",
        "_ipps._tcp.local.",
        "_pdl-datastream._tcp.local.",
        "_scanner._tcp.local.",
        "_smb._tcp.local.",
        "_afpovertcp._tcp.local.",
        "_ssh._tcp.local.",
        "_sonos._tcp.local.",
    ],
)

# SSDP / UPnP
SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900
SSDP_MX = get_env_int("PULSESCAN_SSDP_MX", 2)  # seconds, max response delay asked of devices
SSDP_LISTEN_TIMEOUT = get_env_float("PULSESCAN_SSDP_LISTEN_TIMEOUT", 3.0)  # seconds
SSDP_FETCH_TIMEOUT = get_env_float("PULSESCAN_SSDP_FETCH_TIMEOUT", 2.0)  # seconds
SSDP_FETCH_CONCURRENCY = get_env_int("PULSESCAN_SSDP_FETCH_CONCURRENCY", 10)
SSDP_FETCH_DESCRIPTIONS = get_env_bool("PULSESCAN_SSDP_FETCH_DESCRIPTIONS", True)

# MAC Vendor Lookup
ENABLE_MAC_VENDOR_LOOKUP = get_env_bool("PULSESCAN_ENABLE_MAC_VENDOR_LOOKUP", True)

# Logging Configuration
LOG_FILE = Path(get_env_str("PULSESCAN_LOG_FILE", str(LOGS_DIR / "pulsescan.log")))
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEBUG_MODE = get_env_bool("PULSESCAN_DEBUG", False)
