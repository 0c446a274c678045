"""
Discovered Device Model

Defines the per-run device record every prober emits, MAC address
normalisation, and OUI -> manufacturer lookup backed by the offline IEEE
vendor table shipped with mac-vendor-lookup.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from mac_vendor_lookup import AsyncMacLookup

from pulsescan.config import ENABLE_MAC_VENDOR_LOOKUP

logger = logging.getLogger(__name__)

# Fields filled on a first-non-empty-wins basis when records are merged
SCALAR_FIELDS = (
    "mac_address",
    "hostname",
    "manufacturer",
    "upnp_info",
    "netbios_name",
    "snmp_info",
)

# Fields that are always unioned when records are merged
SET_FIELDS = ("os_hints", "open_ports", "services")

_HEX_ONLY = re.compile(r"^[0-9a-f]{12}$")
_NULL_MACS = {"00:00:00:00:00:00", "ff:ff:ff:ff:ff:ff"}

_mac_lookup = AsyncMacLookup()


@dataclass
class DiscoveredDevice:
    """A (possibly partial) device record produced by one discovery run."""
    ip_address: str
    mac_address: Optional[str] = None
    hostname: Optional[str] = None
    manufacturer: Optional[str] = None
    upnp_info: Optional[Dict[str, str]] = None
    netbios_name: Optional[str] = None
    snmp_info: Optional[Dict[str, str]] = None
    os_hints: Set[str] = field(default_factory=set)
    open_ports: Set[int] = field(default_factory=set)
    services: Set[str] = field(default_factory=set)

    def copy(self) -> "DiscoveredDevice":
        """Shallow copy with fresh set containers."""
        return DiscoveredDevice(
            ip_address=self.ip_address,
            mac_address=self.mac_address,
            hostname=self.hostname,
            manufacturer=self.manufacturer,
            upnp_info=self.upnp_info,
            netbios_name=self.netbios_name,
            snmp_info=self.snmp_info,
            os_hints=set(self.os_hints),
            open_ports=set(self.open_ports),
            services=set(self.services),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "mac_address": self.mac_address,
            "hostname": self.hostname,
            "manufacturer": self.manufacturer,
            "upnp_info": self.upnp_info,
            "netbios_name": self.netbios_name,
            "snmp_info": self.snmp_info,
            "os_hints": sorted(self.os_hints),
            "open_ports": sorted(self.open_ports),
            "services": sorted(self.services),
        }

    def __repr__(self) -> str:
        return (
            f"<DiscoveredDevice {self.ip_address} ({self.mac_address})"
            f" - {self.hostname or 'Unknown'}>"
        )


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """Normalise a hardware address to lower-case colon-separated form.

    Accepts ``aa:bb:..``, ``AA-BB-..``, Cisco ``aabb.ccdd.eeff``, bare hex,
    and the single-digit octets BSD ``arp`` prints (``0:1b:2:..``).

    Returns:
        The normalised MAC, or None if the input is malformed or is the
        all-zero / broadcast address.
    """
    if not mac:
        return None

    value = mac.strip().lower()
    if ":" in value or "-" in value:
        octets = re.split(r"[:-]", value)
        if len(octets) != 6:
            return None
        if not all(1 <= len(o) <= 2 and re.fullmatch(r"[0-9a-f]+", o) for o in octets):
            return None
        result = ":".join(o.zfill(2) for o in octets)
    else:
        compact = value.replace(".", "")
        if not _HEX_ONLY.match(compact):
            return None
        result = ":".join(compact[i:i + 2] for i in range(0, 12, 2))

    if result in _NULL_MACS:
        return None
    return result


async def lookup_vendor(mac: Optional[str]) -> Optional[str]:
    """Look up vendor from MAC OUI prefix.

    Uses the mac-vendor-lookup offline IEEE OUI table.  Returns None if
    lookup is disabled, the OUI is unknown, or the table cannot be loaded.
    """
    if not ENABLE_MAC_VENDOR_LOOKUP or not mac:
        return None
    try:
        return await _mac_lookup.lookup(mac)
    except KeyError:
        # VendorNotFoundError
        return None
    except Exception as e:
        logger.debug(f"Vendor lookup failed for {mac}: {e}")
        return None
