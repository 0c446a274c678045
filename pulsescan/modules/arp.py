"""
ARP Prober Module

Discovers IP -> MAC pairs on a locally attached subnet by reading the
operating system's neighbour (ARP) cache.

The cache only holds entries for hosts this machine has recently talked
to, so a scan is a three step protocol:

    1. populate_arp_cache(): send one empty UDP datagram to every host in
       the range.  The kernel has to resolve each neighbour before it can
       transmit, which fills the cache as a side effect.
    2. Wait a fixed settling delay (resolution is asynchronous).
    3. arp_scan(): read the cache back and keep the entries in range.

Unresolved hosts are simply absent.  Failures never propagate: the worst
case is an empty result.
"""

import asyncio
import logging
import re
import socket
from typing import List, Optional, Tuple

from pulsescan.config import (
    ARP_COMMAND_TIMEOUT,
    ARP_TOUCH_PORT,
    ARP_WARMUP_BATCH_DELAY,
    ARP_WARMUP_BATCH_SIZE,
    PROC_NET_ARP,
)
from .device import DiscoveredDevice, lookup_vendor, normalize_mac
from .scan_log import resolve_log
from .network_utils import get_host_addresses, is_in_cidr, parse_cidr

logger = logging.getLogger(__name__)

# ? (192.168.1.1) at aa:bb:cc:dd:ee:ff [ether] on eth0
# ? (192.168.1.1) at 0:1b:2:c:d:e on en0 ifscope [ethernet]
_ARP_AN_RE = re.compile(
    r"\((\d+\.\d+\.\d+\.\d+)\)\s+at\s+([0-9a-fA-F:.\-]+)"
)
_BAD_NEIGH_STATES = {"FAILED", "INCOMPLETE"}


class _TouchProtocol(asyncio.DatagramProtocol):
    """Fire-and-forget datagram protocol; send errors are only counted."""

    def __init__(self):
        self.errors = 0

    def error_received(self, exc):
        self.errors += 1


async def populate_arp_cache(
    cidr: str,
    log: Optional[logging.Logger] = None,
    *,
    port: int = ARP_TOUCH_PORT,
    batch_size: int = ARP_WARMUP_BATCH_SIZE,
    batch_delay: float = ARP_WARMUP_BATCH_DELAY,
) -> None:
    """
    Force neighbour resolution for every host in ``cidr``.

    Best effort: nothing is returned and socket errors are logged, not
    raised.  The OS cache is only ever added to, never cleared.

    Args:
        cidr: Target range (e.g. '192.168.1.0/24')
        log: Logger to report progress on (module logger if None)
        port: UDP port to touch (discard by default)
        batch_size: Datagrams sent between yields to the event loop
        batch_delay: Pause between batches in seconds
    """
    log = resolve_log(log, logger)
    network = parse_cidr(cidr)
    loop = asyncio.get_running_loop()

    try:
        transport, protocol = await loop.create_datagram_endpoint(
            _TouchProtocol, family=socket.AF_INET
        )
    except OSError as e:
        log.warning(f"ARP warm-up for {network} skipped, cannot open UDP socket: {e}")
        return

    sent = 0
    try:
        for ip in get_host_addresses(cidr):
            transport.sendto(b"", (ip, port))
            sent += 1
            if sent % max(1, batch_size) == 0:
                await asyncio.sleep(batch_delay)
    except OSError as e:
        log.warning(f"ARP warm-up for {network} stopped after {sent} hosts: {e}")
    finally:
        transport.close()

    log.info(f"ARP warm-up touched {sent} hosts in {network}")
    if protocol.errors:
        log.debug(f"ARP warm-up saw {protocol.errors} send errors")


# ---------------------------------------------------------------------------
# Neighbour cache parsers
# ---------------------------------------------------------------------------

def parse_proc_net_arp(content: str) -> List[Tuple[str, str]]:
    """Parse the Linux ``/proc/net/arp`` table.

    Entries with flags 0x0 (incomplete) or a null MAC are skipped.
    """
    results: List[Tuple[str, str]] = []
    for line in content.splitlines()[1:]:  # skip header
        parts = line.split()
        if len(parts) < 4:
            continue
        ip, flags, mac = parts[0], parts[2], parts[3]
        if flags == "0x0":
            continue
        mac = normalize_mac(mac)
        if mac:
            results.append((ip, mac))
    return results


def parse_ip_neigh(content: str) -> List[Tuple[str, str]]:
    """Parse ``ip neigh show`` output, skipping FAILED/INCOMPLETE entries.

    Line format: ``192.168.1.1 dev eth0 lladdr aa:bb:cc:dd:ee:ff REACHABLE``
    """
    results: List[Tuple[str, str]] = []
    for line in content.splitlines():
        line = line.strip()
        if "lladdr" not in line:
            continue
        parts = line.split()
        state = parts[-1].upper() if parts else ""
        if state in _BAD_NEIGH_STATES:
            continue
        try:
            ip = parts[0]
            mac = normalize_mac(parts[parts.index("lladdr") + 1])
        except (ValueError, IndexError):
            continue
        if mac and re.fullmatch(r"\d+\.\d+\.\d+\.\d+", ip):
            results.append((ip, mac))
    return results


def parse_arp_an(content: str) -> List[Tuple[str, str]]:
    """Parse BSD / macOS / Linux net-tools ``arp -an`` output."""
    results: List[Tuple[str, str]] = []
    for line in content.splitlines():
        if "incomplete" in line:
            continue
        match = _ARP_AN_RE.search(line)
        if not match:
            continue
        mac = normalize_mac(match.group(2))
        if mac:
            results.append((match.group(1), mac))
    return results


async def _run_async(cmd: List[str], timeout: float = ARP_COMMAND_TIMEOUT) -> Tuple[int, str, str]:
    """Run a command without blocking the loop.  Returns (rc, stdout, stderr)."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        logger.debug(f"Cannot run {cmd[0]}: {e}")
        return -1, "", str(e)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.debug(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        return -1, "", "timeout"

    return (
        process.returncode,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _dedupe(pairs: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    seen = set()
    unique = []
    for ip, mac in pairs:
        if ip not in seen:
            seen.add(ip)
            unique.append((ip, mac))
    return unique


async def read_arp_table(log: Optional[logging.Logger] = None) -> List[Tuple[str, str]]:
    """
    Read the OS neighbour cache.

    Tries ``/proc/net/arp`` first, then ``ip neigh show``, then
    ``arp -an``; each only if the previous produced nothing.

    Returns:
        (ip, mac) pairs with normalised MACs, one per IP.
    """
    log = resolve_log(log, logger)

    # --- Attempt 1: /proc/net/arp ---
    try:
        with open(PROC_NET_ARP, "r") as f:
            pairs = parse_proc_net_arp(f.read())
        if pairs:
            log.debug(f"ARP cache read (/proc/net/arp) found {len(pairs)} entries")
            return _dedupe(pairs)
    except OSError as e:
        log.debug(f"Could not read {PROC_NET_ARP}: {e}")

    # --- Attempt 2: ip neigh ---
    returncode, stdout, _ = await _run_async(["ip", "-4", "neigh", "show"])
    if returncode == 0 and stdout:
        pairs = parse_ip_neigh(stdout)
        if pairs:
            log.debug(f"ARP cache read (ip neigh) found {len(pairs)} entries")
            return _dedupe(pairs)

    # --- Attempt 3: arp -an ---
    returncode, stdout, _ = await _run_async(["arp", "-an"])
    if returncode == 0 and stdout:
        pairs = parse_arp_an(stdout)
        log.debug(f"ARP cache read (arp -an) found {len(pairs)} entries")
        return _dedupe(pairs)

    return []


async def arp_scan(cidr: str, log: Optional[logging.Logger] = None) -> List[DiscoveredDevice]:
    """
    Read the neighbour cache and return devices inside ``cidr``.

    Each device carries ``mac_address`` and, where the OUI is known,
    ``manufacturer``.  Returns an empty list on any failure.
    """
    log = resolve_log(log, logger)
    try:
        pairs = [(ip, mac) for ip, mac in await read_arp_table(log) if is_in_cidr(ip, cidr)]
        vendors = await asyncio.gather(*(lookup_vendor(mac) for _, mac in pairs))
    except Exception as e:
        log.error(f"ARP scan of {cidr} failed: {e}")
        return []

    devices = [
        DiscoveredDevice(ip_address=ip, mac_address=mac, manufacturer=vendor)
        for (ip, mac), vendor in zip(pairs, vendors)
    ]
    log.info(f"ARP scan found {len(devices)} devices in {cidr}")
    return devices
