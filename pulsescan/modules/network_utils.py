"""
Network Utilities Module

CIDR parsing, host enumeration, and local-vs-remote classification of a
target range against the host's own interface subnets.
"""

import ipaddress
import logging
import re
import socket
import subprocess
from typing import Iterator, List, Optional, Tuple

import psutil

logger = logging.getLogger(__name__)


class InvalidCIDRError(ValueError):
    """Raised when a target range is not a valid IPv4 CIDR."""


def parse_cidr(cidr: str) -> ipaddress.IPv4Network:
    """
    Parse an IPv4 CIDR string.

    Host bits are allowed and masked off (``192.168.1.7/24`` becomes
    ``192.168.1.0/24``); a bare address is treated as a /32.

    Raises:
        InvalidCIDRError: if ``cidr`` is not an IPv4 network.
    """
    if not isinstance(cidr, str) or not cidr.strip():
        raise InvalidCIDRError(f"Invalid CIDR: {cidr!r}")
    try:
        return ipaddress.IPv4Network(cidr.strip(), strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as e:
        raise InvalidCIDRError(f"Invalid CIDR {cidr!r}: {e}") from e


def is_in_cidr(ip: str, cidr: str) -> bool:
    """Check whether ``ip`` lies inside ``cidr``.

    Compares the integer form of the address against the network address
    under the prefix mask.  A malformed ``ip`` is never contained.
    """
    network = parse_cidr(cidr)
    try:
        addr = int(ipaddress.IPv4Address(ip))
    except (ipaddress.AddressValueError, ValueError):
        return False
    mask = int(network.netmask)
    return (addr & mask) == int(network.network_address)


def get_host_addresses(cidr: str) -> Iterator[str]:
    """
    Yield every usable host address in ``cidr``.

    /31 and /32 ranges yield every address; all other prefixes exclude
    the network and broadcast addresses.
    """
    network = parse_cidr(cidr)
    first = int(network.network_address)
    last = int(network.broadcast_address)
    if network.prefixlen < 31:
        first += 1
        last -= 1
    for value in range(first, last + 1):
        yield str(ipaddress.IPv4Address(value))


def count_hosts(cidr: str) -> int:
    """Number of addresses :func:`get_host_addresses` yields for ``cidr``."""
    network = parse_cidr(cidr)
    if network.prefixlen >= 31:
        return network.num_addresses
    return network.num_addresses - 2


def run_command(cmd: List[str], timeout: int = 5) -> Tuple[str, str, int]:
    """
    Execute a command and return stdout, stderr, and return code.

    Args:
        cmd: Command and arguments as list
        timeout: Command timeout in seconds

    Returns:
        Tuple of (stdout, stderr, return_code)
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.stdout, result.stderr, result.returncode
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out: {' '.join(cmd)}")
        return "", f"Command timed out after {timeout}s", -1
    except FileNotFoundError:
        logger.debug(f"Command not found: {cmd[0]}")
        return "", f"Command not found: {cmd[0]}", -1
    except OSError as e:
        logger.error(f"Error running command {' '.join(cmd)}: {e}")
        return "", str(e), -1


def _interface_networks(skip_down: bool = True) -> List[Tuple[str, ipaddress.IPv4Network]]:
    """(interface, subnet) pairs for every IPv4 address on a non-loopback interface.

    Link-local (169.254.0.0/16) subnets are included; they are directly
    attached like any other.
    """
    stats = psutil.net_if_stats()
    networks: List[Tuple[str, ipaddress.IPv4Network]] = []

    for name, addrs in psutil.net_if_addrs().items():
        if skip_down and name in stats and not stats[name].isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.address or not addr.netmask:
                continue
            try:
                network = ipaddress.IPv4Network(
                    f"{addr.address}/{addr.netmask}", strict=False
                )
            except ValueError:
                continue
            if network.is_loopback:
                continue
            networks.append((name, network))

    return networks


def get_local_networks() -> List[ipaddress.IPv4Network]:
    """
    Get the IPv4 subnets directly attached to this host.

    Returns:
        Subnets of all up, non-loopback interfaces (deduplicated).
    """
    seen: List[ipaddress.IPv4Network] = []
    for _, network in _interface_networks():
        if network not in seen:
            seen.append(network)
    return seen


def is_local_network(cidr: str) -> bool:
    """
    Decide whether ``cidr`` is reachable without a router hop.

    The target is local when it overlaps (is a subset of, a superset of,
    or partially covers) any subnet configured on a local interface.  If
    interfaces cannot be enumerated the range is treated as remote.
    """
    target = parse_cidr(cidr)
    try:
        local_networks = get_local_networks()
    except Exception as e:
        logger.warning(f"Could not enumerate local interfaces, treating {cidr} as remote: {e}")
        return False

    for network in local_networks:
        if target.overlaps(network):
            logger.debug(f"{cidr} overlaps local subnet {network}")
            return True
    return False


def get_default_interface() -> Optional[str]:
    """Name of the interface carrying the IPv4 default route, if any."""
    stdout, _, returncode = run_command(["ip", "route", "show", "default"], timeout=5)
    if returncode == 0 and stdout:
        match = re.search(r"default\s+via\s+\S+\s+dev\s+(\S+)", stdout)
        if match:
            return match.group(1)

    # BSD / macOS
    stdout, _, returncode = run_command(["route", "-n", "get", "default"], timeout=5)
    if returncode == 0 and stdout:
        match = re.search(r"interface:\s*(\S+)", stdout)
        if match:
            return match.group(1)

    return None


def detect_local_network() -> Optional[str]:
    """
    Detect the CIDR of the network this host sits on.

    Priority:
    1. Subnet of the interface carrying the default route
    2. First up, non-loopback interface with an IPv4 address

    Returns:
        CIDR string (e.g. '192.168.1.0/24') or None if nothing usable
    """
    try:
        networks = _interface_networks()
    except Exception as e:
        logger.error(f"Interface enumeration failed: {e}")
        return None

    if not networks:
        logger.warning("No IPv4 interfaces available")
        return None

    # auto-configured 169.254/16 only when nothing else is up
    routable = [(name, network) for name, network in networks if not network.is_link_local]
    networks = routable or networks

    default_iface = get_default_interface()
    if default_iface:
        for name, network in networks:
            if name == default_iface:
                logger.info(f"Detected local network {network} on {name} (default route)")
                return str(network)

    name, network = networks[0]
    logger.info(f"Detected local network {network} on {name}")
    return str(network)
