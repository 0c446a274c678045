"""
ICMP Sweep Module

Echo-request sweep across every host of a CIDR range with a fixed cap on
in-flight probes.  This is the only strategy that works across router
hops, so it yields IP addresses only: no MAC, no hostname.
"""

import asyncio
import logging
import platform
import re
from typing import Awaitable, Callable, List, Optional, Tuple

from pulsescan.config import DEFAULT_PING_CONCURRENCY, PING_COUNT, PING_TIMEOUT
from .device import DiscoveredDevice
from .network_utils import count_hosts, get_host_addresses
from .scan_log import resolve_log

logger = logging.getLogger(__name__)

# probe(ip, timeout) -> True when the host answered in time
Probe = Callable[[str, float], Awaitable[bool]]

_RTT_LINUX = re.compile(
    r"rtt\s+min/avg/max/mdev\s*=\s*[\d.]+/([\d.]+)/[\d.]+/[\d.]+\s*ms"
)
_RTT_BSD = re.compile(
    r"round-trip\s+min/avg/max/(?:std-dev|stddev)\s*=\s*[\d.]+/([\d.]+)/[\d.]+/[\d.]+\s*ms"
)
_RTT_WINDOWS = re.compile(r"Average\s*=\s*(\d+)\s*ms", re.IGNORECASE)
_RTT_SINGLE = re.compile(r"time[=<]([\d.]+)\s*ms", re.IGNORECASE)


def build_ping_command(ip: str, timeout: float = PING_TIMEOUT, count: int = PING_COUNT) -> List[str]:
    """Platform-specific ``ping`` invocation for ``count`` echoes."""
    system = platform.system().lower()
    if "windows" in system:
        return ["ping", "-n", str(count), "-w", str(int(timeout * 1000)), ip]
    if "darwin" in system:
        # -W is milliseconds on macOS
        return ["ping", "-c", str(count), "-W", str(int(timeout * 1000)), ip]
    return ["ping", "-c", str(count), "-W", str(max(1, int(round(timeout)))), ip]


def parse_ping_rtt(output: str) -> Optional[float]:
    """Extract the average round-trip time in ms from ``ping`` output."""
    for pattern in (_RTT_LINUX, _RTT_BSD, _RTT_WINDOWS, _RTT_SINGLE):
        match = pattern.search(output)
        if match:
            try:
                return float(match.group(1))
            except ValueError:
                continue
    return None


async def ping_host(
    ip: str,
    timeout: float = PING_TIMEOUT,
    count: int = PING_COUNT,
) -> Optional[float]:
    """Measure round-trip latency to a host via ICMP echo.

    Args:
        ip: Target IP address.
        timeout: Per-echo timeout in seconds.
        count: Number of echo requests to send.

    Returns:
        Average latency in milliseconds (0.0 if the host answered but no
        RTT could be parsed), or None when the host did not answer.
    """
    cmd = build_ping_command(ip, timeout, count)
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"Cannot run ping for {ip}: {e}")
        return None

    try:
        stdout, _ = await asyncio.wait_for(
            process.communicate(), timeout=count * timeout + 2
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return None

    if process.returncode != 0:
        return None

    output = stdout.decode(errors="replace")
    # Windows ping exits 0 on "Destination host unreachable"
    if "windows" in platform.system().lower() and "ttl=" not in output.lower():
        return None

    rtt = parse_ping_rtt(output)
    return rtt if rtt is not None else 0.0


async def is_host_alive(ip: str, timeout: float = PING_TIMEOUT) -> bool:
    """Default sweep probe: a single echo request."""
    return await ping_host(ip, timeout=timeout, count=1) is not None


async def ping_sweep(
    cidr: str,
    log: Optional[logging.Logger] = None,
    concurrency: int = DEFAULT_PING_CONCURRENCY,
    *,
    probe: Optional[Probe] = None,
    timeout: float = PING_TIMEOUT,
) -> List[DiscoveredDevice]:
    """
    Ping every usable host in ``cidr`` with at most ``concurrency``
    probes in flight.

    Args:
        cidr: Target range (e.g. '10.20.0.0/24')
        log: Logger to report progress on (module logger if None)
        concurrency: Maximum simultaneous probes
        probe: Replacement for the default ICMP probe
        timeout: Per-probe timeout in seconds

    Returns:
        One device (``ip_address`` only) per responding host, in address
        order.  Hosts that time out are omitted.
    """
    log = resolve_log(log, logger)
    probe = probe or is_host_alive
    workers = max(1, concurrency)
    total = count_hosts(cidr)

    log.info(f"Ping sweep of {cidr}: {total} hosts, concurrency {workers}")

    # Shared backlog; each worker pulls the next address when it is free.
    backlog = enumerate(get_host_addresses(cidr))
    alive: List[Tuple[int, str]] = []

    async def worker() -> None:
        for index, ip in backlog:
            try:
                answered = await probe(ip, timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.debug(f"Probe of {ip} failed: {e}")
                continue
            if answered:
                alive.append((index, ip))

    await asyncio.gather(*(worker() for _ in range(min(workers, total))))
    devices = [DiscoveredDevice(ip_address=ip) for _, ip in sorted(alive)]

    log.info(f"Ping sweep found {len(devices)} responding hosts in {cidr}")
    return devices
