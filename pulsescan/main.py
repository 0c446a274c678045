#!/usr/bin/env python3
"""
pulsescan - network discovery for the monitoring agent

Main entry point for running a single discovery pass from the command line.

Strategy:
    1. **Local ranges** (overlap a subnet on one of this host's interfaces)
       - ARP warm-up + neighbour cache read (MAC, manufacturer)
       - mDNS browse (hostnames, services)
       - SSDP search (UPnP device metadata)
       - results merged into one record per IP

    2. **Remote ranges** (behind a router)
       - ICMP ping sweep with bounded concurrency (IP only)
"""

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from pulsescan import __version__
from pulsescan.config import (
    ARP_SETTLE_DELAY,
    DEBUG_MODE,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILE,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    PING_CONCURRENCY,
)
from pulsescan.modules import (
    DiscoveredDevice,
    InvalidCIDRError,
    detect_local_network,
    discover_devices,
    parse_cidr,
)

VERSION = __version__

EXIT_NO_NETWORK = 1
EXIT_BAD_CIDR = 2
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False, log_file: Optional[Path] = LOG_FILE) -> None:
    """
    Setup application logging.

    Args:
        verbose: Enable debug logging on the console
        log_file: Rotating log file path (None disables file logging)
    """
    level = logging.DEBUG if verbose else logging.INFO

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Console handler (stderr keeps stdout clean for --json)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler with rotation
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"File logging disabled ({log_file}): {e}")

    # Suppress noisy libraries
    logging.getLogger("zeroconf").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def format_table(devices: List[DiscoveredDevice]) -> str:
    """Render devices as a fixed-width text table."""
    header = f"{'IP ADDRESS':<16} {'MAC ADDRESS':<18} {'MANUFACTURER':<24} {'HOSTNAME':<28} UPNP"
    lines = [header, "-" * len(header)]
    for device in devices:
        upnp = (device.upnp_info or {}).get("friendly_name", "")
        lines.append(
            f"{device.ip_address:<16} "
            f"{device.mac_address or '-':<18} "
            f"{(device.manufacturer or '-')[:24]:<24} "
            f"{(device.hostname or '-')[:28]:<28} "
            f"{upnp}"
        )
    lines.append(f"\n{len(devices)} devices")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulsescan",
        description="pulsescan - discover devices on a network range",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pulsescan
  pulsescan 192.168.1.0/24
  pulsescan 10.20.0.0/22 --ping-concurrency 100 --json
  pulsescan 192.168.1.0/24 --settle-delay 4 --verbose
        """
    )

    parser.add_argument(
        'cidr',
        nargs='?',
        default=None,
        help='Network range to scan (default: auto-detect the local network)'
    )

    parser.add_argument(
        '-c', '--ping-concurrency',
        type=int,
        default=PING_CONCURRENCY,
        help=f'Maximum in-flight pings for remote ranges (default: {PING_CONCURRENCY})'
    )

    parser.add_argument(
        '--settle-delay',
        type=float,
        default=ARP_SETTLE_DELAY,
        help=f'Seconds to wait after ARP warm-up (default: {ARP_SETTLE_DELAY})'
    )

    parser.add_argument(
        '--json',
        action='store_true',
        help='Print results as JSON'
    )

    parser.add_argument(
        '--log-file',
        type=Path,
        default=LOG_FILE,
        help=f'Rotating log file (default: {LOG_FILE})'
    )

    parser.add_argument(
        '--no-log-file',
        action='store_true',
        help='Log to the console only'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        default=DEBUG_MODE,
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'pulsescan {VERSION}'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose, None if args.no_log_file else args.log_file)

    cidr = args.cidr
    if cidr is None:
        cidr = detect_local_network()
        if cidr is None:
            logger.error("Could not detect a local network; pass a CIDR explicitly")
            return EXIT_NO_NETWORK
    else:
        try:
            cidr = str(parse_cidr(cidr))
        except InvalidCIDRError as e:
            logger.error(str(e))
            return EXIT_BAD_CIDR

    logger.info(f"Starting pulsescan v{VERSION} on {cidr}")

    try:
        devices = asyncio.run(
            discover_devices(
                cidr,
                logger,
                args.ping_concurrency,
                settle_delay=args.settle_delay,
            )
        )
    except KeyboardInterrupt:
        logger.info("Discovery stopped by user")
        return EXIT_INTERRUPTED

    if args.json:
        print(json.dumps([d.to_dict() for d in devices], indent=2))
    else:
        print(format_table(devices))

    return 0


if __name__ == "__main__":
    sys.exit(main())
