"""
SSDP Listener Module

Multicasts an SSDP ``M-SEARCH``, collects the unicast responses for a
bounded window, and optionally fetches each responder's UPnP device
description to fill ``upnp_info`` (device type, friendly name, model).

Like mDNS, SSDP answers come from the whole broadcast domain and must be
filtered to the target range by the caller.
"""

import asyncio
import logging
import re
import socket
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Union

import aiohttp

from pulsescan.config import (
    SSDP_ADDR,
    SSDP_FETCH_CONCURRENCY,
    SSDP_FETCH_DESCRIPTIONS,
    SSDP_FETCH_TIMEOUT,
    SSDP_LISTEN_TIMEOUT,
    SSDP_MX,
    SSDP_PORT,
)
from .device import DiscoveredDevice
from .scan_log import resolve_log

logger = logging.getLogger(__name__)

# UPnP description element -> upnp_info key
UPNP_FIELDS = {
    "deviceType": "device_type",
    "friendlyName": "friendly_name",
    "manufacturer": "manufacturer",
    "modelName": "model_name",
    "modelNumber": "model_number",
}

SEARCH_REPEATS = 2


def build_msearch(search_target: str = "ssdp:all", mx: int = SSDP_MX) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    ).encode()


def parse_ssdp_response(data: bytes) -> Optional[Dict[str, str]]:
    """Parse an SSDP response or NOTIFY into lower-cased headers.

    Returns None for anything that is not an HTTP-style status/NOTIFY
    message (including our own M-SEARCH looped back).
    """
    text = data.decode("utf-8", errors="replace")
    lines = text.splitlines()
    if not lines:
        return None
    start = lines[0].upper()
    if not (start.startswith("HTTP/") or start.startswith("NOTIFY")):
        return None

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def server_os_hint(server: Optional[str]) -> Optional[str]:
    """OS token of a ``SERVER`` header.

    ``Linux/3.14 UPnP/1.0 IpBridge/1.26`` -> ``Linux/3.14``
    """
    if not server:
        return None
    head = server.split("UPnP/", 1)[0].strip().rstrip(",").strip()
    return head or None


_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")


def _decode_loosely(document: bytes) -> str:
    """Decode a description whose bytes disagree with its declaration."""
    try:
        text = document.decode("utf-8")
    except UnicodeDecodeError:
        text = document.decode("latin-1")
    # the declaration would name an encoding the text no longer has
    return _XML_DECLARATION.sub("", text, count=1)


def parse_device_description(document: Union[str, bytes]) -> Dict[str, str]:
    """Extract root-device fields from a UPnP description document.

    Raw bytes are parsed with the encoding the document declares.  Bytes
    that are not valid in that encoding (Latin-1 served as undeclared
    UTF-8 is common) are retried as UTF-8, falling back to Latin-1.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        if not isinstance(document, bytes):
            logger.debug(f"Invalid UPnP description: {e}")
            return {}
        try:
            root = ET.fromstring(_decode_loosely(document))
        except ET.ParseError as e:
            logger.debug(f"Invalid UPnP description: {e}")
            return {}

    device = None
    for elem in root.iter():
        if elem.tag == "device" or elem.tag.endswith("}device"):
            device = elem
            break
    if device is None:
        return {}

    info: Dict[str, str] = {}
    for child in device:
        tag = child.tag.rsplit("}", 1)[-1]
        key = UPNP_FIELDS.get(tag)
        if key and child.text and child.text.strip():
            info[key] = child.text.strip()
    return info


class SSDPProtocol(asyncio.DatagramProtocol):
    """Collects parsed SSDP responses keyed by responder IP."""

    def __init__(self):
        self.responses: Dict[str, List[Dict[str, str]]] = {}

    def datagram_received(self, data: bytes, addr):
        headers = parse_ssdp_response(data)
        if headers is not None:
            self.responses.setdefault(addr[0], []).append(headers)

    def error_received(self, exc):
        logger.debug(f"SSDP socket error: {exc}")


class SSDPListener:
    """Active SSDP discovery with optional UPnP description fetch."""

    def __init__(
        self,
        search_target: str = "ssdp:all",
        mx: int = SSDP_MX,
        listen_timeout: float = SSDP_LISTEN_TIMEOUT,
        fetch_descriptions: bool = SSDP_FETCH_DESCRIPTIONS,
        fetch_timeout: float = SSDP_FETCH_TIMEOUT,
        fetch_concurrency: int = SSDP_FETCH_CONCURRENCY,
    ):
        self.search_target = search_target
        self.mx = mx
        self.listen_timeout = listen_timeout
        self.fetch_descriptions = fetch_descriptions
        self.fetch_timeout = fetch_timeout
        self.fetch_concurrency = fetch_concurrency

    async def scan(self, log: Optional[logging.Logger] = None) -> List[DiscoveredDevice]:
        """Search, listen, enrich.  Never raises; returns [] on failure."""
        log = resolve_log(log, logger)

        try:
            responses = await self._collect()
        except OSError as e:
            log.warning(f"SSDP scan skipped, cannot open multicast socket: {e}")
            return []
        except Exception as e:
            log.error(f"SSDP scan failed: {e}")
            return []

        devices = [self._build_device(ip, headers) for ip, headers in responses.items()]

        if self.fetch_descriptions and devices:
            try:
                await self._enrich(devices)
            except Exception as e:
                log.warning(f"UPnP description fetch failed: {e}")

        log.info(f"SSDP scan found {len(devices)} responding hosts")
        return devices

    async def _collect(self) -> Dict[str, List[Dict[str, str]]]:
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            SSDPProtocol,
            local_addr=("0.0.0.0", 0),
            family=socket.AF_INET,
        )
        try:
            sock = transport.get_extra_info("socket")
            if sock is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)

            request = build_msearch(self.search_target, self.mx)
            for _ in range(SEARCH_REPEATS):
                transport.sendto(request, (SSDP_ADDR, SSDP_PORT))
                await asyncio.sleep(0.1)

            await asyncio.sleep(self.listen_timeout)
        finally:
            transport.close()

        return protocol.responses

    @staticmethod
    def _build_device(ip: str, responses: List[Dict[str, str]]) -> DiscoveredDevice:
        device = DiscoveredDevice(ip_address=ip)
        location = None
        for headers in responses:
            location = location or headers.get("location")
            target = headers.get("st") or headers.get("nt")
            if target:
                device.services.add(target)
            hint = server_os_hint(headers.get("server"))
            if hint:
                device.os_hints.add(hint)
        if location:
            device.upnp_info = {"location": location}
        return device

    async def _enrich(self, devices: List[DiscoveredDevice]) -> None:
        slots = asyncio.Semaphore(max(1, self.fetch_concurrency))
        timeout = aiohttp.ClientTimeout(total=self.fetch_timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:

            async def enrich_one(device: DiscoveredDevice) -> None:
                location = (device.upnp_info or {}).get("location")
                if not location or not location.lower().startswith("http"):
                    return
                try:
                    async with slots:
                        details = await self._fetch_description(session, location)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug(f"UPnP description {location} failed: {e}")
                    return
                if details:
                    device.upnp_info = {**details, "location": location}

            await asyncio.gather(*(enrich_one(d) for d in devices))

    @staticmethod
    async def _fetch_description(session: aiohttp.ClientSession, url: str) -> Dict[str, str]:
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.debug(f"UPnP description {url} returned {response.status}")
                    return {}
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"UPnP description {url} unavailable: {e}")
            return {}
        return parse_device_description(body)


async def ssdp_scan(log: Optional[logging.Logger] = None) -> List[DiscoveredDevice]:
    """Run an SSDP scan with the configured defaults."""
    return await SSDPListener().scan(log)
