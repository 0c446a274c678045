"""
Unit tests for the mDNS listener, with zeroconf replaced by mocks.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from zeroconf import ServiceStateChange

from pulsescan.modules.mdns import MDNSListener, short_service_type


def _fake_zeroconf():
    aiozc = MagicMock()
    aiozc.async_close = AsyncMock()
    return aiozc


def _fake_browser_factory(announcements):
    """AsyncServiceBrowser stand-in that announces ``announcements`` at once."""
    created = []

    def factory(zc, service_types, handlers):
        for service_type, name, change in announcements:
            for handler in handlers:
                handler(zeroconf=zc, service_type=service_type, name=name, state_change=change)
        browser = MagicMock()
        browser.async_cancel = AsyncMock()
        created.append(browser)
        return browser

    factory.created = created
    return factory


def _fake_info_factory(resolved):
    """AsyncServiceInfo stand-in; ``resolved`` maps instance name -> (server, port, ips)."""

    def factory(service_type, name):
        info = MagicMock()
        if name in resolved:
            server, port, ips = resolved[name]
            info.async_request = AsyncMock(return_value=True)
            info.server = server
            info.port = port
            info.parsed_addresses = MagicMock(return_value=ips)
        else:
            info.async_request = AsyncMock(return_value=False)
        return info

    return factory


class TestShortServiceType:

    def test_strips_local_suffix(self):
        assert short_service_type("_ipp._tcp.local.") == "_ipp._tcp"

    def test_without_trailing_dot(self):
        assert short_service_type("_ssh._tcp.local") == "_ssh._tcp"


class TestMDNSListener:

    def _scan(self, announcements, resolved, **listener_kwargs):
        aiozc = _fake_zeroconf()
        browser_factory = _fake_browser_factory(announcements)
        listener = MDNSListener(browse_timeout=0, **listener_kwargs)
        with patch("pulsescan.modules.mdns.AsyncZeroconf", return_value=aiozc), \
                patch("pulsescan.modules.mdns.AsyncServiceBrowser", side_effect=browser_factory), \
                patch("pulsescan.modules.mdns.AsyncServiceInfo", side_effect=_fake_info_factory(resolved)):
            devices = asyncio.run(listener.scan())
        return devices, aiozc, browser_factory

    def test_resolves_hostname_service_and_port(self):
        devices, aiozc, browsers = self._scan(
            [("_ipp._tcp.local.", "Printer._ipp._tcp.local.", ServiceStateChange.Added)],
            {"Printer._ipp._tcp.local.": ("printer.local.", 631, ["192.168.1.10"])},
        )

        assert len(devices) == 1
        dev = devices[0]
        assert dev.ip_address == "192.168.1.10"
        assert dev.hostname == "printer.local"
        assert dev.services == {"_ipp._tcp"}
        assert dev.open_ports == {631}
        assert dev.mac_address is None
        aiozc.async_close.assert_awaited_once()
        browsers.created[0].async_cancel.assert_awaited_once()

    def test_instances_on_same_ip_are_combined(self):
        devices, _, _ = self._scan(
            [
                ("_ipp._tcp.local.", "Printer._ipp._tcp.local.", ServiceStateChange.Added),
                ("_http._tcp.local.", "Printer._http._tcp.local.", ServiceStateChange.Added),
            ],
            {
                "Printer._ipp._tcp.local.": ("printer.local.", 631, ["192.168.1.10"]),
                "Printer._http._tcp.local.": ("printer.local.", 80, ["192.168.1.10"]),
            },
        )

        assert len(devices) == 1
        assert devices[0].services == {"_ipp._tcp", "_http._tcp"}
        assert devices[0].open_ports == {631, 80}

    def test_duplicate_announcements_resolved_once(self):
        name = "Speaker._raop._tcp.local."
        devices, _, _ = self._scan(
            [
                ("_raop._tcp.local.", name, ServiceStateChange.Added),
                ("_raop._tcp.local.", name, ServiceStateChange.Updated),
            ],
            {name: ("speaker.local.", 7000, ["192.168.1.30"])},
        )
        assert [d.ip_address for d in devices] == ["192.168.1.30"]

    def test_removed_instances_ignored(self):
        devices, _, _ = self._scan(
            [("_ssh._tcp.local.", "Gone._ssh._tcp.local.", ServiceStateChange.Removed)],
            {"Gone._ssh._tcp.local.": ("gone.local.", 22, ["192.168.1.40"])},
        )
        assert devices == []

    def test_unresolved_instance_skipped(self):
        devices, _, _ = self._scan(
            [("_http._tcp.local.", "Ghost._http._tcp.local.", ServiceStateChange.Added)],
            {},
        )
        assert devices == []

    def test_no_responders(self):
        devices, aiozc, _ = self._scan([], {})
        assert devices == []
        aiozc.async_close.assert_awaited_once()

    def test_bind_failure_returns_empty(self):
        with patch("pulsescan.modules.mdns.AsyncZeroconf", side_effect=OSError("Address in use")):
            assert asyncio.run(MDNSListener(browse_timeout=0).scan()) == []

    def test_browser_failure_returns_empty_and_closes(self):
        aiozc = _fake_zeroconf()
        with patch("pulsescan.modules.mdns.AsyncZeroconf", return_value=aiozc), \
                patch("pulsescan.modules.mdns.AsyncServiceBrowser", side_effect=RuntimeError("bad type")):
            assert asyncio.run(MDNSListener(browse_timeout=0).scan()) == []
        aiozc.async_close.assert_awaited_once()

    def test_custom_service_types_passed_to_browser(self):
        aiozc = _fake_zeroconf()
        browser_cls = MagicMock()
        browser_cls.return_value.async_cancel = AsyncMock()
        listener = MDNSListener(service_types=["_hap._tcp.local."], browse_timeout=0)
        with patch("pulsescan.modules.mdns.AsyncZeroconf", return_value=aiozc), \
                patch("pulsescan.modules.mdns.AsyncServiceBrowser", browser_cls):
            asyncio.run(listener.scan())
        assert browser_cls.call_args.args[1] == ["_hap._tcp.local."]
