"""
Unit tests for record merging and the discovery orchestrator.

All sources are faked; no sockets are opened.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from pulsescan.modules import arp, discovery
from pulsescan.modules.device import DiscoveredDevice
from pulsescan.modules.discovery import DiscoveryEngine, discover_devices
from pulsescan.modules.merge import merge_devices, merge_into
from pulsescan.modules.network_utils import InvalidCIDRError


class FakeListener:
    """Announcement source returning fixed devices after an optional delay."""

    def __init__(self, devices=(), delay=0.0, error=None):
        self.devices = list(devices)
        self.delay = delay
        self.error = error
        self.calls = 0

    async def scan(self, log=None):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.devices)


def _local_patches(arp_result=None, arp_delay=0.0, arp_error=None, local=True):
    async def fake_arp_scan(cidr, log=None):
        await asyncio.sleep(arp_delay)
        if arp_error:
            raise arp_error
        return list(arp_result or [])

    populate = AsyncMock(return_value=None)
    return populate, [
        patch.object(discovery, "is_local_network", return_value=local),
        patch.object(discovery, "populate_arp_cache", populate),
        patch.object(discovery, "arp_scan", side_effect=fake_arp_scan),
    ]


def _run(engine, cidr, patches, **kwargs):
    for p in patches:
        p.start()
    try:
        return asyncio.run(engine.discover(cidr, **kwargs))
    finally:
        for p in reversed(patches):
            p.stop()


# ─── Merge Tests ─────────────────────────────────────────────────────────────


class TestMerge:

    def test_merge_of_nothing(self):
        assert merge_devices() == []
        assert merge_devices([], [], []) == []

    def test_single_source_is_identity(self):
        devices = [
            DiscoveredDevice(ip_address="10.0.0.1", hostname="a"),
            DiscoveredDevice(ip_address="10.0.0.2", open_ports={22}),
        ]
        assert merge_devices(devices) == devices

    def test_merge_is_idempotent(self):
        devices = [DiscoveredDevice(ip_address="10.0.0.1", hostname="a", open_ports={80})]
        assert merge_devices(devices, devices) == devices

    def test_one_record_per_ip(self):
        a = [DiscoveredDevice(ip_address="10.0.0.1"), DiscoveredDevice(ip_address="10.0.0.2")]
        b = [DiscoveredDevice(ip_address="10.0.0.2"), DiscoveredDevice(ip_address="10.0.0.3")]
        assert [d.ip_address for d in merge_devices(a, b)] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_first_non_empty_scalar_wins(self):
        high = DiscoveredDevice(ip_address="10.0.0.1", hostname="x")
        low = DiscoveredDevice(ip_address="10.0.0.1", hostname="y")
        assert merge_devices([high], [low])[0].hostname == "x"
        assert merge_devices([low], [high])[0].hostname == "y"

    def test_empty_scalar_is_filled_by_later_source(self):
        arp = DiscoveredDevice(ip_address="10.0.0.1", mac_address="aa:bb:cc:dd:ee:ff")
        mdns = DiscoveredDevice(ip_address="10.0.0.1", hostname="printer.local")
        merged = merge_devices([arp], [mdns])[0]
        assert merged.mac_address == "aa:bb:cc:dd:ee:ff"
        assert merged.hostname == "printer.local"

    def test_empty_string_does_not_block(self):
        first = DiscoveredDevice(ip_address="10.0.0.1", hostname="")
        second = DiscoveredDevice(ip_address="10.0.0.1", hostname="nas.local")
        assert merge_devices([first], [second])[0].hostname == "nas.local"

    @pytest.mark.parametrize("first,second", [
        ({80}, {80, 443}),
        ({80, 443}, {80}),
    ])
    def test_set_union_independent_of_order(self, first, second):
        a = DiscoveredDevice(ip_address="10.0.0.1", open_ports=first)
        b = DiscoveredDevice(ip_address="10.0.0.1", open_ports=second)
        assert merge_devices([a], [b])[0].open_ports == {80, 443}

    def test_set_fields_union(self):
        a = DiscoveredDevice(ip_address="10.0.0.1", open_ports={80}, services={"_http._tcp"})
        b = DiscoveredDevice(ip_address="10.0.0.1", open_ports={443}, os_hints={"Linux"})
        merged = merge_devices([a], [b])[0]
        assert merged.open_ports == {80, 443}
        assert merged.services == {"_http._tcp"}
        assert merged.os_hints == {"Linux"}

    def test_inputs_are_not_mutated(self):
        a = DiscoveredDevice(ip_address="10.0.0.1", open_ports={80})
        b = DiscoveredDevice(ip_address="10.0.0.1", open_ports={443}, hostname="h")
        merge_devices([a], [b])
        assert a.open_ports == {80}
        assert a.hostname is None
        assert b.open_ports == {443}

    def test_merge_into_returns_existing(self):
        existing = DiscoveredDevice(ip_address="10.0.0.1")
        incoming = DiscoveredDevice(ip_address="10.0.0.1", manufacturer="Acme")
        assert merge_into(existing, incoming) is existing
        assert existing.manufacturer == "Acme"


# ─── Local strategy Tests ────────────────────────────────────────────────────


class TestLocalDiscovery:

    CIDR = "192.168.1.0/24"

    def _engine(self, mdns=(), ssdp=(), **kwargs):
        mdns_listener = kwargs.pop("mdns_listener", None) or FakeListener(mdns)
        ssdp_listener = kwargs.pop("ssdp_listener", None) or FakeListener(ssdp)
        return DiscoveryEngine(
            mdns_listener=mdns_listener,
            ssdp_listener=ssdp_listener,
            settle_delay=0,
            **kwargs,
        )

    def test_sources_merged_into_one_record_per_ip(self):
        arp = [DiscoveredDevice(ip_address="192.168.1.10", mac_address="aa:bb:cc:dd:ee:ff")]
        mdns = [
            DiscoveredDevice(ip_address="192.168.1.10", hostname="printer.local"),
            DiscoveredDevice(ip_address="10.0.0.5", hostname="elsewhere.local"),
        ]
        upnp = {"friendly_name": "Hue Bridge", "location": "http://192.168.1.20/description.xml"}
        ssdp = [DiscoveredDevice(ip_address="192.168.1.20", upnp_info=upnp)]

        populate, patches = _local_patches(arp)
        engine = self._engine(mdns, ssdp)
        devices = _run(engine, self.CIDR, patches)

        assert len(devices) == 2
        by_ip = {d.ip_address: d for d in devices}
        printer = by_ip["192.168.1.10"]
        assert printer.mac_address == "aa:bb:cc:dd:ee:ff"
        assert printer.hostname == "printer.local"
        bridge = by_ip["192.168.1.20"]
        assert bridge.upnp_info == upnp
        assert bridge.mac_address is None
        assert "10.0.0.5" not in by_ip
        populate.assert_awaited_once()

        stats = engine.last_stats
        assert stats["strategy"] == "local"
        assert stats["arp"] == 1
        assert stats["mdns"] == 1
        assert stats["mdns_out_of_range"] == 1
        assert stats["ssdp"] == 1
        assert stats["total"] == 2

    def test_priority_independent_of_completion_order(self):
        arp = [DiscoveredDevice(ip_address="192.168.1.10", hostname="arp-name")]
        mdns = FakeListener([DiscoveredDevice(ip_address="192.168.1.10", hostname="mdns-name")], delay=0)
        ssdp = FakeListener([DiscoveredDevice(ip_address="192.168.1.10", hostname="ssdp-name")], delay=0)

        # ARP finishes last but still has the highest priority.
        _, patches = _local_patches(arp, arp_delay=0.05)
        engine = self._engine(mdns_listener=mdns, ssdp_listener=ssdp)
        devices = _run(engine, self.CIDR, patches)

        assert devices[0].hostname == "arp-name"

    def test_mdns_outranks_ssdp(self):
        mdns = FakeListener([DiscoveredDevice(ip_address="192.168.1.10", hostname="mdns-name")], delay=0.05)
        ssdp = FakeListener([DiscoveredDevice(ip_address="192.168.1.10", hostname="ssdp-name")])

        _, patches = _local_patches([])
        devices = _run(self._engine(mdns_listener=mdns, ssdp_listener=ssdp), self.CIDR, patches)

        assert devices[0].hostname == "mdns-name"

    def test_failing_source_contributes_nothing(self):
        mdns = FakeListener(error=RuntimeError("multicast unavailable"))
        ssdp = [DiscoveredDevice(ip_address="192.168.1.20")]

        _, patches = _local_patches(arp_error=OSError("permission denied"))
        devices = _run(self._engine(mdns_listener=mdns, ssdp=ssdp), self.CIDR, patches)

        assert [d.ip_address for d in devices] == ["192.168.1.20"]

    def test_all_sources_empty(self):
        _, patches = _local_patches([])
        assert _run(self._engine(), self.CIDR, patches) == []

    def test_ping_probe_not_used(self):
        probe = AsyncMock(return_value=True)
        _, patches = _local_patches([])
        _run(self._engine(ping_probe=probe), self.CIDR, patches)
        probe.assert_not_called()


# ─── Remote strategy Tests ───────────────────────────────────────────────────


class TestRemoteDiscovery:

    def test_ping_sweep_only(self):
        async def probe(ip, timeout):
            return ip in {"10.50.0.1", "10.50.0.9"}

        mdns = FakeListener([DiscoveredDevice(ip_address="10.50.0.1", hostname="x")])
        ssdp = FakeListener()
        engine = DiscoveryEngine(mdns_listener=mdns, ssdp_listener=ssdp, ping_probe=probe, settle_delay=0)
        populate, patches = _local_patches(local=False)

        devices = _run(engine, "10.50.0.0/24", patches)

        assert [d.ip_address for d in devices] == ["10.50.0.1", "10.50.0.9"]
        assert all(d.mac_address is None and d.manufacturer is None for d in devices)
        assert all(d.hostname is None for d in devices)
        populate.assert_not_called()
        assert mdns.calls == 0
        assert ssdp.calls == 0
        assert engine.last_stats["strategy"] == "remote"
        assert engine.last_stats["ping"] == 2

    def test_ping_concurrency_forwarded(self):
        sweep = AsyncMock(return_value=[])
        with patch.object(discovery, "is_local_network", return_value=False), \
                patch.object(discovery, "ping_sweep", sweep):
            asyncio.run(DiscoveryEngine(settle_delay=0).discover("10.50.0.0/24", ping_concurrency=7))
        assert sweep.await_args.args[2] == 7


# ─── Entry point Tests ───────────────────────────────────────────────────────


class TestDiscoverDevices:

    @pytest.mark.parametrize("bad", ["", "not-a-cidr", "10.0.0.0/40"])
    def test_invalid_cidr_raises_before_io(self, bad):
        classify = patch.object(discovery, "is_local_network")
        with classify as mock_classify:
            with pytest.raises(InvalidCIDRError):
                asyncio.run(discover_devices(bad, settle_delay=0))
        mock_classify.assert_not_called()

    def test_returns_merged_devices(self):
        arp = [DiscoveredDevice(ip_address="192.168.1.10", mac_address="aa:bb:cc:dd:ee:ff")]
        _, patches = _local_patches(arp)
        patches += [
            patch.object(discovery, "MDNSListener", return_value=FakeListener()),
            patch.object(discovery, "SSDPListener", return_value=FakeListener()),
        ]
        for p in patches:
            p.start()
        try:
            devices = asyncio.run(discover_devices("192.168.1.0/24", settle_delay=0))
        finally:
            for p in reversed(patches):
                p.stop()

        assert [d.mac_address for d in devices] == ["aa:bb:cc:dd:ee:ff"]


# ─── Substituted sources and minimal loggers ─────────────────────────────────


class InfoOnly:
    """Caller logger exposing nothing but ``info``."""

    def __init__(self):
        self.messages = []

    def info(self, msg, *args, **kwargs):
        self.messages.append(msg)


ARP_AN = "? (192.168.1.10) at aa:bb:cc:dd:ee:ff on en0 ifscope [ethernet]\n"


class TestEngineSubstitution:

    def test_arp_functions_can_be_injected(self):
        warmup = AsyncMock(return_value=None)
        scanner = AsyncMock(return_value=[
            DiscoveredDevice(ip_address="192.168.1.10", mac_address="aa:bb:cc:dd:ee:ff"),
        ])
        engine = DiscoveryEngine(
            mdns_listener=FakeListener(),
            ssdp_listener=FakeListener(),
            settle_delay=0,
            arp_warmup=warmup,
            arp_scanner=scanner,
        )
        with patch.object(discovery, "is_local_network", return_value=True):
            devices = asyncio.run(engine.discover("192.168.1.0/24"))

        assert [d.mac_address for d in devices] == ["aa:bb:cc:dd:ee:ff"]
        assert warmup.await_args.args[0] == "192.168.1.0/24"
        assert scanner.await_args.args[0] == "192.168.1.0/24"

    def test_failing_warmup_does_not_abort(self):
        engine = DiscoveryEngine(
            mdns_listener=FakeListener([DiscoveredDevice(ip_address="192.168.1.30")]),
            ssdp_listener=FakeListener(),
            settle_delay=0,
            arp_warmup=AsyncMock(side_effect=RuntimeError("no socket")),
            arp_scanner=AsyncMock(return_value=[]),
        )
        with patch.object(discovery, "is_local_network", return_value=True):
            devices = asyncio.run(engine.discover("192.168.1.0/24"))
        assert [d.ip_address for d in devices] == ["192.168.1.30"]


class TestInfoOnlyLogger:

    def test_remote_path_with_failing_ping(self):
        async def probe(ip, timeout):
            if ip == "10.9.9.2":
                raise OSError("sendto failed")
            return ip in {"10.9.9.1", "10.9.9.3"}

        log = InfoOnly()
        engine = DiscoveryEngine(
            mdns_listener=FakeListener(), ssdp_listener=FakeListener(),
            ping_probe=probe, settle_delay=0,
        )
        with patch.object(discovery, "is_local_network", return_value=False):
            devices = asyncio.run(engine.discover("10.9.9.0/29", log))

        assert [d.ip_address for d in devices] == ["10.9.9.1", "10.9.9.3"]
        assert any("is REMOTE" in m for m in log.messages)

    def test_local_path_with_arp_fallback_and_failing_source(self):
        log = InfoOnly()
        engine = DiscoveryEngine(
            mdns_listener=FakeListener(error=RuntimeError("multicast unavailable")),
            ssdp_listener=FakeListener(),
            settle_delay=0,
            arp_warmup=AsyncMock(return_value=None),
        )
        run = AsyncMock(side_effect=[(-1, "", "not found"), (0, ARP_AN, "")])
        with patch.object(discovery, "is_local_network", return_value=True), \
                patch("builtins.open", side_effect=OSError("No such file")), \
                patch.object(arp, "_run_async", run), \
                patch.object(arp, "lookup_vendor", AsyncMock(return_value=None)):
            devices = asyncio.run(engine.discover("192.168.1.0/24", log))

        assert [d.mac_address for d in devices] == ["aa:bb:cc:dd:ee:ff"]
        assert any("is LOCAL" in m for m in log.messages)

    def test_local_path_with_arp_failure(self):
        log = InfoOnly()
        engine = DiscoveryEngine(
            mdns_listener=FakeListener(), ssdp_listener=FakeListener(),
            settle_delay=0, arp_warmup=AsyncMock(return_value=None),
        )
        with patch.object(discovery, "is_local_network", return_value=True), \
                patch.object(arp, "read_arp_table", AsyncMock(side_effect=RuntimeError("boom"))):
            assert asyncio.run(engine.discover("192.168.1.0/24", log)) == []
