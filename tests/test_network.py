"""Tests for network condition profiles and NetworkSimulator."""

from __future__ import annotations

import asyncio

import pytest

from collab_sim.exceptions import ConfigError
from collab_sim.models import NetworkCondition
from collab_sim.network import NetworkConditions, NetworkSimulator
from collab_sim.runtime import NetworkLayer


class TestNetworkConditions:
    def test_named_profiles(self):
        assert NetworkConditions.FAST_3G.latency == 562
        assert NetworkConditions.SLOW_3G.download_throughput == 500_000
        assert NetworkConditions.OFFLINE.offline
        assert set(NetworkConditions.as_dict()) == set(NetworkConditions.names())

    def test_get_is_case_insensitive(self):
        assert NetworkConditions.get("slow_wifi") is NetworkConditions.SLOW_WIFI

    def test_get_unknown(self):
        with pytest.raises(ConfigError, match="Unknown network condition"):
            NetworkConditions.get("5G")


class TestNetworkSimulator:
    def test_apply_profile(self):
        net = NetworkLayer()
        sim = NetworkSimulator(net)
        sim.set_network_condition(NetworkConditions.FAST_3G)
        assert net.latency_ms == 562
        assert net.download_bytes_per_sec == 1_600_000
        assert net.upload_bytes_per_sec == 750_000
        assert not sim.is_offline

    def test_offline_profile_goes_offline(self):
        sim = NetworkSimulator(NetworkLayer())
        sim.set_network_condition(NetworkConditions.OFFLINE)
        assert sim.is_offline

    def test_online_profile_restores(self):
        sim = NetworkSimulator(NetworkLayer())
        sim.go_offline()
        sim.set_network_condition(NetworkConditions.FAST_WIFI)
        assert not sim.is_offline

    def test_zero_download_is_offline(self):
        sim = NetworkSimulator(NetworkLayer())
        sim.set_network_condition(
            NetworkCondition(latency=10, download_throughput=0, upload_throughput=500_000)
        )
        assert sim.is_offline

    @pytest.mark.asyncio
    async def test_zero_upload_cuts_uploads_only(self):
        net = NetworkLayer()
        sim = NetworkSimulator(net)
        sim.set_network_condition(
            NetworkCondition(latency=0, download_throughput=500_000, upload_throughput=0)
        )
        assert not sim.is_offline
        assert net.upload_bytes_per_sec == 0
        assert await net.transmit(10, "upload") is False
        assert await net.transmit(10, "download") is True

    def test_packet_loss(self):
        net = NetworkLayer()
        NetworkSimulator(net).set_network_condition(
            NetworkCondition(latency=0, download_throughput=1, upload_throughput=1, packet_loss=25)
        )
        assert net.packet_loss_percent == 25

    def test_simulate_latency(self):
        net = NetworkLayer()
        NetworkSimulator(net).simulate_latency(250)
        assert net.latency_ms == 250
        assert net.download_bytes_per_sec == 1_000_000

    @pytest.mark.asyncio
    async def test_offline_blocks_and_online_restores(self):
        net = NetworkLayer()
        sim = NetworkSimulator(net)
        sim.go_offline()
        assert await net.transmit(10) is False
        sim.go_online()
        assert await net.transmit(10) is True

    @pytest.mark.asyncio
    async def test_intermittent_connection_cycles_and_ends_online(self):
        net = NetworkLayer()
        sim = NetworkSimulator(net)
        observed = []

        async def watch():
            for _ in range(20):
                observed.append(sim.is_offline)
                await asyncio.sleep(0.005)

        await asyncio.gather(
            sim.simulate_intermittent_connection(online_ms=20, offline_ms=20, cycles=2),
            watch(),
        )
        assert True in observed
        assert False in observed
        assert not sim.is_offline

    @pytest.mark.asyncio
    async def test_intermittent_connection_cancelled_ends_online(self):
        sim = NetworkSimulator(NetworkLayer())
        task = asyncio.ensure_future(
            sim.simulate_intermittent_connection(online_ms=5, offline_ms=1000, cycles=1)
        )
        await asyncio.sleep(0.05)
        assert sim.is_offline
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not sim.is_offline
