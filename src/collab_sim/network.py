"""Network condition profiles and the per-session network simulator."""

from __future__ import annotations

import asyncio
import logging

from .exceptions import ConfigError
from .models import NetworkCondition
from .runtime import NetworkLayer

logger = logging.getLogger("collab-sim")


class NetworkConditions:
    """Named profiles, so scenarios compare conditions by name."""

    FAST_WIFI = NetworkCondition(
        latency=20, download_throughput=10_000_000, upload_throughput=10_000_000
    )
    SLOW_WIFI = NetworkCondition(
        latency=100, download_throughput=1_000_000, upload_throughput=1_000_000
    )
    FAST_3G = NetworkCondition(
        latency=562, download_throughput=1_600_000, upload_throughput=750_000
    )
    SLOW_3G = NetworkCondition(
        latency=2000, download_throughput=500_000, upload_throughput=500_000
    )
    OFFLINE = NetworkCondition(latency=0, download_throughput=0, upload_throughput=0)

    _NAMES = ("FAST_WIFI", "SLOW_WIFI", "FAST_3G", "SLOW_3G", "OFFLINE")

    @classmethod
    def names(cls) -> tuple[str, ...]:
        return cls._NAMES

    @classmethod
    def as_dict(cls) -> dict[str, NetworkCondition]:
        return {name: getattr(cls, name) for name in cls._NAMES}

    @classmethod
    def get(cls, name: str) -> NetworkCondition:
        key = name.upper()
        if key not in cls._NAMES:
            raise ConfigError(
                f"Unknown network condition: {name!r}. Supported: {', '.join(cls._NAMES)}"
            )
        return getattr(cls, key)


class NetworkSimulator:
    """Imposes a network profile on one session's transport."""

    def __init__(self, network: NetworkLayer, name: str = "") -> None:
        self._network = network
        self._name = name or "session"

    @property
    def network(self) -> NetworkLayer:
        return self._network

    @property
    def is_offline(self) -> bool:
        return self._network.offline

    def set_network_condition(self, condition: NetworkCondition) -> None:
        """Apply a profile. Zero download throughput means offline."""
        if condition.offline:
            self.go_offline()
            return
        net = self._network
        net.latency_ms = condition.latency
        net.download_bytes_per_sec = condition.download_throughput
        net.upload_bytes_per_sec = condition.upload_throughput
        net.packet_loss_percent = condition.packet_loss or 0.0
        net.offline = False
        logger.debug(
            "[%s] network condition latency=%sms down=%s up=%s loss=%s%%",
            self._name,
            condition.latency,
            condition.download_throughput,
            condition.upload_throughput,
            net.packet_loss_percent,
        )

    def simulate_latency(self, latency_ms: float) -> None:
        """Fixed latency on a 1 MB/s link."""
        self.set_network_condition(
            NetworkCondition(
                latency=latency_ms,
                download_throughput=1_000_000,
                upload_throughput=1_000_000,
            )
        )

    def go_offline(self) -> None:
        self._network.offline = True
        logger.info("[%s] network offline", self._name)

    def go_online(self) -> None:
        self._network.offline = False
        logger.info("[%s] network online", self._name)

    async def simulate_intermittent_connection(
        self, online_ms: float = 5000, offline_ms: float = 2000, cycles: int = 3
    ) -> None:
        """Alternate online/offline ``cycles`` times, always ending online."""
        try:
            for _ in range(cycles):
                self.go_online()
                await asyncio.sleep(online_ms / 1000)
                self.go_offline()
                await asyncio.sleep(offline_ms / 1000)
        finally:
            self.go_online()
