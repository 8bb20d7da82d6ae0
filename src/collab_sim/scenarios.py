"""Collaboration scenarios: scripted per-user actions run concurrently.

A ``CollaborationScenario`` holds one action list per user. Each user's list
runs sequentially while all users run at once, then ``expected_outcome``
checks the pages. ``ScenarioDefinition`` is the declarative form used for
predefined scenarios and test matrices.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from .config import BrokerOptions, PerformanceConfig
from .exceptions import ChannelNotOpenError, ConfigError, ConsistencyError, SessionCountError
from .metrics import RealtimeMetricsCollector, ThresholdReport, validate_performance_thresholds
from .models import NetworkCondition, RealtimeMessage
from .network import NetworkConditions
from .orchestrator import MultiUserSimulator
from .runtime import ClientHost, Page

logger = logging.getLogger("collab-sim")

Outcome = Callable[[list[Page]], Awaitable[None]]


class UserAction(BaseModel):
    type: Literal["navigate", "send", "wait", "custom"]
    url: str | None = None
    message: RealtimeMessage | None = None
    delay: float | None = None  # ms, for "wait"
    custom_action: Callable[[Page], Awaitable[None]] | None = None
    user_index: int | None = None  # None = every user


@dataclass
class CollaborationScenario:
    name: str
    user_count: int
    actions: list[list[UserAction]]
    expected_outcome: Outcome | None = None
    timeout_ms: float | None = None
    network_condition: NetworkCondition | None = None  # applied to every user
    thresholds: PerformanceConfig | None = None


class ScenarioDefinition(BaseModel):
    name: str
    description: str = ""
    user_count: int = Field(2, ge=1)
    duration: int = 30000  # ms
    network_condition: str | None = None
    actions: list[UserAction] = Field(default_factory=list)
    expected_outcome: str = ""
    performance_thresholds: dict[str, Any] | None = None

    def to_collaboration_scenario(
        self, expected_outcome: Outcome | None = None
    ) -> CollaborationScenario:
        """Split the flat action list into per-user lists by ``user_index``.

        The named network condition and the threshold overrides are resolved
        here, so a bad name fails before any session starts.

        Raises:
            ConfigError: On an out-of-range ``user_index``, an unknown network
                condition, or malformed thresholds.
        """
        per_user: list[list[UserAction]] = [[] for _ in range(self.user_count)]
        for action in self.actions:
            if action.user_index is None:
                for actions in per_user:
                    actions.append(action)
            elif 0 <= action.user_index < self.user_count:
                per_user[action.user_index].append(action)
            else:
                raise ConfigError(
                    f"Scenario {self.name!r}: action targets user {action.user_index} "
                    f"but only {self.user_count} users exist"
                )
        condition = (
            NetworkConditions.get(self.network_condition)
            if self.network_condition
            else None
        )
        thresholds = None
        if self.performance_thresholds is not None:
            try:
                thresholds = PerformanceConfig.model_validate(self.performance_thresholds)
            except ValidationError as e:
                raise ConfigError(f"Scenario {self.name!r}: invalid thresholds: {e}") from e
        return CollaborationScenario(
            name=self.name,
            user_count=self.user_count,
            actions=per_user,
            expected_outcome=expected_outcome,
            timeout_ms=self.duration,
            network_condition=condition,
            thresholds=thresholds,
        )


class RealtimeCollaborationTester:
    """Runs collaboration scenarios and measures them."""

    def __init__(
        self,
        user_count: int = 2,
        broker_options: BrokerOptions | None = None,
        *,
        action_delay_ms: float = 100,
        storage_state: dict[str, Any] | str | Path | None = None,
    ) -> None:
        self.simulator = MultiUserSimulator(
            user_count, broker_options, storage_state=storage_state
        )
        self.metrics = RealtimeMetricsCollector()
        self._action_delay_ms = action_delay_ms

    async def initialize(self, host: ClientHost) -> None:
        await self.simulator.initialize(host)
        self.metrics.set_concurrent_user_count(self.simulator.user_count)
        self.metrics.attach(self.simulator.get_broker().events)

    async def run_collaboration_scenario(
        self, scenario: CollaborationScenario
    ) -> ThresholdReport | None:
        """Run every user's actions concurrently, then check the outcome.

        Returns the threshold report when the scenario carries thresholds.
        """
        pages = self.simulator.get_all_pages()
        if scenario.user_count != len(pages):
            raise SessionCountError(
                f"Scenario requires {scenario.user_count} users, "
                f"but {len(pages)} are available"
            )

        logger.info("Running collaboration scenario: %s", scenario.name)
        if scenario.network_condition is not None:
            for i in range(len(pages)):
                self.simulator.network(i).set_network_condition(scenario.network_condition)

        async def run_user(page: Page, index: int) -> None:
            for action in scenario.actions[index]:
                await self._execute_user_action(page, action, index)

        start = time.monotonic()
        run = self.simulator.perform_concurrent_actions(
            [run_user] * len(scenario.actions)
        )
        if scenario.timeout_ms:
            await asyncio.wait_for(run, scenario.timeout_ms / 1000)
        else:
            await run
        await self.simulator.flush()
        elapsed = time.monotonic() - start

        if scenario.expected_outcome is not None:
            await scenario.expected_outcome(pages)
        logger.info("Completed collaboration scenario: %s", scenario.name)

        if scenario.thresholds is None:
            return None
        summary = self.metrics.summary()
        summary["throughput"] = (
            round(self.metrics.messages_received / elapsed, 2) if elapsed > 0 else 0.0
        )
        report = validate_performance_thresholds(summary, scenario.thresholds)
        for failure in report.failures:
            logger.warning("[%s] %s", scenario.name, failure)
        return report

    async def _execute_user_action(self, page: Page, action: UserAction, index: int) -> None:
        logger.debug("User %d executing action: %s", index, action.type)
        if action.type == "navigate":
            if action.url:
                await page.goto(action.url)
                await page.wait_for_load_state()
        elif action.type == "send":
            if action.message is not None:
                sock = page.active_socket
                if sock is None:
                    raise ChannelNotOpenError(f"user-{index} has no open socket")
                sock.send(action.message.to_wire())
        elif action.type == "wait":
            await page.wait_for_timeout(action.delay if action.delay is not None else 1000)
        elif action.type == "custom":
            if action.custom_action is not None:
                await action.custom_action(page)

        # Small pause between actions, like a human would take.
        await page.wait_for_timeout(self._action_delay_ms)

    async def measure_realtime_performance(
        self, test_function: Callable[[], Awaitable[None]]
    ) -> dict[str, Any]:
        self.metrics.reset()
        self.metrics.set_concurrent_user_count(self.simulator.user_count)
        self.metrics.start_connection_timer()

        start = time.monotonic()
        await test_function()
        elapsed_ms = (time.monotonic() - start) * 1000

        summary = self.metrics.summary()
        summary["total_test_time"] = round(elapsed_ms, 2)
        summary["throughput"] = (
            round(self.metrics.messages_received / (elapsed_ms / 1000), 2)
            if elapsed_ms > 0
            else 0.0
        )
        return summary

    async def cleanup(self) -> None:
        self.metrics.detach()
        await self.simulator.cleanup()


async def wait_for_realtime_sync(
    page: Page, timeout_ms: float = 5000, settle_ms: float = 1000
) -> None:
    """Wait until the page's socket is not mid-handshake, then let it settle."""

    async def _ready() -> None:
        while True:
            sock = page.active_socket
            if sock is None or sock.ready_state == 1:
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_ready(), timeout_ms / 1000)
    await page.wait_for_timeout(settle_ms)


def verify_data_consistency(pages: list[Page], extract: Callable[[Page], Any]) -> None:
    """Raise ConsistencyError unless ``extract`` agrees on every page."""
    if not pages:
        return
    reference = extract(pages[0])
    for i, page in enumerate(pages[1:], start=1):
        value = extract(page)
        if value != reference:
            raise ConsistencyError(
                f"user-{i} diverges from user-0: {value!r} != {reference!r}"
            )


def create_test_matrix(
    base: ScenarioDefinition,
    *,
    user_counts: list[int] | None = None,
    network_conditions: list[str] | None = None,
    durations: list[int] | None = None,
) -> list[ScenarioDefinition]:
    """Cartesian product of user counts x network conditions x durations."""
    matrix: list[ScenarioDefinition] = []
    for users in user_counts or [base.user_count]:
        for condition in network_conditions or [base.network_condition or "FAST_WIFI"]:
            for duration in durations or [base.duration]:
                matrix.append(
                    base.model_copy(
                        update={
                            "name": f"{base.name} ({users} users, {condition}, {duration}ms)",
                            "user_count": users,
                            "network_condition": condition,
                            "duration": duration,
                        }
                    )
                )
    return matrix


def _card(user: int) -> RealtimeMessage:
    return RealtimeMessage(
        type="card.created",
        id=f"card-user-{user}",
        payload={"title": f"Card by User {user}"},
        user_id=f"user-{user}",
    )


PREDEFINED_SCENARIOS: list[ScenarioDefinition] = [
    ScenarioDefinition(
        name="Basic Collaboration",
        description="Two users collaborating on a Kanban board",
        user_count=2,
        duration=30000,
        actions=[
            UserAction(type="navigate", url="/kanban"),
            UserAction(type="wait", delay=2000),
            UserAction(type="send", message=_card(0), user_index=0),
            UserAction(type="send", message=_card(1), user_index=1),
            UserAction(type="wait", delay=3000),
        ],
        expected_outcome="Both users see both cards in real-time",
    ),
    ScenarioDefinition(
        name="High Frequency Operations",
        description="Rapid operations from multiple users",
        user_count=5,
        duration=60000,
        network_condition="FAST_3G",
        actions=[UserAction(type="navigate", url="/kanban")]
        + [UserAction(type="send", message=_card(i), user_index=i) for i in range(5)],
        expected_outcome="All operations synchronized without data loss",
        performance_thresholds={"messaging": {"max_average_latency": 2000, "min_throughput": 3}},
    ),
    ScenarioDefinition(
        name="Network Resilience",
        description="Collaboration during network interruptions",
        user_count=3,
        duration=45000,
        actions=[
            UserAction(type="navigate", url="/wiki"),
            UserAction(
                type="send",
                message=RealtimeMessage(
                    type="wiki.page.updated",
                    id="wiki-edit-0",
                    payload={"section": 0},
                    page_id="collab-page",
                ),
                user_index=0,
            ),
            UserAction(type="wait", delay=2000),
        ],
        expected_outcome="Content synchronized after network recovery",
    ),
    ScenarioDefinition(
        name="Scalability Stress Test",
        description="Maximum supported concurrent users",
        user_count=25,
        duration=90000,
        actions=[
            UserAction(type="navigate", url="/dashboard"),
            UserAction(type="wait", delay=30000),
        ],
        expected_outcome="System remains responsive with all users",
        performance_thresholds={
            "connection": {"max_establishment_time": 15000},
            "messaging": {"max_average_latency": 3000, "min_throughput": 2},
        },
    ),
]


def get_scenario_config(name: str) -> ScenarioDefinition | None:
    for scenario in PREDEFINED_SCENARIOS:
        if scenario.name == name:
            return scenario
    return None
