"""CLI entry point for collab-sim."""

from __future__ import annotations

import asyncio
import logging
import sys
import time

import click
import yaml

from . import __version__

logger = logging.getLogger("collab-sim")


def _configure_logging(verbose: bool) -> None:
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(log_format, datefmt=date_format))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        handlers=[console],
        force=True,
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


async def _run_bench(
    users: int, messages: int, condition: str | None, config
) -> dict:
    from .client import make_reference_app
    from .metrics import RealtimeMetricsCollector
    from .models import make_message
    from .orchestrator import MultiUserSimulator
    from .runtime import ClientHost, Page

    collector = RealtimeMetricsCollector()
    collector.set_concurrent_user_count(users)
    host = ClientHost(app=make_reference_app(config.websocket.url, send_auth=False))
    sim = MultiUserSimulator(users, config.mock_server)

    async with sim.session(host):
        collector.attach(sim.get_broker().events)
        if condition:
            profile = config.condition(condition)
            for i in range(users):
                sim.network(i).set_network_condition(profile)

        collector.start_connection_timer()
        await sim.navigate_all_users("/dashboard")
        await sim.wait_for_connections(config.websocket.connection_timeout / 1000)
        collector.record_connection_established()

        async def traffic(page: Page, index: int) -> None:
            sock = page.active_socket
            for seq in range(messages):
                sock.send(
                    make_message(
                        "bench.ping", {"seq": seq}, user_id=f"user-{index}"
                    ).to_wire()
                )
                await asyncio.sleep(0)

        start = time.monotonic()
        await sim.perform_concurrent_actions([traffic] * users)
        await sim.flush()
        elapsed = time.monotonic() - start
        collector.detach()

    summary = collector.summary()
    summary["total_test_time"] = round(elapsed * 1000, 2)
    summary["throughput"] = (
        round(collector.messages_received / elapsed, 2) if elapsed > 0 else 0.0
    )
    return summary


@click.group()
@click.version_option(version=__version__, prog_name="collab-sim")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def main(verbose: bool) -> None:
    """collab-sim: real-time collaboration test harness."""
    _configure_logging(verbose)


@main.command()
@click.option("--config", "config_path", default=None, help="Config file path")
@click.option("--users", default=3, type=int, show_default=True)
@click.option("--messages", default=10, type=int, show_default=True, help="Per user")
@click.option("--condition", default=None, help="Named network condition")
@click.option("--delay-ms", default=None, type=float, help="Broker delay override")
@click.option("--failure-rate", default=None, type=float, help="Broker drop rate override")
def bench(
    config_path: str | None,
    users: int,
    messages: int,
    condition: str | None,
    delay_ms: float | None,
    failure_rate: float | None,
) -> None:
    """Run an in-process fan-out benchmark and check thresholds."""
    from .config import get_test_config, load_config
    from .exceptions import CollabSimError
    from .metrics import validate_performance_thresholds

    try:
        config = load_config(config_path)
        server: dict = {}
        if delay_ms is not None:
            server["delay_ms"] = delay_ms
        if failure_rate is not None:
            server["failure_rate"] = failure_rate
        if server:
            config = get_test_config({"mock_server": server}, base=config)
        summary = asyncio.run(_run_bench(users, messages, condition, config))
    except CollabSimError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"\n  Benchmark: {users} users x {messages} messages")
    for key, value in summary.items():
        click.echo(f"    {key}: {value}")

    report = validate_performance_thresholds(summary, config)
    if report.passed:
        click.echo("\n  All thresholds passed.")
        return
    click.echo("\n  Threshold failures:")
    for failure in report.failures:
        click.echo(f"    - {failure}")
    sys.exit(1)


@main.command("config")
@click.option("--config", "config_path", default=None, help="Config file path")
def show_config(config_path: str | None) -> None:
    """Print the effective configuration as YAML."""
    from .config import load_config
    from .exceptions import ConfigError

    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    click.echo(yaml.dump(config.model_dump(), default_flow_style=False, sort_keys=False))


@main.command()
def scenarios() -> None:
    """List predefined collaboration scenarios."""
    from .scenarios import PREDEFINED_SCENARIOS

    for scenario in PREDEFINED_SCENARIOS:
        click.echo(
            f"  {scenario.name} ({scenario.user_count} users, "
            f"{scenario.duration}ms): {scenario.description}"
        )


if __name__ == "__main__":
    main()
