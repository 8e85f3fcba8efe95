"""CLI for conduit-expose.

Provides a rich command-line interface using Typer for:
- Serving the authenticated status endpoint (`serve`)
- Running a single collection cycle and printing it (`collect`)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer
import uvicorn
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from conduit_expose.api.app import create_app
from conduit_expose.core.config import AgentConfig, load_config
from conduit_expose.core.schemas import StatusResponse
from conduit_expose.monitoring.docker_collector import RUNTIME_ERRORS, DockerRuntime
from conduit_expose.monitoring.geoip import GeoIPResolver
from conduit_expose.orchestrator import CollectionOrchestrator, Poller, StatusCache
from conduit_expose.utils.logging import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="conduit-expose",
    help="Telemetry agent for Conduit containers",
    add_completion=False,
)

console = Console()


def _load(config: Path | None) -> AgentConfig:
    try:
        return load_config(config)
    except (FileNotFoundError, ValueError, ValidationError) as e:
        console.print(f"[bold red]Error loading config: {e}[/]")
        raise typer.Exit(1) from e


def _connect_runtime(config: AgentConfig) -> DockerRuntime:
    try:
        runtime = DockerRuntime.from_env(timeout=config.docker_timeout_seconds)
        runtime.ping()
    except RUNTIME_ERRORS as e:
        logger.error(f"Cannot reach Docker daemon: {e}")
        raise typer.Exit(1) from e
    return runtime


@app.command()
def serve(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Optional configuration file (YAML/JSON)"
    ),
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Logging level"),
    log_file: Path | None = typer.Option(
        None, "--log-file", help="Write logs to file in addition to console"
    ),
    json_logs: bool = typer.Option(
        False, "--json-logs", help="Output logs in JSON format (for log shippers)"
    ),
) -> None:
    """Poll the fleet and serve the snapshot over HTTP."""
    setup_logging(
        level=log_level, log_file=log_file, json_format=json_logs, rich_console=not json_logs
    )
    agent_config = _load(config)

    if not agent_config.auth_secret:
        logger.error("CONDUIT_AUTH_SECRET environment variable is required")
        raise typer.Exit(1)

    runtime = _connect_runtime(agent_config)
    geo = GeoIPResolver.open(agent_config.geoip_path)
    orchestrator = CollectionOrchestrator(agent_config, runtime, geo=geo)
    cache = StatusCache()
    poller = Poller(orchestrator, cache, agent_config.poll_interval_seconds)

    host, port = agent_config.listen_host_port
    logger.info(f"conduit-expose listening on {host}:{port}")
    poller.start()
    try:
        # uvicorn installs the SIGINT/SIGTERM handlers and returns on shutdown
        uvicorn.run(
            create_app(cache, agent_config.auth_secret),
            host=host,
            port=port,
            log_level=log_level.lower(),
            log_config=None,
        )
    finally:
        logger.info("Shutting down...")
        poller.stop()
        runtime.close()
        if geo is not None:
            geo.close()


@app.command()
def collect(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Optional configuration file (YAML/JSON)"
    ),
    output_format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level"),
) -> None:
    """Run one collection cycle and print the snapshot."""
    setup_logging(level=log_level)
    agent_config = _load(config)

    runtime = _connect_runtime(agent_config)
    geo = GeoIPResolver.open(agent_config.geoip_path)
    try:
        status = CollectionOrchestrator(agent_config, runtime, geo=geo).collect()
    finally:
        runtime.close()
        if geo is not None:
            geo.close()

    if output_format == "json":
        console.print_json(json.dumps(status.to_json_dict()))
    else:
        _show_status_table(status)


def _show_status_table(status: StatusResponse) -> None:
    """Display a snapshot as rich tables."""
    table = Table(title=f"Containers on {status.server_id}")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("CPU %", justify="right")
    table.add_column("Memory (MB)", justify="right")
    table.add_column("Uptime", justify="right")
    table.add_column("Connected", justify="right")

    for container in status.containers:
        style = {"running": "green", "down": "red"}.get(container.status, "yellow")
        connected = (
            str(container.app_metrics.connected_clients) if container.app_metrics else "-"
        )
        table.add_row(
            container.name,
            f"[{style}]{container.status}[/]",
            f"{container.cpu_percent:.2f}",
            f"{container.memory_mb:.2f}",
            container.uptime,
            connected,
        )
    console.print(table)

    console.print(
        f"[bold]Connected:[/] {status.connected_clients}  "
        f"[bold]Connecting:[/] {status.connecting_clients}  "
        f"[bold]Manager data:[/] {'yes' if status.manager_available else 'no'}"
    )
    if status.clients_by_country:
        top = ", ".join(f"{c.country}={c.connections}" for c in status.clients_by_country[:10])
        console.print(f"[bold]Top countries:[/] {top}")


if __name__ == "__main__":
    app()
