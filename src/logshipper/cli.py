from __future__ import annotations

import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from .errors import ResolutionError
from .resolver import EndpointResolver
from .settings import ShipperSettings
from .shipper import LogShipper

app = typer.Typer(help="logshipper operational CLI")


def server_opt() -> str:
    return typer.Option(..., "--server", envvar="LOGSHIPPER_SERVER_SPEC", help="host:port or SRV name")


@app.command("resolve")
def resolve(spec: str = typer.Argument(..., help="host:port or SRV name")):
    """Resolve a server spec and print candidate endpoints, best first."""
    try:
        endpoints = EndpointResolver(spec).resolve()
    except ResolutionError as e:
        logger.error(f"Resolution failed: {e}")
        raise typer.Exit(code=1)
    for ep in endpoints:
        typer.echo(
            json.dumps(
                {"host": ep.host, "port": ep.port, "priority": ep.priority, "weight": ep.weight}
            )
        )


@app.command("ship")
def ship(
    input_path: Optional[Path] = typer.Argument(None, help="NDJSON file (default: stdin)"),
    server: str = server_opt(),
    capacity: int = typer.Option(1000, "--capacity", help="Queue capacity"),
    overflow: str = typer.Option("evict-oldest", "--overflow", help="reject | evict-oldest"),
    timeout: float = typer.Option(5.0, "--timeout", help="Seconds to drain at exit"),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Expose Prometheus metrics on this port while shipping"
    ),
):
    """Ship NDJSON events (one object per line) to the collector."""
    try:
        settings = ShipperSettings(
            server_spec=server,
            queue_capacity=capacity,
            overflow_policy=overflow,
            shutdown_timeout=timeout,
        )
        shipper = LogShipper(settings)
    except (ValueError, ResolutionError) as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(code=2)

    if metrics_port is not None:
        start_http_server(metrics_port, registry=shipper.metrics.registry)
        logger.info(f"Prometheus metrics available at http://localhost:{metrics_port}/metrics")

    skipped = 0
    stream = input_path.open("r", encoding="utf-8") if input_path else sys.stdin
    with shipper:
        try:
            for lineno, line in enumerate(stream, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping line {lineno}: {e}")
                    skipped += 1
                    continue
                shipper.submit(event)
        finally:
            if input_path:
                stream.close()

    snap = shipper.metrics_snapshot()
    out = asdict(snap)
    out["skipped"] = skipped
    typer.echo(json.dumps(out, indent=2))
    if snap.dropped_total:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
