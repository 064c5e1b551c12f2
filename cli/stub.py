"""CLI command for running the stub inference service."""

from __future__ import annotations

import os
import socket

import click


def _free_port(host: str) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@click.command("stub-service")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=0, type=int, help="Port to bind (0 picks a free one)")
@click.option("--discovery-file", default=None,
              help="Where to publish the endpoint (default: $FOUNDRY_LOCAL_DISCOVERY_FILE)")
@click.option("--api-key", default=None, help="Require this bearer token")
@click.option("--load-delay", default=0.0, type=float, help="Seconds a load stays 'loading'")
@click.option("--reject", multiple=True, help="Variant id that always fails to load")
def stub_service(
    host: str,
    port: int,
    discovery_file: str | None,
    api_key: str | None,
    load_delay: float,
    reject: tuple[str, ...],
) -> None:
    """Run a stand-in for the inference service's model-management API."""
    import uvicorn

    from foundry_local.stub.app import create_app

    discovery_file = discovery_file or os.environ.get("FOUNDRY_LOCAL_DISCOVERY_FILE")
    if port == 0:
        port = _free_port(host)
    app = create_app(
        api_key=api_key,
        load_delay=load_delay,
        reject=reject,
        discovery_file=discovery_file,
        host=host,
        port=port,
    )
    click.echo(f"Starting stub service on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="warning")
