#!/usr/bin/env python3
"""foundry-local: manage models for the local inference service.

Usage:

    foundry-local catalog
    foundry-local download phi-4-mini
    foundry-local run phi-4-mini
    foundry-local cache list
    foundry-local stub-service --port 5273
"""

import logging

import click

from cli.models import cache, catalog, download, run, select, status, unload
from cli.stub import stub_service


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.option("--hardware", default=None, help="Override detected hardware, e.g. 'cuda' or 'npu,gpu'")
@click.option("--log-level", default="warning", show_default=True,
              type=click.Choice(["debug", "info", "warning", "error"]))
@click.pass_context
def main(ctx, config_path, hardware, log_level):
    """Local model lifecycle toolkit."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["hardware"] = hardware


main.add_command(catalog)
main.add_command(select)
main.add_command(download)
main.add_command(run)
main.add_command(unload)
main.add_command(status)
main.add_command(cache)
main.add_command(stub_service)


if __name__ == "__main__":
    main()
