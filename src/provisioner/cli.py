"""Provisioner CLI.

Usage:
    provision validate topology.yaml    # Validate and print wavefronts, no remote calls
    provision converge topology.yaml    # Converge against Azure, print a JSON summary
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from .errors import ConfigurationError
from .graph import build_graph
from .main import converge_file, setup_logging
from .topology_loader import load_topology


@click.group()
@click.version_option(version="0.1.0", prog_name="provision")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Topology provisioner.

    \b
    Quick Start:
        provision validate shop.yaml
        provision converge shop.yaml
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING, stream=sys.stderr)


@cli.command()
@click.argument("topology", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def validate(topology: Path, as_json: bool) -> None:
    """Validate TOPOLOGY and print its wavefronts."""
    try:
        desired = load_topology(topology)
        graph = build_graph(desired)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(
            json.dumps(
                {
                    "topology": desired.name,
                    "wavefronts": graph.wavefronts,
                    "outputs": sorted(desired.outputs),
                },
                indent=2,
            )
        )
        return

    click.echo(f"Topology '{desired.name}': {len(desired.nodes)} nodes")
    for index, wave in enumerate(graph.wavefronts, start=1):
        kinds = ", ".join(f"{node_id} ({desired.get(node_id).kind.value})" for node_id in wave)
        click.echo(f"  wavefront {index}: {kinds}")


@cli.command()
@click.argument("topology", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def converge(topology: Path) -> None:
    """Converge TOPOLOGY against Azure and print a JSON summary."""
    sys.exit(asyncio.run(converge_file(topology)))


def main() -> None:
    """Entry point for the provision command."""
    cli()


if __name__ == "__main__":
    main()
