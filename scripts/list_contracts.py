#!/usr/bin/python3

from pathlib import Path

import click

from dagdeploy.registry import DeploymentRegistry, JSONRegistryStore
from dagdeploy.utils import _load_json


def _display_registry_records(registry_filepath: Path) -> None:
    """Display registry records grouped by chain ID."""
    chain_ids = sorted(int(chain_id) for chain_id in _load_json(registry_filepath))
    click.secho(f"\n{registry_filepath.name}", fg="green")
    for chain_id in chain_ids:
        click.secho(f"    Chain {chain_id}", fg="yellow")
        registry = DeploymentRegistry(JSONRegistryStore(registry_filepath, chain_id=chain_id))
        for index, record in enumerate(registry.records(), start=1):
            click.secho(f"        {index}. {record.name} {record.address}", fg="cyan")
            if record.implementation_address:
                click.secho(f"           implementation {record.implementation_address}")
            if record.pending_setup:
                click.secho(
                    f"           pending setup: {', '.join(record.pending_setup)}", fg="red"
                )


@click.command(name="list-contracts")
@click.option(
    "--registry-filepath",
    "-f",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    help="Registry file to list",
    required=True,
)
def cli(registry_filepath):
    """List all contracts recorded in a registry file."""
    _display_registry_records(registry_filepath)


if __name__ == "__main__":
    cli()
