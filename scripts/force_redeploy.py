#!/usr/bin/python3

import click

from dagdeploy.options import params_filepath_option, registry_filepath_option
from dagdeploy.params import DeploymentConfig
from dagdeploy.registry import DeploymentRegistry, JSONRegistryStore


@click.command()
@params_filepath_option
@registry_filepath_option
@click.option(
    "--contract-name",
    "-c",
    "contract_names",
    help="Contract whose registry record is cleared",
    type=click.STRING,
    required=True,
    multiple=True,
)
@click.option(
    "--chain-id",
    help="Chain ID of the records; defaults to the parameters file",
    type=int,
    required=False,
)
def cli(params_filepath, registry_filepath, contract_names, chain_id):
    """Clear registry records so the next run deploys these contracts again."""
    config = DeploymentConfig.from_yaml(params_filepath)
    chain_id = chain_id or config.chain_id
    if chain_id is None:
        raise click.BadOptionUsage(
            option_name="--chain-id",
            message="chain_id is not set in the params file; provide --chain-id",
        )

    registry_filepath = registry_filepath or config.registry_filepath
    registry = DeploymentRegistry(JSONRegistryStore(filepath=registry_filepath, chain_id=chain_id))
    for contract_name in contract_names:
        record = registry.lookup(contract_name)
        if record is None:
            click.secho(f"No record for {contract_name} on chain {chain_id}", fg="yellow")
            continue
        click.confirm(
            f"Forget {contract_name} at {record.address} on chain {chain_id}?", abort=True
        )
        registry.force_redeploy(contract_name)


if __name__ == "__main__":
    cli()
