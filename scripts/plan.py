#!/usr/bin/python3

import click

from dagdeploy.options import contracts_option, params_filepath_option
from dagdeploy.orchestrator import plan
from dagdeploy.params import DeploymentConfig


@click.command()
@params_filepath_option
@contracts_option
def cli(params_filepath, only):
    """Print the deployment plan of a parameters file without touching any network."""
    config = DeploymentConfig.from_yaml(params_filepath)
    deployment_plan = plan(config.specs, config.setup_steps)
    if only:
        deployment_plan = deployment_plan.subset(only)
    click.echo(deployment_plan.describe())


if __name__ == "__main__":
    cli()
