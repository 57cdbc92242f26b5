#!/usr/bin/python3

import click
from ape.cli import ConnectedProviderCommand, account_option, network_option

from dagdeploy.deployer import Deployer
from dagdeploy.options import (
    autosign_option,
    contracts_option,
    dry_run_option,
    params_filepath_option,
    registry_filepath_option,
    retries_option,
    retry_pending_setup_option,
    timeout_option,
    verify_option,
)


def _display_report(report) -> None:
    for result in report:
        color = "green" if result.ok else "red"
        if result.status.value in ("existing", "planned") and result.ok:
            color = "cyan"
        click.secho(f"{result.name}: {result.status.value} {result.address or '-'}", fg=color)
        if result.error is not None:
            click.secho(f"    {type(result.error).__name__}: {result.error}", fg="red")
        for warning in result.warnings:
            click.secho(f"    warning: {warning}", fg="yellow")
        for setup in result.setup_status:
            fg = "red" if setup.error is not None else "green"
            click.secho(f"    setup {setup.step}: {setup.status.value}", fg=fg)


@click.command(cls=ConnectedProviderCommand)
@network_option(required=True)
@account_option()
@params_filepath_option
@registry_filepath_option
@contracts_option
@timeout_option
@retries_option
@autosign_option
@dry_run_option
@verify_option
@retry_pending_setup_option
def cli(
    network,
    account,
    params_filepath,
    registry_filepath,
    only,
    timeout,
    retries,
    autosign,
    dry_run,
    verify,
    retry_pending_setup,
):
    """Deploy the contracts declared in a parameters file, skipping those already deployed."""
    deployer = Deployer.from_yaml(
        filepath=params_filepath,
        verify=verify,
        account=account,
        autosign=autosign,
        registry_filepath=registry_filepath,
        timeout=timeout,
        retries=retries,
    )
    report = deployer.deploy(only=only, dry_run=dry_run, retry_pending_setup=retry_pending_setup)

    click.secho("\nDeployment report", fg="green")
    _display_report(report)
    if not report.ok:
        raise click.ClickException(f"{len(report.failures)} contract(s) did not complete.")


if __name__ == "__main__":
    cli()
