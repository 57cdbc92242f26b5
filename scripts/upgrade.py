#!/usr/bin/python3

import click
import yaml
from ape.cli import ConnectedProviderCommand, account_option, network_option

from dagdeploy.deployer import Deployer
from dagdeploy.options import (
    autosign_option,
    call_arg_option,
    call_method_option,
    contract_name_option,
    params_filepath_option,
    prepare_only_option,
    registry_filepath_option,
    timeout_option,
    verify_option,
)


def _parse_call_arg(raw: str):
    # YAML reads unquoted hex as an integer; addresses and bytes stay strings
    if raw.lower().startswith("0x"):
        return raw
    return yaml.safe_load(raw)


@click.command(cls=ConnectedProviderCommand)
@network_option(required=True)
@account_option()
@params_filepath_option
@registry_filepath_option
@contract_name_option
@call_method_option
@call_arg_option
@prepare_only_option
@timeout_option
@autosign_option
@verify_option
def cli(
    network,
    account,
    params_filepath,
    registry_filepath,
    contract_name,
    call_method,
    call_args,
    prepare_only,
    timeout,
    autosign,
    verify,
):
    """Deploy a new implementation for a proxied contract and upgrade its proxy."""
    if call_args and not call_method:
        raise click.BadParameter("--call-arg requires --call-method")

    deployer = Deployer.from_yaml(
        filepath=params_filepath,
        verify=verify,
        account=account,
        autosign=autosign,
        registry_filepath=registry_filepath,
        timeout=timeout,
    )
    # "$Contract", "$account:key" and constants work as in the parameters file
    call_args = deployer.config.process_values(
        contract_name, [_parse_call_arg(arg) for arg in call_args]
    )
    result = deployer.upgrade(
        contract_name,
        call_method=call_method,
        call_args=call_args,
        prepare_only=prepare_only,
    )

    color = "green" if result.ok else "red"
    click.secho(f"{result.name}: {result.status.value} {result.address or '-'}", fg=color)
    if result.implementation_address:
        click.secho(f"    implementation {result.implementation_address}", fg=color)
    if result.error is not None:
        raise click.ClickException(f"{type(result.error).__name__}: {result.error}")


if __name__ == "__main__":
    cli()
