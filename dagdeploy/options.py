from pathlib import Path

import click

from dagdeploy.types import MinInt, Seconds

params_filepath_option = click.option(
    "--params-filepath",
    "-p",
    help="Filepath to the deployment parameters YAML file.",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

registry_filepath_option = click.option(
    "--registry-filepath",
    "-f",
    help="Registry filepath; defaults to the artifact named in the parameters file.",
    type=click.Path(dir_okay=False, path_type=Path),
    required=False,
)

contracts_option = click.option(
    "--only",
    "-o",
    "only",
    help="Restrict the run to these contracts (and their dependencies).",
    type=click.STRING,
    multiple=True,
)

timeout_option = click.option(
    "--timeout",
    "-t",
    help="Overall run timeout in seconds; overrides the parameters file.",
    type=Seconds(),
    required=False,
)

retries_option = click.option(
    "--retries",
    help="Attempts per transaction for transient failures; overrides the parameters file.",
    type=MinInt(1),
    required=False,
)

autosign_option = click.option(
    "--autosign",
    help="Sign transactions without prompting.",
    is_flag=True,
    default=False,
)

dry_run_option = click.option(
    "--dry-run",
    help="Report what would be deployed without submitting transactions.",
    is_flag=True,
    default=False,
)

verify_option = click.option(
    "--verify",
    help="Publish newly deployed contracts to the block explorer.",
    is_flag=True,
    default=False,
)

retry_pending_setup_option = click.option(
    "--retry-pending-setup",
    help="Re-run setup steps that failed in a previous run.",
    is_flag=True,
    default=False,
)

contract_name_option = click.option(
    "--contract-name",
    "-c",
    help="Name of the proxied contract, as declared in the parameters file.",
    type=click.STRING,
    required=True,
)

call_method_option = click.option(
    "--call-method",
    help="Implementation method to call through the proxy as part of the upgrade.",
    type=click.STRING,
    required=False,
)

call_arg_option = click.option(
    "--call-arg",
    "call_args",
    help="Argument for --call-method, parsed as YAML; may be given several times.",
    type=click.STRING,
    multiple=True,
)

prepare_only_option = click.option(
    "--prepare-only",
    help="Only deploy the new implementation; the proxy owner performs the upgrade.",
    is_flag=True,
    default=False,
)
