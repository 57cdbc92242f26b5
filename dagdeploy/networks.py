import os

from ape import networks

from dagdeploy.constants import LOCAL_CHAIN_IDS, LOCAL_NETWORKS
from dagdeploy.params import DeploymentConfig


def is_local_network() -> bool:
    """Returns True when connected to a development network."""
    network = networks.provider.network
    return network.name in LOCAL_NETWORKS or network.chain_id in LOCAL_CHAIN_IDS


def validate_config(config: DeploymentConfig) -> int:
    """
    Checks that the parameters file targets the connected network
    and returns the chain ID deployments are recorded under.
    """
    print("Validating parameters YAML...")

    chain_id = networks.provider.network.chain_id
    if config.chain_id is None:
        if not is_local_network():
            raise ValueError("chain_id is not set in params file.")
        return chain_id

    chain_mismatch = config.chain_id != chain_id
    if chain_mismatch and not is_local_network():
        raise ValueError(
            f"chain_id in params file ({config.chain_id}) does not match "
            f"chain_id of current network ({chain_id})."
        )
    return config.chain_id


def check_etherscan_plugin() -> None:
    """
    Checks that the ape-etherscan plugin is installed and that
    the appropriate API key environment variable is set.
    """
    if is_local_network():
        # unnecessary for local deployment
        return
    try:
        import ape_etherscan  # noqa: F401
    except ImportError:
        raise ImportError("Please install the ape-etherscan plugin to verify contracts.")

    ecosystem_name = networks.provider.network.ecosystem.name
    explorer_envvars = [f"{ecosystem_name.upper()}SCAN_API_KEY", "ETHERSCAN_API_KEY"]
    if not any(os.environ.get(envvar) for envvar in explorer_envvars):
        raise ValueError(f"None of {', '.join(explorer_envvars)} is set.")


def check_plugins(verify: bool) -> None:
    print("Checking plugins...")
    if verify:
        check_etherscan_plugin()


def print_network_info() -> None:
    print(
        f"Ecosystem: {networks.provider.network.ecosystem.name}",
        f"Network: {networks.provider.network.name}",
        f"Chain ID: {networks.provider.network.chain_id}",
        f"Gas Price: {networks.provider.gas_price}",
        sep="\n",
    )
