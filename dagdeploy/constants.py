from pathlib import Path

import dagdeploy

#
# Filesystem
#

DEPLOYMENT_DIR = Path(dagdeploy.__file__).parent
CONSTRUCTOR_PARAMS_DIR = DEPLOYMENT_DIR / "constructor_params"
ARTIFACTS_DIR = DEPLOYMENT_DIR / "artifacts"

#
# Networks
#

LOCAL_NETWORKS = ["local", "development"]
LOCAL_CHAIN_IDS = [1337, 31337]

#
# Contracts
#

OZ_DEPENDENCY_NAME = "openzeppelin"
OZ_DEPENDENCY_VERSION = "5.0.0"

TRANSPARENT_PROXY = "TransparentUpgradeableProxy"
ERC1967_PROXY = "ERC1967Proxy"
SUPPORTED_PROXY_KINDS = [TRANSPARENT_PROXY, ERC1967_PROXY]

# bytes32(uint256(keccak256("eip1967.proxy.admin")) - 1)
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#
# Accounts
#

DEPLOYER_ACCOUNT = "deployer"
ACCOUNT_ENVVAR_PREFIX = "DAGDEPLOY_ACCOUNT_"

#
# Execution
#

DEFAULT_RUN_TIMEOUT = 30 * 60  # seconds
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds
DEFAULT_RETRY_BACKOFF = 2.0

# Transient submission failures worth retrying with fresh fees
RETRIABLE_SUBMISSION_MESSAGES = [
    "replacement transaction underpriced",
    "transaction underpriced",
    "nonce too low",
    "max fee per gas less than block base fee",
]

#
# Fees
#

GWEI = 10**9

FEE_PROVIDER_NETWORK = "network"
FEE_PROVIDER_GAS_STATION = "gas-station"
FEE_PROVIDER_STATIC = "static"
FEE_PROVIDER_NONE = "none"
SUPPORTED_FEE_PROVIDERS = [
    FEE_PROVIDER_NETWORK,
    FEE_PROVIDER_GAS_STATION,
    FEE_PROVIDER_STATIC,
    FEE_PROVIDER_NONE,
]

GAS_STATION_SPEEDS = ["safeLow", "standard", "fast"]
GAS_STATION_TIMEOUT = 10  # seconds

GAS_STATION_ENDPOINTS = {
    137: "https://gasstation.polygon.technology/v2",
    80002: "https://gasstation.polygon.technology/amoy",
}
