from abc import ABC, abstractmethod
from typing import Any, Dict, NamedTuple, Optional

import requests

from dagdeploy.constants import (
    FEE_PROVIDER_GAS_STATION,
    FEE_PROVIDER_NONE,
    FEE_PROVIDER_STATIC,
    GAS_STATION_ENDPOINTS,
    GAS_STATION_SPEEDS,
    GAS_STATION_TIMEOUT,
    GWEI,
)
from dagdeploy.errors import FeeProviderError, FeeUnavailableError
from dagdeploy.retry import RetryPolicy


class FeeParams(NamedTuple):
    """EIP-1559 fee parameters, in wei."""

    max_fee: int
    max_priority_fee: int

    def as_kwargs(self) -> Dict[str, int]:
        """Transaction keywords understood by ape."""
        return {"max_fee": self.max_fee, "max_priority_fee": self.max_priority_fee}

    def __str__(self):
        return (
            f"max_fee={self.max_fee / GWEI:.2f} gwei, "
            f"max_priority_fee={self.max_priority_fee / GWEI:.2f} gwei"
        )


class FeeProvider(ABC):
    """Supplies current network fees; None means fall back to network defaults."""

    @abstractmethod
    def get_current_fees(self) -> Optional[FeeParams]:
        raise NotImplementedError


class NullFeeProvider(FeeProvider):
    def get_current_fees(self) -> Optional[FeeParams]:
        return None


class StaticFeeProvider(FeeProvider):
    def __init__(self, fees: FeeParams):
        self.fees = fees

    def get_current_fees(self) -> Optional[FeeParams]:
        return self.fees


def _to_wei(gwei_value: Any) -> int:
    return int(round(float(gwei_value) * GWEI))


class GasStationFeeProvider(FeeProvider):
    """Polygon-style gas station: {"fast": {"maxFee": <gwei>, "maxPriorityFee": <gwei>}, ...}"""

    def __init__(self, url: str, speed: str = "fast", timeout: float = GAS_STATION_TIMEOUT):
        if speed not in GAS_STATION_SPEEDS:
            raise ValueError(
                f"Unknown gas station speed '{speed}'; expected one of {GAS_STATION_SPEEDS}"
            )
        self.url = url
        self.speed = speed
        self.timeout = timeout

    @classmethod
    def for_chain(cls, chain_id: int, *args, **kwargs) -> "GasStationFeeProvider":
        try:
            url = GAS_STATION_ENDPOINTS[chain_id]
        except KeyError:
            raise ValueError(f"No known gas station for chain ID {chain_id}")
        return cls(url, *args, **kwargs)

    def get_current_fees(self) -> Optional[FeeParams]:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise FeeProviderError(f"Gas station at {self.url} unavailable: {e}")

        try:
            fees = data[self.speed]
            return FeeParams(
                max_fee=_to_wei(fees["maxFee"]),
                max_priority_fee=_to_wei(fees["maxPriorityFee"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise FeeProviderError(f"Unexpected gas station response from {self.url}: {e}")


def fetch_fees(
    provider: Optional[FeeProvider],
    retry_policy: Optional[RetryPolicy] = None,
    required: bool = False,
) -> Optional[FeeParams]:
    """
    Returns current fees, or None to use the network's default fee behaviour.
    Raises FeeUnavailableError instead of falling back when fees are required.
    """
    if provider is None:
        fees = None
    else:
        retry_policy = retry_policy or RetryPolicy(attempts=1)
        try:
            fees = retry_policy.run(provider.get_current_fees, retry_on=(FeeProviderError,))
        except FeeProviderError as e:
            if required:
                raise FeeUnavailableError(str(e))
            print(f"WARNING: {e}; using network default fees.")
            return None

    if fees is None and required:
        raise FeeUnavailableError("Fee provider returned no fees")
    return fees


def fee_provider_from_settings(settings, chain_id: Optional[int] = None) -> Optional[FeeProvider]:
    """
    Builds the fee provider named in the parameters file. The network provider is
    ape-backed and is constructed by the caller; None is returned for it here.
    """
    if settings.provider == FEE_PROVIDER_NONE:
        return NullFeeProvider()
    if settings.provider == FEE_PROVIDER_STATIC:
        if settings.max_fee is None or settings.max_priority_fee is None:
            raise ValueError("Static fees require both max_fee and max_priority_fee")
        return StaticFeeProvider(
            FeeParams(max_fee=settings.max_fee, max_priority_fee=settings.max_priority_fee)
        )
    if settings.provider == FEE_PROVIDER_GAS_STATION:
        if settings.url:
            return GasStationFeeProvider(settings.url, speed=settings.speed)
        if chain_id is None:
            raise ValueError("Gas station fees require a url or a known chain ID")
        return GasStationFeeProvider.for_chain(chain_id, speed=settings.speed)
    return None
