"""Backend environment detection and upstream endpoint construction.

The orchestrator runs two deployments: production serves mainnet chains and
staging serves the known testnets. A request is routed to one of them when its
chain identifiers agree, and to both (production first) when they do not.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum

import httpx

PROD_BASE_URL = "https://v1.orchestrator.rhinestone.dev"
STAGING_BASE_URL = "https://staging.v1.orchestrator.rhinestone.dev"

TESTNET_CHAIN_IDS: frozenset[int] = frozenset(
    {
        11155111,  # sepolia
        421614,  # arbitrum sepolia
        84532,  # base sepolia
        11155420,  # optimism sepolia
    }
)


class Environment(str, Enum):
    PROD = "prod"
    STAGING = "staging"
    UNDETERMINED = "undetermined"


def is_testnet_chain(
    chain_id: int, testnet_chain_ids: frozenset[int] = TESTNET_CHAIN_IDS
) -> bool:
    return chain_id in testnet_chain_ids


def classify_environment(
    chain_ids: Iterable[int],
    testnet_chain_ids: frozenset[int] = TESTNET_CHAIN_IDS,
) -> Environment:
    values = list(chain_ids)
    if not values:
        return Environment.UNDETERMINED

    has_testnet = any(is_testnet_chain(value, testnet_chain_ids) for value in values)
    has_mainnet = any(
        not is_testnet_chain(value, testnet_chain_ids) for value in values
    )
    if has_testnet and not has_mainnet:
        return Environment.STAGING
    if has_mainnet and not has_testnet:
        return Environment.PROD
    return Environment.UNDETERMINED


def build_endpoints(
    path: str,
    env: Environment,
    *,
    prod_base_url: str = PROD_BASE_URL,
    staging_base_url: str = STAGING_BASE_URL,
) -> list[str]:
    if env == Environment.PROD:
        return [f"{prod_base_url}{path}"]
    if env == Environment.STAGING:
        return [f"{staging_base_url}{path}"]
    return [f"{prod_base_url}{path}", f"{staging_base_url}{path}"]


def with_query_params(endpoints: list[str], params: Mapping[str, str]) -> list[str]:
    """Copy every inbound query parameter onto each candidate URL.

    Existing keys on the candidate are replaced rather than duplicated.
    """
    if not params:
        return list(endpoints)
    merged = dict(params)
    return [str(httpx.URL(endpoint).copy_merge_params(merged)) for endpoint in endpoints]
