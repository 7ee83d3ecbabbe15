from __future__ import annotations

import math
import re
from collections.abc import Mapping
from typing import Any

_LEADING_INTEGER = re.compile(r"^\s*([+-]?\d+)")


def parse_chain_id(value: Any) -> int | None:
    """Parse a chain id with base-10 leading-integer semantics.

    ``"8453"`` and ``" 8453abc"`` both give 8453; anything that does not start
    with digits gives ``None``.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        match = _LEADING_INTEGER.match(value)
        if match is None:
            return None
        return int(match.group(1), 10)
    return None


def _append_parsed(chain_ids: list[int], value: Any) -> None:
    parsed = parse_chain_id(value)
    if parsed is not None:
        chain_ids.append(parsed)


def _append_optional(chain_ids: list[int], value: Any) -> None:
    # Missing, empty and zero-valued fields count as unset.
    if not value:
        return
    _append_parsed(chain_ids, value)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def extract_chain_ids_from_query(params: Mapping[str, str]) -> list[int]:
    """Portfolio lookups: ``chainIds=1,10`` and ``tokens=1:0xabc,10:0xdef``."""
    chain_ids: list[int] = []
    for entry in _split_csv(params.get("chainIds")):
        _append_parsed(chain_ids, entry)
    for entry in _split_csv(params.get("tokens")):
        chain_part, _, _ = entry.partition(":")
        _append_parsed(chain_ids, chain_part)
    return chain_ids


def extract_chain_ids_from_status(body: Any) -> list[int]:
    chain_ids: list[int] = []
    if isinstance(body, dict):
        _append_optional(chain_ids, body.get("destinationChainId"))
    return chain_ids


def extract_chain_ids_from_signed_intent_op(body: Any) -> list[int]:
    chain_ids: list[int] = []
    if not isinstance(body, dict):
        return chain_ids
    signed_intent_op = body.get("signedIntentOp")
    if not isinstance(signed_intent_op, dict):
        return chain_ids
    elements = signed_intent_op.get("elements")
    if not isinstance(elements, list):
        return chain_ids

    for element in elements:
        if not isinstance(element, dict):
            continue
        _append_optional(chain_ids, element.get("chainId"))
        mandate = element.get("mandate")
        if isinstance(mandate, dict):
            _append_optional(chain_ids, mandate.get("destinationChainId"))
    return chain_ids


def extract_chain_ids_from_intent_input(body: Any) -> list[int]:
    chain_ids: list[int] = []
    if not isinstance(body, dict):
        return chain_ids
    _append_optional(chain_ids, body.get("destinationChainId"))

    access_list = body.get("accountAccessList")
    if not isinstance(access_list, dict):
        return chain_ids

    listed = access_list.get("chainIds")
    if isinstance(listed, list):
        for item in listed:
            _append_parsed(chain_ids, item)

    chain_tokens = access_list.get("chainTokens")
    if isinstance(chain_tokens, dict):
        # Keys are chain ids; JSON object keys always arrive as strings.
        for key in chain_tokens:
            _append_parsed(chain_ids, key)
    return chain_ids
