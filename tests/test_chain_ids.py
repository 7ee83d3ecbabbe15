from __future__ import annotations

from orchestrator_proxy.chain_ids import (
    extract_chain_ids_from_intent_input,
    extract_chain_ids_from_query,
    extract_chain_ids_from_signed_intent_op,
    extract_chain_ids_from_status,
    parse_chain_id,
)


def test_parse_chain_id_follows_leading_integer_semantics() -> None:
    assert parse_chain_id("8453") == 8453
    assert parse_chain_id(" 42 ") == 42
    assert parse_chain_id("84532abc") == 84532
    assert parse_chain_id(10) == 10
    assert parse_chain_id(137.0) == 137


def test_parse_chain_id_rejects_non_numeric_values() -> None:
    assert parse_chain_id("abc") is None
    assert parse_chain_id("") is None
    assert parse_chain_id(True) is None
    assert parse_chain_id(float("nan")) is None
    assert parse_chain_id(float("inf")) is None
    assert parse_chain_id({"chainId": 1}) is None
    assert parse_chain_id(None) is None


def test_query_chain_ids_list() -> None:
    assert extract_chain_ids_from_query({"chainIds": "1,2,3"}) == [1, 2, 3]


def test_query_tokens_take_chain_before_colon() -> None:
    assert extract_chain_ids_from_query({"tokens": "1:0xabc,2:0xdef"}) == [1, 2]


def test_query_combines_chain_ids_and_tokens() -> None:
    params = {"chainIds": "8453", "tokens": "84532:0xabc"}
    assert extract_chain_ids_from_query(params) == [8453, 84532]


def test_query_drops_malformed_entries() -> None:
    assert extract_chain_ids_from_query({"chainIds": "x,,7"}) == [7]
    assert extract_chain_ids_from_query({"tokens": ":0xabc,foo:0x1"}) == []
    assert extract_chain_ids_from_query({}) == []


def test_status_body_accepts_string_or_number() -> None:
    assert extract_chain_ids_from_status({"destinationChainId": "8453"}) == [8453]
    assert extract_chain_ids_from_status({"destinationChainId": 84532}) == [84532]
    assert extract_chain_ids_from_status({"status": "PENDING"}) == []
    assert extract_chain_ids_from_status(["not", "an", "object"]) == []


def test_signed_intent_op_collects_element_and_mandate_chains() -> None:
    body = {
        "signedIntentOp": {
            "elements": [
                {"chainId": "1", "mandate": {"destinationChainId": 8453}},
                {"chainId": 10},
                {"mandate": {"destinationChainId": "not-a-chain"}},
                "garbage",
            ]
        }
    }
    assert extract_chain_ids_from_signed_intent_op(body) == [1, 8453, 10]


def test_signed_intent_op_tolerates_missing_shapes() -> None:
    assert extract_chain_ids_from_signed_intent_op({}) == []
    assert extract_chain_ids_from_signed_intent_op({"signedIntentOp": None}) == []
    assert (
        extract_chain_ids_from_signed_intent_op({"signedIntentOp": {"elements": {}}})
        == []
    )
    assert extract_chain_ids_from_signed_intent_op(None) == []


def test_intent_input_collects_destination_access_list_and_token_keys() -> None:
    body = {
        "destinationChainId": "84532",
        "accountAccessList": {
            "chainIds": [11155111, "421614"],
            "chainTokens": {"11155420": ["0xabc"], "notachain": []},
        },
    }
    assert extract_chain_ids_from_intent_input(body) == [
        84532,
        11155111,
        421614,
        11155420,
    ]


def test_intent_input_tolerates_malformed_access_list() -> None:
    body = {"accountAccessList": {"chainIds": "1,2", "chainTokens": ["1"]}}
    assert extract_chain_ids_from_intent_input(body) == []
    assert extract_chain_ids_from_intent_input("plain string") == []


def test_zero_valued_optional_fields_count_as_unset() -> None:
    assert extract_chain_ids_from_status({"destinationChainId": 0}) == []
    assert extract_chain_ids_from_status({"destinationChainId": ""}) == []
    body = {
        "signedIntentOp": {
            "elements": [{"chainId": 0, "mandate": {"destinationChainId": 84532}}]
        }
    }
    assert extract_chain_ids_from_signed_intent_op(body) == [84532]
    assert extract_chain_ids_from_intent_input({"destinationChainId": 0}) == []


def test_listed_chain_ids_keep_zero() -> None:
    body = {"accountAccessList": {"chainIds": [0, 84532], "chainTokens": {"0": []}}}
    assert extract_chain_ids_from_intent_input(body) == [0, 84532, 0]
    assert extract_chain_ids_from_query({"chainIds": "0,1"}) == [0, 1]
