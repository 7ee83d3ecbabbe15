from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal
from urllib.parse import quote

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from orchestrator_proxy.audit import AttemptEventLog
from orchestrator_proxy.chain_ids import (
    extract_chain_ids_from_intent_input,
    extract_chain_ids_from_query,
    extract_chain_ids_from_signed_intent_op,
    extract_chain_ids_from_status,
)
from orchestrator_proxy.config import OrchestratorProfile, load_orchestrator_profile
from orchestrator_proxy.environment import (
    build_endpoints,
    classify_environment,
    with_query_params,
)
from orchestrator_proxy.proxy import (
    OrchestratorProxy,
    ProxyOutcome,
    cors_headers,
    new_request_id,
)
from orchestrator_proxy.retry_policy import (
    GATEWAY_ERRORS,
    NOT_FOUND_ONLY,
    SERVER_ERROR_ONLY,
    RetryPolicy,
)
from orchestrator_proxy.settings import Settings, get_settings

app = FastAPI(
    title="Orchestrator Proxy",
    description="Environment-aware proxy for the Rhinestone orchestrator API.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

API_PREFIX = "/api"
# Routes accept every verb so that unsupported ones get the JSON 405 body.
_ACCEPTED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
# RFC 3986 pchar characters that may stay unescaped inside a path segment.
_PATH_SEGMENT_SAFE = "!$&'()*+,;=:@~"


@dataclass(frozen=True, slots=True)
class ProxyRoute:
    verb: Literal["GET", "POST"]
    retry_policy: RetryPolicy

    @property
    def allowed_methods(self) -> str:
        return f"{self.verb}, OPTIONS"


PORTFOLIO_ROUTE = ProxyRoute(verb="GET", retry_policy=SERVER_ERROR_ONLY)
INTENT_OPERATION_ROUTE = ProxyRoute(verb="GET", retry_policy=NOT_FOUND_ONLY)
INTENT_OPERATIONS_ROUTE = ProxyRoute(verb="POST", retry_policy=GATEWAY_ERRORS)
INTENTS_ROUTE_ROUTE = ProxyRoute(verb="POST", retry_policy=GATEWAY_ERRORS)


def _error_response(
    error: str,
    status_code: int,
    methods: str,
    details: str | None = None,
) -> JSONResponse:
    content: dict[str, str] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(
        status_code=status_code, content=content, headers=cors_headers(methods)
    )


def _outcome_response(outcome: ProxyOutcome) -> Response:
    return Response(
        content=outcome.body,
        status_code=outcome.status,
        headers=outcome.headers,
    )


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or new_request_id()
    )


def _path_segment(value: str) -> str:
    # Starlette hands path values over decoded; re-encode before reuse upstream.
    return quote(value, safe=_PATH_SEGMENT_SAFE)


def _first_query_values(request: Request) -> dict[str, str]:
    params = request.query_params
    return {key: params.getlist(key)[0] for key in params.keys()}


def _configured_api_key() -> str | None:
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    return settings.api_key


def _check_request(request: Request, route: ProxyRoute) -> Response | None:
    methods = route.allowed_methods
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=cors_headers(methods))
    if request.method != route.verb:
        return _error_response("Method not allowed", 405, methods)
    if _configured_api_key() is None:
        return _error_response("API key not configured", 500, methods)
    return None


async def _read_json_body(request: Request) -> tuple[bytes, object]:
    raw = await request.body()
    return raw, json.loads(raw)


async def _forward(
    *,
    request: Request,
    route: ProxyRoute,
    path: str,
    chain_ids: list[int],
    body: bytes | None = None,
    query_params: dict[str, str] | None = None,
    response_chain_ids: Callable[[Any], list[int]] | None = None,
) -> Response:
    profile: OrchestratorProfile = app.state.orchestrator_profile
    proxy: OrchestratorProxy = app.state.orchestrator_proxy
    request_id = _request_id(request)
    methods = route.allowed_methods

    try:
        environment = classify_environment(chain_ids, profile.testnet_chain_ids)
        endpoints = build_endpoints(
            path,
            environment,
            prod_base_url=profile.endpoints.prod_base_url,
            staging_base_url=profile.endpoints.staging_base_url,
        )
        if query_params:
            endpoints = with_query_params(endpoints, query_params)
        logger.info(
            "proxy_start request_id=%s path=%s environment=%s chain_ids=%s endpoints=%d",
            request_id,
            path,
            environment.value,
            ",".join(str(chain_id) for chain_id in chain_ids) or "-",
            len(endpoints),
        )
        outcome = await proxy.proxy_request(
            endpoints=endpoints,
            method=route.verb,
            api_key=_configured_api_key() or "",
            allowed_methods=methods,
            body=body,
            retry_policy=route.retry_policy,
            request_id=request_id,
        )
    except Exception as exc:
        logger.error(
            "proxy_failed request_id=%s path=%s error_type=%s error=%s",
            request_id,
            path,
            exc.__class__.__name__,
            exc,
        )
        return _error_response(
            "Failed to proxy request",
            500,
            methods,
            details=str(exc) or exc.__class__.__name__,
        )
    if response_chain_ids is not None and 200 <= outcome.status < 300:
        _log_response_environment(
            request_id=request_id,
            outcome=outcome,
            extractor=response_chain_ids,
            testnet_chain_ids=profile.testnet_chain_ids,
        )
    return _outcome_response(outcome)


def _log_response_environment(
    *,
    request_id: str,
    outcome: ProxyOutcome,
    extractor: Callable[[Any], list[int]],
    testnet_chain_ids: frozenset[int],
) -> None:
    try:
        payload = json.loads(outcome.body)
    except ValueError:
        return
    chain_ids = extractor(payload)
    if not chain_ids:
        return
    logger.info(
        "proxy_response_environment request_id=%s environment=%s chain_ids=%s",
        request_id,
        classify_environment(chain_ids, testnet_chain_ids).value,
        ",".join(str(chain_id) for chain_id in chain_ids),
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    profile = load_orchestrator_profile(settings.orchestrator_profile_path)
    attempt_log = AttemptEventLog(
        path=settings.proxy_audit_log_path,
        enabled=settings.proxy_audit_log_enabled,
    )
    app.state.settings = settings
    app.state.orchestrator_profile = profile
    app.state.attempt_log = attempt_log
    app.state.orchestrator_proxy = OrchestratorProxy(
        timeout_ms=profile.retry.timeout_ms,
        max_retries=profile.retry.max_retries,
        backoff_base_ms=profile.retry.backoff_base_ms,
        backoff_jitter_ms=profile.retry.backoff_jitter_ms,
        backoff_max_ms=profile.retry.backoff_max_ms,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
        keepalive_expiry_seconds=settings.upstream_keepalive_expiry_seconds,
        audit_hook=attempt_log.log if attempt_log.enabled else None,
    )
    if settings.api_key is None:
        logger.warning("RHINESTONE_API_KEY is not set; proxy routes will return 500")
    logger.info(
        (
            "startup complete prod_base_url=%s staging_base_url=%s max_retries=%d "
            "timeout_ms=%.0f attempt_log_enabled=%s"
        ),
        profile.endpoints.prod_base_url,
        profile.endpoints.staging_base_url,
        profile.retry.max_retries,
        profile.retry.timeout_ms,
        attempt_log.enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    proxy: OrchestratorProxy | None = getattr(app.state, "orchestrator_proxy", None)
    if proxy is not None:
        await proxy.close()
    attempt_log: AttemptEventLog | None = getattr(app.state, "attempt_log", None)
    if attempt_log is not None:
        attempt_log.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.api_route(f"{API_PREFIX}/accounts//portfolio", methods=_ACCEPTED_METHODS)
@app.api_route(f"{API_PREFIX}/accounts/{{address}}/portfolio", methods=_ACCEPTED_METHODS)
async def account_portfolio(request: Request) -> Response:
    route = PORTFOLIO_ROUTE
    early = _check_request(request, route)
    if early is not None:
        return early

    address = str(request.path_params.get("address", "")).strip()
    if not address:
        return _error_response("Missing address parameter", 400, route.allowed_methods)

    return await _forward(
        request=request,
        route=route,
        path=f"/accounts/{_path_segment(address)}/portfolio",
        chain_ids=extract_chain_ids_from_query(_first_query_values(request)),
        query_params=dict(request.query_params),
    )


@app.api_route(f"{API_PREFIX}/intent-operation/", methods=_ACCEPTED_METHODS)
@app.api_route(f"{API_PREFIX}/intent-operation/{{operation_id}}", methods=_ACCEPTED_METHODS)
async def intent_operation(request: Request) -> Response:
    route = INTENT_OPERATION_ROUTE
    early = _check_request(request, route)
    if early is not None:
        return early

    operation_id = str(request.path_params.get("operation_id", "")).strip()
    if not operation_id:
        return _error_response("Missing id path parameter", 400, route.allowed_methods)

    # A status lookup carries no chain ids, so both deployments are tried.
    return await _forward(
        request=request,
        route=route,
        path=f"/intent-operation/{_path_segment(operation_id)}",
        chain_ids=[],
        response_chain_ids=extract_chain_ids_from_status,
    )


@app.api_route(f"{API_PREFIX}/intent-operation-status", methods=_ACCEPTED_METHODS)
async def intent_operation_status(request: Request) -> Response:
    route = INTENT_OPERATION_ROUTE
    early = _check_request(request, route)
    if early is not None:
        return early

    operation_id = (_first_query_values(request).get("id") or "").strip()
    if not operation_id:
        return _error_response("Missing intentId parameter", 400, route.allowed_methods)

    return await _forward(
        request=request,
        route=route,
        path=f"/intent-operation/{_path_segment(operation_id)}",
        chain_ids=[],
        response_chain_ids=extract_chain_ids_from_status,
    )


@app.api_route(f"{API_PREFIX}/intent-operations", methods=_ACCEPTED_METHODS)
async def intent_operations(request: Request) -> Response:
    route = INTENT_OPERATIONS_ROUTE
    early = _check_request(request, route)
    if early is not None:
        return early

    try:
        raw_body, payload = await _read_json_body(request)
    except ValueError as exc:
        return _error_response(
            f"Invalid JSON body: {exc}", 400, route.allowed_methods
        )

    return await _forward(
        request=request,
        route=route,
        path="/intent-operations",
        chain_ids=extract_chain_ids_from_signed_intent_op(payload),
        body=raw_body,
    )


@app.api_route(f"{API_PREFIX}/intents/route", methods=_ACCEPTED_METHODS)
async def intents_route(request: Request) -> Response:
    route = INTENTS_ROUTE_ROUTE
    early = _check_request(request, route)
    if early is not None:
        return early

    try:
        raw_body, payload = await _read_json_body(request)
    except ValueError as exc:
        return _error_response(
            f"Invalid JSON body: {exc}", 400, route.allowed_methods
        )

    return await _forward(
        request=request,
        route=route,
        path="/intents/route",
        chain_ids=extract_chain_ids_from_intent_input(payload),
        body=raw_body,
    )


def run() -> None:
    import uvicorn

    uvicorn.run("orchestrator_proxy.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
