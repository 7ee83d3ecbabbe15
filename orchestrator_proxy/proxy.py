from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx

from orchestrator_proxy.retry_policy import RetryPolicy

IDEMPOTENT_METHODS = {"GET"}
ERROR_MESSAGE_MAX_CHARS = 200

logger = logging.getLogger("uvicorn.error")


class UpstreamTimeoutError(RuntimeError):
    """Raised when an upstream call misses its overall deadline."""

    def __init__(self, *, url: str, elapsed_ms: float) -> None:
        self.url = url
        self.elapsed_ms = elapsed_ms
        super().__init__(f"Request timeout after {round(elapsed_ms)}ms: {url}")


TRANSPORT_ERRORS = (httpx.RequestError, UpstreamTimeoutError)


@dataclass(slots=True)
class TimedFetchResult:
    ttfb_ms: float
    total_ms: float
    status: int
    body: bytes


@dataclass(slots=True)
class ProxyOutcome:
    status: int
    body: bytes
    headers: dict[str, str]


def cors_headers(methods: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type",
    }


def json_response_headers(methods: str) -> dict[str, str]:
    return {"Content-Type": "application/json", **cors_headers(methods)}


def new_request_id() -> str:
    return uuid4().hex[:12]


def backoff_delay_ms(
    retry: int,
    *,
    base_ms: float = 1000.0,
    jitter_ms: float = 1000.0,
    max_ms: float = 5000.0,
    rand: Callable[[], float] = random.random,
) -> float:
    return min(base_ms * (2**retry) + rand() * jitter_ms, max_ms)


async def fetch_with_timing(
    client: httpx.AsyncClient,
    url: str,
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    content: bytes | None = None,
    timeout_ms: float = 30000.0,
) -> TimedFetchResult:
    """Perform one upstream call bounded by a single overall deadline.

    The deadline covers both the response headers and the body. When it fires
    the in-flight request is cancelled and ``UpstreamTimeoutError`` is raised.
    Timings are milliseconds since the call started, rounded to 2 decimals.
    """
    started = time.perf_counter()

    async def _send() -> TimedFetchResult:
        request = client.build_request(
            method=method, url=url, headers=headers, content=content
        )
        response = await client.send(request, stream=True)
        try:
            ttfb_ms = (time.perf_counter() - started) * 1000.0
            body = await response.aread()
            total_ms = (time.perf_counter() - started) * 1000.0
        finally:
            await response.aclose()
        return TimedFetchResult(
            ttfb_ms=round(ttfb_ms, 2),
            total_ms=round(total_ms, 2),
            status=response.status_code,
            body=body,
        )

    try:
        return await asyncio.wait_for(_send(), timeout=timeout_ms / 1000.0)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        raise UpstreamTimeoutError(url=url, elapsed_ms=elapsed_ms) from exc


class OrchestratorProxy:
    def __init__(
        self,
        *,
        timeout_ms: float = 30000.0,
        max_retries: int = 2,
        backoff_base_ms: float = 1000.0,
        backoff_jitter_ms: float = 1000.0,
        backoff_max_ms: float = 5000.0,
        connect_timeout_seconds: float = 3.0,
        read_timeout_seconds: float = 20.0,
        write_timeout_seconds: float = 20.0,
        pool_timeout_seconds: float = 3.0,
        keepalive_expiry_seconds: float = 4.0,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.timeout_ms = max(1.0, float(timeout_ms))
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_ms = max(0.0, float(backoff_base_ms))
        self.backoff_jitter_ms = max(0.0, float(backoff_jitter_ms))
        self.backoff_max_ms = max(0.0, float(backoff_max_ms))
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=max(0.1, float(read_timeout_seconds)),
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(
                max_connections=512,
                max_keepalive_connections=128,
                keepalive_expiry=max(0.0, float(keepalive_expiry_seconds)),
            ),
        )
        self._audit_hook = audit_hook
        self._sleep = sleep or asyncio.sleep

    async def close(self) -> None:
        await self.client.aclose()

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def proxy_request(
        self,
        *,
        endpoints: list[str],
        method: str,
        api_key: str,
        allowed_methods: str,
        body: bytes | None = None,
        retry_policy: RetryPolicy | None = None,
        max_retries: int | None = None,
        request_id: str | None = None,
    ) -> ProxyOutcome:
        """Send the request to each endpoint in order until one answers.

        GET requests are retried up to ``max_retries`` times per endpoint;
        other methods, and policies that fall back immediately, get a single
        attempt per endpoint. A response matching ``retry_policy`` is kept and
        returned if every later attempt also matches. A transport error on the
        final attempt is raised to the caller.
        """
        if not endpoints:
            raise ValueError("At least one upstream endpoint is required.")

        rid = request_id or new_request_id()
        method = method.upper()
        retries_per_endpoint = self._retries_per_endpoint(
            method, retry_policy=retry_policy, max_retries=max_retries
        )
        use_backoff = retry_policy is None or retry_policy.backoff
        total_attempts = len(endpoints) * (retries_per_endpoint + 1)
        headers = {"Content-Type": "application/json", "x-api-key": api_key}

        attempt_number = 0
        last_result: TimedFetchResult | None = None

        for endpoint_index, endpoint in enumerate(endpoints):
            has_more_endpoints = endpoint_index < len(endpoints) - 1
            for retry in range(retries_per_endpoint + 1):
                attempt_number += 1
                has_more_attempts = retry < retries_per_endpoint or has_more_endpoints
                try:
                    result = await self._send_attempt(
                        endpoint=endpoint,
                        method=method,
                        headers=headers,
                        body=body,
                        request_id=rid,
                        attempt=attempt_number,
                        total_attempts=total_attempts,
                        retry=retry,
                    )
                except TRANSPORT_ERRORS as exc:
                    if not has_more_attempts:
                        logger.error(
                            "proxy_exhausted request_id=%s attempts=%d error=%s",
                            rid,
                            attempt_number,
                            exc,
                        )
                        self._audit(
                            "proxy_exhausted",
                            request_id=rid,
                            attempts=attempt_number,
                            endpoints=list(endpoints),
                        )
                        raise
                    if use_backoff:
                        await self._backoff(retry, request_id=rid)
                    continue

                if retry_policy is None or not retry_policy.should_retry(
                    result.status, endpoint_count=len(endpoints)
                ):
                    return ProxyOutcome(
                        status=result.status,
                        body=result.body,
                        headers=json_response_headers(allowed_methods),
                    )

                last_result = result
                logger.info(
                    "proxy_retry request_id=%s endpoint=%s status=%d policy=%s",
                    rid,
                    endpoint,
                    result.status,
                    retry_policy.name,
                )
                self._audit(
                    "proxy_retry",
                    request_id=rid,
                    endpoint=endpoint,
                    attempt=attempt_number,
                    retry=retry,
                    status=result.status,
                    policy=retry_policy.name,
                )
                if use_backoff and has_more_attempts:
                    await self._backoff(retry, request_id=rid)

        # The final attempt either raised or left a retryable response behind.
        assert last_result is not None
        logger.info(
            "proxy_exhausted request_id=%s attempts=%d returning_status=%d",
            rid,
            attempt_number,
            last_result.status,
        )
        return ProxyOutcome(
            status=last_result.status,
            body=last_result.body,
            headers=json_response_headers(allowed_methods),
        )

    def _retries_per_endpoint(
        self,
        method: str,
        *,
        retry_policy: RetryPolicy | None,
        max_retries: int | None,
    ) -> int:
        if method not in IDEMPOTENT_METHODS:
            return 0
        if retry_policy is not None and retry_policy.fallback_immediately:
            return 0
        if max_retries is None:
            return self.max_retries
        return max(0, int(max_retries))

    async def _send_attempt(
        self,
        *,
        endpoint: str,
        method: str,
        headers: dict[str, str],
        body: bytes | None,
        request_id: str,
        attempt: int,
        total_attempts: int,
        retry: int,
    ) -> TimedFetchResult:
        logger.info(
            "proxy_attempt_start request_id=%s endpoint=%s attempt=%d/%d retry=%d method=%s",
            request_id,
            endpoint,
            attempt,
            total_attempts,
            retry,
            method,
        )
        self._audit(
            "proxy_attempt_start",
            request_id=request_id,
            endpoint=endpoint,
            attempt=attempt,
            retry=retry,
            method=method,
        )
        attempt_started = time.perf_counter()
        try:
            result = await fetch_with_timing(
                self.client,
                endpoint,
                method=method,
                headers=headers,
                content=body,
                timeout_ms=self.timeout_ms,
            )
        except TRANSPORT_ERRORS as exc:
            elapsed_ms = round((time.perf_counter() - attempt_started) * 1000.0, 2)
            error_message = (str(exc).strip() or repr(exc))[:ERROR_MESSAGE_MAX_CHARS]
            logger.warning(
                (
                    "proxy_attempt_error request_id=%s endpoint=%s attempt=%d/%d "
                    "retry=%d error_type=%s elapsed_ms=%.2f error=%s"
                ),
                request_id,
                endpoint,
                attempt,
                total_attempts,
                retry,
                exc.__class__.__name__,
                elapsed_ms,
                error_message,
            )
            self._audit(
                "proxy_attempt_error",
                request_id=request_id,
                endpoint=endpoint,
                attempt=attempt,
                retry=retry,
                method=method,
                error_name=exc.__class__.__name__,
                error_message=error_message,
                is_timeout=isinstance(exc, UpstreamTimeoutError),
                elapsed_ms=elapsed_ms,
            )
            raise

        elapsed_ms = round((time.perf_counter() - attempt_started) * 1000.0, 2)
        logger.info(
            (
                "proxy_attempt_success request_id=%s endpoint=%s attempt=%d/%d "
                "retry=%d status=%d ttfb_ms=%.2f total_ms=%.2f"
            ),
            request_id,
            endpoint,
            attempt,
            total_attempts,
            retry,
            result.status,
            result.ttfb_ms,
            result.total_ms,
        )
        self._audit(
            "proxy_attempt_success",
            request_id=request_id,
            endpoint=endpoint,
            attempt=attempt,
            retry=retry,
            method=method,
            status=result.status,
            ttfb_ms=result.ttfb_ms,
            total_ms=result.total_ms,
            elapsed_ms=elapsed_ms,
        )
        return result

    async def _backoff(self, retry: int, *, request_id: str) -> None:
        delay_ms = backoff_delay_ms(
            retry,
            base_ms=self.backoff_base_ms,
            jitter_ms=self.backoff_jitter_ms,
            max_ms=self.backoff_max_ms,
        )
        logger.debug(
            "proxy_backoff request_id=%s retry=%d delay_ms=%.2f",
            request_id,
            retry,
            delay_ms,
        )
        await self._sleep(delay_ms / 1000.0)
