from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RetryTrigger(str, Enum):
    SERVER_ERROR = "server_error"
    NOT_FOUND = "not_found"
    GATEWAY_ERROR = "gateway_error"

    def matches(self, status_code: int) -> bool:
        if self is RetryTrigger.SERVER_ERROR:
            return 500 <= status_code < 600
        if self is RetryTrigger.NOT_FOUND:
            return status_code == 404
        return status_code in {500, 502, 503}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Decides whether an upstream HTTP response should be retried.

    ``requires_fallback`` limits retries to requests with more than one
    candidate endpoint. ``fallback_immediately`` gives each endpoint a single
    attempt, so a matching response or a transport error moves straight on to
    the next endpoint. ``backoff`` controls whether a delay precedes the next
    attempt.
    """

    name: str
    trigger: RetryTrigger
    requires_fallback: bool = True
    fallback_immediately: bool = False
    backoff: bool = True

    def should_retry(self, status_code: int, *, endpoint_count: int) -> bool:
        if self.requires_fallback and endpoint_count <= 1:
            return False
        return self.trigger.matches(status_code)


SERVER_ERROR_ONLY = RetryPolicy(
    name="server_error_only",
    trigger=RetryTrigger.SERVER_ERROR,
)

NOT_FOUND_ONLY = RetryPolicy(
    name="not_found_only",
    trigger=RetryTrigger.NOT_FOUND,
    requires_fallback=False,
    fallback_immediately=True,
    backoff=False,
)

GATEWAY_ERRORS = RetryPolicy(
    name="gateway_errors",
    trigger=RetryTrigger.GATEWAY_ERROR,
)
