"""Deterministic upstream failure classification for credential and retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from plan_dispatch.dispatcher.backend.base import UpstreamErrorCategory

UPSTREAM_FAILURE_CLASSIFIER_VERSION = 1

_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_UNAUTHORIZED = 401
_HTTP_FORBIDDEN = 403
_HTTP_REQUEST_TIMEOUT = 408
_HTTP_SERVER_ERROR = 500

_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "resource has been exhausted",
    "rate limit",
    "too many requests",
    "usage limit",
)
_INVALID_CREDENTIAL_PATTERNS: tuple[str, ...] = (
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "api key expired",
    "unauthenticated",
    "unauthorized",
    "permission denied",
    "permission_denied",
)
_CONTENT_POLICY_PATTERNS: tuple[str, ...] = (
    "safety",
    "blocked",
    "prohibited_content",
    "recitation",
    "blocklist",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "dns",
    "unavailable",
    "overloaded",
)


@dataclass(slots=True)
class UpstreamFailureClassification:
    """Normalized failure classification result."""

    category: UpstreamErrorCategory
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": UPSTREAM_FAILURE_CLASSIFIER_VERSION,
            "category": self.category.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_upstream_failure(  # noqa: PLR0911
    *,
    status_code: int | None,
    message: str,
) -> UpstreamFailureClassification:
    """Classify an upstream HTTP failure into a deterministic category."""

    haystack = message.lower()

    if status_code == _HTTP_TOO_MANY_REQUESTS:
        return _result(UpstreamErrorCategory.QUOTA, "status_429", None)

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None and status_code in {None, _HTTP_FORBIDDEN}:
        return _result(UpstreamErrorCategory.QUOTA, "quota_message", pattern)

    pattern = _first_match(haystack, _INVALID_CREDENTIAL_PATTERNS)
    if status_code == _HTTP_UNAUTHORIZED or (
        pattern is not None and (status_code is None or status_code < _HTTP_SERVER_ERROR)
    ):
        return _result(UpstreamErrorCategory.INVALID_CREDENTIAL, "invalid_credential", pattern)
    if status_code == _HTTP_FORBIDDEN:
        return _result(UpstreamErrorCategory.INVALID_CREDENTIAL, "status_403", None)

    pattern = _first_match(haystack, _CONTENT_POLICY_PATTERNS)
    if pattern is not None and (status_code is None or status_code < _HTTP_SERVER_ERROR):
        return _result(UpstreamErrorCategory.CONTENT_POLICY, "content_policy", pattern)

    if status_code is not None and (
        status_code >= _HTTP_SERVER_ERROR or status_code == _HTTP_REQUEST_TIMEOUT
    ):
        return _result(UpstreamErrorCategory.SERVER, "server_error", None)

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None or status_code is None:
        return _result(
            UpstreamErrorCategory.NETWORK,
            "network_pattern" if pattern is not None else "no_response",
            pattern,
        )

    return _result(UpstreamErrorCategory.REJECTED, "fallback_rejected", None)


def _result(
    category: UpstreamErrorCategory,
    rule: str,
    pattern: str | None,
) -> UpstreamFailureClassification:
    return UpstreamFailureClassification(
        category=category,
        reason_code=f"upstream_{category.value}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
