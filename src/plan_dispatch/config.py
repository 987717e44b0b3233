"""Runtime configuration for the generation dispatcher."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CLASS_TTL_SECONDS: dict[str, int] = {
    "workout_plan": 7 * 24 * 3600,
    "meal_plan": 24 * 3600,
}


@dataclass(slots=True)
class DispatcherSettings:
    """Job store and worker settings."""

    workers: int = 1
    poll_interval_seconds: float = 1.0
    job_timeout_seconds: int = 600
    job_retention_days: int = 7
    default_max_retries: int = 3
    conflict_policy: str = "reject"
    maintenance_interval_seconds: float = 60.0
    sqlite_busy_timeout_ms: int = 5_000
    error_message_max_chars: int = 500


@dataclass(slots=True)
class BackoffSettings:
    """Exponential backoff between attempts of one job."""

    base_seconds: float = 1.0
    cap_seconds: float = 30.0
    jitter_seconds: float = 1.0


@dataclass(slots=True)
class UpstreamSettings:
    """Generative backend endpoint settings."""

    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash"
    request_timeout_seconds: float = 60.0
    max_output_tokens_ceiling: int = 16_384
    truncation_margin_tokens: int = 16


@dataclass(slots=True)
class CredentialSettings:
    """Credential pool settings."""

    api_keys: tuple[str, ...] = ()
    requests_per_minute: int = 15
    requests_per_day: int = 1_500
    quota_cooldown_seconds: float = 300.0
    forbidden_cooldown_seconds: float = 3_600.0
    daily_reset_timezone: str = "UTC"


@dataclass(slots=True)
class CacheSettings:
    """Result cache TTL policy."""

    default_ttl_seconds: int = 24 * 3600
    class_ttl_seconds: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_CLASS_TTL_SECONDS),
    )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".plan_dispatch.db")
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PLAN_DISPATCH_DB_PATH", ".plan_dispatch.db")),
            dispatcher=DispatcherSettings(
                workers=int(os.getenv("PLAN_DISPATCH_WORKERS", "1")),
                poll_interval_seconds=float(
                    os.getenv("PLAN_DISPATCH_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                job_timeout_seconds=int(os.getenv("PLAN_DISPATCH_JOB_TIMEOUT_SECONDS", "600")),
                job_retention_days=int(os.getenv("PLAN_DISPATCH_JOB_RETENTION_DAYS", "7")),
                default_max_retries=int(os.getenv("PLAN_DISPATCH_MAX_RETRIES", "3")),
                conflict_policy=os.getenv("PLAN_DISPATCH_CONFLICT_POLICY", "reject")
                .strip()
                .lower(),
                maintenance_interval_seconds=float(
                    os.getenv("PLAN_DISPATCH_MAINTENANCE_INTERVAL_SECONDS", "60.0"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("PLAN_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
                error_message_max_chars=int(
                    os.getenv("PLAN_DISPATCH_ERROR_MESSAGE_MAX_CHARS", "500"),
                ),
            ),
            backoff=BackoffSettings(
                base_seconds=float(os.getenv("PLAN_DISPATCH_BACKOFF_BASE_SECONDS", "1.0")),
                cap_seconds=float(os.getenv("PLAN_DISPATCH_BACKOFF_CAP_SECONDS", "30.0")),
                jitter_seconds=float(os.getenv("PLAN_DISPATCH_BACKOFF_JITTER_SECONDS", "1.0")),
            ),
            upstream=UpstreamSettings(
                base_url=os.getenv(
                    "PLAN_DISPATCH_GEMINI_BASE_URL",
                    "https://generativelanguage.googleapis.com/v1beta",
                ).rstrip("/"),
                model=os.getenv("PLAN_DISPATCH_GEMINI_MODEL", "gemini-2.5-flash"),
                request_timeout_seconds=float(
                    os.getenv("PLAN_DISPATCH_REQUEST_TIMEOUT_SECONDS", "60.0"),
                ),
                max_output_tokens_ceiling=int(
                    os.getenv("PLAN_DISPATCH_MAX_OUTPUT_TOKENS_CEILING", "16384"),
                ),
                truncation_margin_tokens=int(
                    os.getenv("PLAN_DISPATCH_TRUNCATION_MARGIN_TOKENS", "16"),
                ),
            ),
            credentials=CredentialSettings(
                api_keys=_collect_api_keys(),
                requests_per_minute=int(os.getenv("PLAN_DISPATCH_REQUESTS_PER_MINUTE", "15")),
                requests_per_day=int(os.getenv("PLAN_DISPATCH_REQUESTS_PER_DAY", "1500")),
                quota_cooldown_seconds=float(
                    os.getenv("PLAN_DISPATCH_QUOTA_COOLDOWN_SECONDS", "300"),
                ),
                forbidden_cooldown_seconds=float(
                    os.getenv("PLAN_DISPATCH_FORBIDDEN_COOLDOWN_SECONDS", "3600"),
                ),
                daily_reset_timezone=os.getenv("PLAN_DISPATCH_DAILY_RESET_TIMEZONE", "UTC"),
            ),
            cache=CacheSettings(
                default_ttl_seconds=int(
                    os.getenv("PLAN_DISPATCH_CACHE_DEFAULT_TTL_SECONDS", str(24 * 3600)),
                ),
                class_ttl_seconds={
                    **DEFAULT_CLASS_TTL_SECONDS,
                    **_collect_class_ttl_overrides(),
                },
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error when a setting is out of range."""

        if self.dispatcher.workers <= 0:
            raise ValueError("PLAN_DISPATCH_WORKERS must be > 0.")
        if self.dispatcher.poll_interval_seconds <= 0:
            raise ValueError("PLAN_DISPATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.dispatcher.job_timeout_seconds <= 0:
            raise ValueError("PLAN_DISPATCH_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.dispatcher.job_retention_days < 0:
            raise ValueError("PLAN_DISPATCH_JOB_RETENTION_DAYS must be >= 0.")
        if self.dispatcher.default_max_retries < 0:
            raise ValueError("PLAN_DISPATCH_MAX_RETRIES must be >= 0.")
        if self.dispatcher.conflict_policy not in {"reject", "replace"}:
            raise ValueError(
                "PLAN_DISPATCH_CONFLICT_POLICY must be 'reject' or 'replace', "
                f"got {self.dispatcher.conflict_policy!r}.",
            )
        if self.dispatcher.maintenance_interval_seconds <= 0:
            raise ValueError("PLAN_DISPATCH_MAINTENANCE_INTERVAL_SECONDS must be > 0.")

        if self.backoff.base_seconds < 0 or self.backoff.cap_seconds < 0:
            raise ValueError("PLAN_DISPATCH_BACKOFF_BASE_SECONDS/CAP_SECONDS must be >= 0.")
        if not 0 <= self.backoff.jitter_seconds <= self.backoff.base_seconds:
            raise ValueError(
                "PLAN_DISPATCH_BACKOFF_JITTER_SECONDS must be within "
                "[0, PLAN_DISPATCH_BACKOFF_BASE_SECONDS].",
            )

        parsed = urlparse(self.upstream.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid PLAN_DISPATCH_GEMINI_BASE_URL: "
                f"{self.upstream.base_url!r}. Expected an absolute http(s) URL.",
            )
        if self.upstream.request_timeout_seconds <= 0:
            raise ValueError("PLAN_DISPATCH_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.upstream.max_output_tokens_ceiling <= 0:
            raise ValueError("PLAN_DISPATCH_MAX_OUTPUT_TOKENS_CEILING must be > 0.")
        if self.upstream.truncation_margin_tokens < 0:
            raise ValueError("PLAN_DISPATCH_TRUNCATION_MARGIN_TOKENS must be >= 0.")

        if self.credentials.requests_per_minute < 0 or self.credentials.requests_per_day < 0:
            raise ValueError(
                "PLAN_DISPATCH_REQUESTS_PER_MINUTE/PER_DAY must be >= 0 (0 disables the limit).",
            )
        if self.credentials.quota_cooldown_seconds <= 0:
            raise ValueError("PLAN_DISPATCH_QUOTA_COOLDOWN_SECONDS must be > 0.")
        try:
            ZoneInfo(self.credentials.daily_reset_timezone)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(
                "Invalid PLAN_DISPATCH_DAILY_RESET_TIMEZONE: "
                f"{self.credentials.daily_reset_timezone!r}",
            ) from error

        if self.cache.default_ttl_seconds <= 0:
            raise ValueError("PLAN_DISPATCH_CACHE_DEFAULT_TTL_SECONDS must be > 0.")
        for content_class, ttl in self.cache.class_ttl_seconds.items():
            if ttl <= 0:
                raise ValueError(
                    f"Cache TTL override must be positive: {content_class!r} -> {ttl}",
                )

    def validate_for_upstream(self) -> None:
        """Raise configuration error if no upstream API key is configured."""

        self.validate()
        if not self.credentials.api_keys:
            raise ValueError(
                "At least one API key is required. "
                "Set PLAN_DISPATCH_GEMINI_API_KEY or PLAN_DISPATCH_GEMINI_KEY_1..N.",
            )


def _collect_api_keys() -> tuple[str, ...]:
    values: list[str] = []
    single = os.getenv("PLAN_DISPATCH_GEMINI_API_KEY", "").strip()
    if single:
        values.append(single)
    index = 1
    while True:
        numbered = os.getenv(f"PLAN_DISPATCH_GEMINI_KEY_{index}")
        if numbered is None:
            break
        values.append(numbered.strip())
        index += 1
    return _dedupe_keys(values)


def _dedupe_keys(values: list[str]) -> tuple[str, ...]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        deduped.append(value)
    return tuple(deduped)


def _collect_class_ttl_overrides() -> dict[str, int]:
    raw = os.getenv("PLAN_DISPATCH_CACHE_TTL_OVERRIDES", "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid PLAN_DISPATCH_CACHE_TTL_OVERRIDES entry: "
                f"{token!r}. Expected format '<content_class>|<seconds>'.",
            )
        content_class, seconds_raw = token.rsplit("|", 1)
        content_class = content_class.strip()
        seconds_raw = seconds_raw.strip()
        try:
            seconds = int(seconds_raw)
        except ValueError as error:
            raise ValueError(
                "Invalid PLAN_DISPATCH_CACHE_TTL_OVERRIDES value for "
                f"{content_class!r}: {seconds_raw!r}",
            ) from error
        if seconds <= 0:
            raise ValueError(
                "Invalid PLAN_DISPATCH_CACHE_TTL_OVERRIDES value for "
                f"{content_class!r}: {seconds!r} (must be > 0)",
            )
        overrides[content_class] = seconds
    return overrides
