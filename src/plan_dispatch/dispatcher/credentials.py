"""Thread-safe pool of rate-limited upstream credentials."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from plan_dispatch.config import CredentialSettings
from plan_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_MINUTE = timedelta(minutes=1)


@dataclass(frozen=True, slots=True)
class CredentialLease:
    """Credential handed to one upstream call."""

    credential_id: str
    api_key: str = field(repr=False)
    masked_key: str


@dataclass(frozen=True, slots=True)
class CredentialView:
    """Point-in-time snapshot of one credential for operators."""

    credential_id: str
    masked_key: str
    available: bool
    blocked_until: datetime | None
    disabled_reason: str | None
    last_used_at: datetime | None
    consecutive_failures: int
    requests_last_minute: int
    requests_today: int
    quota_remaining: int | None
    total_requests: int
    total_failures: int


@dataclass(slots=True)
class _Credential:
    credential_id: str
    api_key: str
    blocked_until: datetime | None = None
    last_used_at: datetime | None = None
    use_sequence: int = 0
    disabled_reason: str | None = None
    consecutive_failures: int = 0
    minute_window: deque[datetime] = field(default_factory=deque)
    day_window: date | None = None
    day_count: int = 0
    total_requests: int = 0
    total_failures: int = 0


def mask_key(api_key: str) -> str:
    """Keep the first and last four characters for log correlation."""

    if len(api_key) <= 8:  # noqa: PLR2004
        return "***"
    return f"{api_key[:4]}...{api_key[-4:]}"


class CredentialPool:
    """Owns credential state; callers only see leases and snapshots.

    Selection is least-recently-used among credentials that are not disabled,
    not cooling down and still inside their minute/day request windows. All
    operations are serialized by one lock.
    """

    def __init__(  # noqa: PLR0913
        self,
        api_keys: Sequence[str],
        *,
        requests_per_minute: int = 15,
        requests_per_day: int = 1_500,
        daily_reset_timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials: dict[str, _Credential] = {}
        for index, api_key in enumerate(api_keys, start=1):
            credential_id = f"key-{index}"
            self._credentials[credential_id] = _Credential(
                credential_id=credential_id,
                api_key=api_key,
            )
        self._requests_per_minute = requests_per_minute
        self._requests_per_day = requests_per_day
        self._timezone = ZoneInfo(daily_reset_timezone)
        self._clock = clock
        self._lock = threading.Lock()
        self._sequence = 0

    @classmethod
    def from_settings(
        cls,
        settings: CredentialSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> CredentialPool:
        return cls(
            settings.api_keys,
            requests_per_minute=settings.requests_per_minute,
            requests_per_day=settings.requests_per_day,
            daily_reset_timezone=settings.daily_reset_timezone,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._credentials)

    def select(self) -> CredentialLease | None:
        """Lease the least-recently-used available credential, or None."""

        with self._lock:
            now = self._clock()
            candidates = [
                credential
                for credential in self._credentials.values()
                if self._is_available(credential, now)
            ]
            if not candidates:
                return None
            chosen = min(candidates, key=lambda credential: credential.use_sequence)
            self._sequence += 1
            chosen.use_sequence = self._sequence
            chosen.last_used_at = now
            chosen.minute_window.append(now)
            chosen.day_count += 1
            chosen.total_requests += 1
            return CredentialLease(
                credential_id=chosen.credential_id,
                api_key=chosen.api_key,
                masked_key=mask_key(chosen.api_key),
            )

    def report_success(self, credential_id: str) -> None:
        with self._lock:
            self._get(credential_id).consecutive_failures = 0

    def report_transient_failure(self, credential_id: str) -> None:
        with self._lock:
            credential = self._get(credential_id)
            credential.consecutive_failures += 1
            credential.total_failures += 1

    def report_quota_exceeded(self, credential_id: str, cooldown: timedelta) -> None:
        """Block the credential until `now + cooldown`."""

        with self._lock:
            credential = self._get(credential_id)
            until = self._clock() + max(cooldown, timedelta(0))
            if credential.blocked_until is None or credential.blocked_until < until:
                credential.blocked_until = until
            credential.total_failures += 1
            logger.warning(
                "Credential %s (%s) quota exceeded; blocked until %s",
                credential_id,
                mask_key(credential.api_key),
                credential.blocked_until.isoformat(),
            )

    def report_fatal(self, credential_id: str, reason: str) -> None:
        """Disable the credential until an operator reinstates it."""

        with self._lock:
            credential = self._get(credential_id)
            credential.disabled_reason = reason
            credential.total_failures += 1
            logger.error(
                "Credential %s (%s) disabled: %s",
                credential_id,
                mask_key(credential.api_key),
                reason,
            )

    def reinstate(self, credential_id: str) -> None:
        with self._lock:
            credential = self._get(credential_id)
            credential.disabled_reason = None
            credential.blocked_until = None
            credential.consecutive_failures = 0
            logger.info("Credential %s reinstated", credential_id)

    def snapshot(self) -> list[CredentialView]:
        with self._lock:
            now = self._clock()
            views: list[CredentialView] = []
            for credential in self._credentials.values():
                available = self._is_available(credential, now)
                views.append(
                    CredentialView(
                        credential_id=credential.credential_id,
                        masked_key=mask_key(credential.api_key),
                        available=available,
                        blocked_until=credential.blocked_until,
                        disabled_reason=credential.disabled_reason,
                        last_used_at=credential.last_used_at,
                        consecutive_failures=credential.consecutive_failures,
                        requests_last_minute=len(credential.minute_window),
                        requests_today=credential.day_count,
                        quota_remaining=self._quota_remaining(credential),
                        total_requests=credential.total_requests,
                        total_failures=credential.total_failures,
                    ),
                )
            return views

    def time_until_available(self) -> timedelta | None:
        """Shortest wait until any credential can be selected.

        Returns None when every credential is disabled (or the pool is empty),
        since waiting will not help.
        """

        with self._lock:
            now = self._clock()
            waits: list[timedelta] = []
            for credential in self._credentials.values():
                if credential.disabled_reason is not None:
                    continue
                if self._is_available(credential, now):
                    return timedelta(0)
                waits.append(self._wait_for(credential, now))
            if not waits:
                return None
            return min(waits)

    def _get(self, credential_id: str) -> _Credential:
        try:
            return self._credentials[credential_id]
        except KeyError:
            raise KeyError(f"Unknown credential: {credential_id}") from None

    def _is_available(self, credential: _Credential, now: datetime) -> bool:
        if credential.disabled_reason is not None:
            return False
        if credential.blocked_until is not None and credential.blocked_until > now:
            return False
        self._roll_windows(credential, now)
        if self._requests_per_minute and (
            len(credential.minute_window) >= self._requests_per_minute
        ):
            return False
        return not (self._requests_per_day and credential.day_count >= self._requests_per_day)

    def _roll_windows(self, credential: _Credential, now: datetime) -> None:
        while credential.minute_window and now - credential.minute_window[0] >= _MINUTE:
            credential.minute_window.popleft()
        today = now.astimezone(self._timezone).date()
        if credential.day_window != today:
            credential.day_window = today
            credential.day_count = 0

    def _quota_remaining(self, credential: _Credential) -> int | None:
        remaining: list[int] = []
        if self._requests_per_minute:
            remaining.append(max(0, self._requests_per_minute - len(credential.minute_window)))
        if self._requests_per_day:
            remaining.append(max(0, self._requests_per_day - credential.day_count))
        return min(remaining) if remaining else None

    def _wait_for(self, credential: _Credential, now: datetime) -> timedelta:
        wait = timedelta(0)
        if credential.blocked_until is not None and credential.blocked_until > now:
            wait = max(wait, credential.blocked_until - now)
        if self._requests_per_minute and (
            len(credential.minute_window) >= self._requests_per_minute
        ):
            wait = max(wait, credential.minute_window[0] + _MINUTE - now)
        if self._requests_per_day and credential.day_count >= self._requests_per_day:
            local_now = now.astimezone(self._timezone)
            next_midnight = datetime.combine(
                local_now.date() + timedelta(days=1),
                time.min,
                tzinfo=self._timezone,
            )
            wait = max(wait, next_midnight - now)
        return wait
