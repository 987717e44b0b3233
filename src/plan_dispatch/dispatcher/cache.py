"""TTL result cache keyed by request fingerprint."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, delete, select

from plan_dispatch.config import CacheSettings
from plan_dispatch.dispatcher.models import CacheEntry, CacheMetadata, CacheStats
from plan_dispatch.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from plan_dispatch.storage.sqlmodel_models import ResultCacheEntry

logger = logging.getLogger(__name__)


class ResultCache:
    """Cache of completed payloads; expired rows behave as misses."""

    def __init__(
        self,
        engine: Engine,
        *,
        settings: CacheSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.settings = settings or CacheSettings()
        self._clock = clock

    def ttl_for(self, content_class: str) -> timedelta:
        seconds = self.settings.class_ttl_seconds.get(
            content_class,
            self.settings.default_ttl_seconds,
        )
        return timedelta(seconds=seconds)

    def get(self, fingerprint: str) -> CacheEntry | None:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.exec(
                select(ResultCacheEntry).where(
                    ResultCacheEntry.fingerprint == fingerprint,
                    col(ResultCacheEntry.expires_at) > now,
                ),
            ).one_or_none()
            if row is None:
                return None
            return _to_cache_entry(row)

    def put(
        self,
        fingerprint: str,
        payload: Any,
        *,
        content_class: str,
        ttl: timedelta | None = None,
        metadata: CacheMetadata | None = None,
    ) -> CacheEntry:
        """Insert or replace the payload and restart its TTL."""

        effective_ttl = ttl if ttl is not None else self.ttl_for(content_class)
        if effective_ttl <= timedelta(0):
            raise ValueError(f"Cache TTL must be positive, got {effective_ttl}.")
        meta = metadata or CacheMetadata()
        payload_json = json.dumps(payload, ensure_ascii=False, sort_keys=True)

        while True:
            now = self._clock()
            with Session(self.engine) as session:
                row = session.get(ResultCacheEntry, fingerprint)
                if row is None:
                    row = ResultCacheEntry(
                        fingerprint=fingerprint,
                        content_class=content_class,
                        payload_json=payload_json,
                        created_at=to_db_datetime(now),
                        expires_at=to_db_datetime(now + effective_ttl),
                        hit_count=0,
                        last_accessed_at=to_db_datetime(now),
                    )
                row.content_class = content_class
                row.payload_json = payload_json
                row.created_at = to_db_datetime(now)
                row.expires_at = to_db_datetime(now + effective_ttl)
                row.model_used = meta.model_used
                row.generation_time_ms = meta.generation_time_ms
                row.tokens_used = meta.tokens_used
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # Another writer inserted the same fingerprint first; update theirs.
                    session.rollback()
                    continue
                session.refresh(row)
                logger.debug(
                    "Cached %s result %s for %s",
                    content_class,
                    fingerprint[:12],
                    effective_ttl,
                )
                return _to_cache_entry(row)

    def touch(self, fingerprint: str) -> bool:
        """Count one hit; False when the entry is missing or expired."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResultCacheEntry)
                .where(
                    col(ResultCacheEntry.fingerprint) == fingerprint,
                    col(ResultCacheEntry.expires_at) > now,
                )
                .values(
                    hit_count=col(ResultCacheEntry.hit_count) + 1,
                    last_accessed_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def invalidate(self, fingerprint: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                delete(ResultCacheEntry).where(
                    col(ResultCacheEntry.fingerprint) == fingerprint,
                ),
            )
            session.commit()
            return result.rowcount > 0

    def sweep_expired(self) -> int:
        """Delete expired entries; concurrent sweeps never double count."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                delete(ResultCacheEntry).where(col(ResultCacheEntry.expires_at) <= now),
            )
            session.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.info("Swept %s expired cache entries", deleted)
        return deleted

    def stats(self) -> CacheStats:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            entries, total_hits = session.exec(
                select(
                    func.count(),
                    func.coalesce(func.sum(ResultCacheEntry.hit_count), 0),
                ).select_from(ResultCacheEntry),
            ).one()
            live = session.exec(
                select(func.count())
                .select_from(ResultCacheEntry)
                .where(col(ResultCacheEntry.expires_at) > now),
            ).one()
        return CacheStats(
            entries=int(entries),
            live=int(live),
            expired=int(entries) - int(live),
            total_hits=int(total_hits),
        )


def _to_cache_entry(row: ResultCacheEntry) -> CacheEntry:
    return CacheEntry(
        fingerprint=row.fingerprint,
        content_class=row.content_class,
        payload=json.loads(row.payload_json),
        created_at=to_utc_aware_datetime(row.created_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
        hit_count=row.hit_count,
        last_accessed_at=to_utc_aware_datetime(row.last_accessed_at),
        model_used=row.model_used,
        generation_time_ms=row.generation_time_ms,
        tokens_used=row.tokens_used,
    )
