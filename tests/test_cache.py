from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest
from support import WORKOUT_PAYLOAD, FakeClock

from plan_dispatch.config import CacheSettings
from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.models import CacheMetadata
from plan_dispatch.dispatcher.repository import JobRepository

pytestmark = [
    allure.epic("Generation Dispatch"),
    allure.feature("Result Cache"),
]

FP = "a" * 64


def test_put_then_get_round_trips_payload_and_metadata(cache: ResultCache) -> None:
    cache.put(
        FP,
        WORKOUT_PAYLOAD,
        content_class="workout_plan",
        metadata=CacheMetadata(
            model_used="gemini-2.5-flash",
            generation_time_ms=840,
            tokens_used=512,
        ),
    )

    entry = cache.get(FP)
    assert entry is not None
    assert entry.payload == WORKOUT_PAYLOAD
    assert entry.content_class == "workout_plan"
    assert entry.model_used == "gemini-2.5-flash"
    assert entry.generation_time_ms == 840
    assert entry.tokens_used == 512
    assert entry.hit_count == 0


def test_entries_expire_after_class_ttl(cache: ResultCache, clock: FakeClock) -> None:
    cache.put(FP, {"meal": "oats"}, content_class="meal_plan")
    assert cache.ttl_for("meal_plan") == timedelta(days=1)
    assert cache.ttl_for("workout_plan") == timedelta(days=7)
    assert cache.ttl_for("unknown_class") == timedelta(days=1)

    clock.advance(hours=23, minutes=59)
    assert cache.get(FP) is not None

    clock.advance(minutes=1)
    assert cache.get(FP) is None
    assert cache.touch(FP) is False


def test_put_replaces_payload_and_restarts_ttl_but_keeps_hits(
    cache: ResultCache,
    clock: FakeClock,
) -> None:
    cache.put(FP, {"version": 1}, content_class="workout_plan", ttl=timedelta(hours=1))
    assert cache.touch(FP) is True
    assert cache.touch(FP) is True

    clock.advance(minutes=50)
    cache.put(FP, {"version": 2}, content_class="workout_plan", ttl=timedelta(hours=1))
    clock.advance(minutes=50)

    entry = cache.get(FP)
    assert entry is not None
    assert entry.payload == {"version": 2}
    assert entry.hit_count == 2
    assert entry.expires_at == clock() + timedelta(minutes=10)


def test_touch_records_hit_and_access_time(cache: ResultCache, clock: FakeClock) -> None:
    cache.put(FP, WORKOUT_PAYLOAD, content_class="workout_plan")
    clock.advance(minutes=5)

    assert cache.touch(FP) is True
    entry = cache.get(FP)
    assert entry is not None
    assert entry.hit_count == 1
    assert entry.last_accessed_at == clock()
    assert cache.touch("missing") is False


def test_sweep_expired_deletes_only_expired_rows(cache: ResultCache, clock: FakeClock) -> None:
    cache.put("short", {"x": 1}, content_class="meal_plan", ttl=timedelta(minutes=1))
    cache.put("long", {"x": 2}, content_class="workout_plan")
    clock.advance(minutes=2)

    stats = cache.stats()
    assert (stats.entries, stats.live, stats.expired) == (2, 1, 1)

    assert cache.sweep_expired() == 1
    assert cache.sweep_expired() == 0
    assert cache.get("long") is not None
    assert cache.stats().entries == 1


def test_concurrent_sweeps_delete_each_row_once(db_path, clock: FakeClock) -> None:
    repository = JobRepository(db_path, clock=clock)
    repository.init_schema()
    cache = ResultCache(repository.engine, clock=clock)
    for index in range(20):
        cache.put(f"fp-{index}", {"i": index}, content_class="meal_plan", ttl=timedelta(seconds=1))
    clock.advance(seconds=5)

    results: list[int] = []
    lock = threading.Lock()
    start = threading.Event()

    def sweep() -> None:
        start.wait(timeout=2)
        deleted = cache.sweep_expired()
        with lock:
            results.append(deleted)

    threads = [threading.Thread(target=sweep) for _ in range(4)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    assert sum(results) == 20
    repository.close()


def test_invalidate_and_ttl_validation(cache: ResultCache) -> None:
    cache.put(FP, WORKOUT_PAYLOAD, content_class="workout_plan")
    assert cache.invalidate(FP) is True
    assert cache.invalidate(FP) is False
    assert cache.get(FP) is None

    with pytest.raises(ValueError, match="TTL must be positive"):
        cache.put(FP, WORKOUT_PAYLOAD, content_class="workout_plan", ttl=timedelta(0))


def test_class_ttl_overrides_come_from_settings(repository: JobRepository) -> None:
    cache = ResultCache(
        repository.engine,
        settings=CacheSettings(default_ttl_seconds=60, class_ttl_seconds={"meal_plan": 120}),
    )

    assert cache.ttl_for("meal_plan") == timedelta(seconds=120)
    assert cache.ttl_for("workout_plan") == timedelta(seconds=60)
