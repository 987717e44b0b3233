"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from support import FakeClock

from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.repository import JobRepository


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "dispatch.db"


@pytest.fixture()
def repository(db_path: Path, clock: FakeClock) -> Iterator[JobRepository]:
    repository = JobRepository(db_path, clock=clock)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def cache(repository: JobRepository, clock: FakeClock) -> ResultCache:
    return ResultCache(repository.engine, clock=clock)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer API keys and overrides out of tests."""

    for name in list(os.environ):
        if name.startswith("PLAN_DISPATCH_"):
            monkeypatch.delenv(name, raising=False)
