"""Shared fixtures: a temporary SQLite database and a controllable clock."""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import pytest

from dockwatch.batch.handler import BatchJobConfig, JobContext, JobHandler, JobResult
from dockwatch.config import DockwatchConfig, clear_config_cache, set_config
from dockwatch.database.connection import create_tables, get_db_session, reset_engine
from dockwatch.database.repositories import repository_scope


class FakeClock:
    """Clock returning a settable naive UTC time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_config(tmp_path) -> DockwatchConfig:
    """Configure a fresh SQLite database for the test."""
    config = DockwatchConfig(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
    )
    reset_engine()
    set_config(config)
    create_tables(config)
    yield config
    reset_engine()
    clear_config_cache()


@pytest.fixture
def repos(db_config):
    """Factory opening a repository scope on the test database."""
    def open_scope(action: str = "test"):
        return repository_scope(get_db_session, action)
    return open_scope


@pytest.fixture
def user_id(repos) -> int:
    with repos() as r:
        return r.users.create("alice").id


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 15, 10, 0, 0))


@pytest.fixture
def make_handler() -> Callable[..., JobHandler]:
    """Build a JobHandler around a coroutine function or a fixed result."""
    def build(
        job_type: str = "scan",
        execute: Optional[Callable[[JobContext], Any]] = None,
        result: Optional[JobResult] = None,
        enabled: bool = True,
        interval_minutes: int = 60,
        triggers_intents: bool = True,
    ) -> JobHandler:
        if execute is None:
            async def execute(context: JobContext) -> JobResult:
                context.logger.info("Checking images")
                return result or JobResult(items_checked=3, items_updated=0)

        return JobHandler(
            job_type=job_type,
            display_name=job_type.replace("-", " ").title(),
            execute=execute,
            default_config=BatchJobConfig(enabled=enabled, interval_minutes=interval_minutes),
            triggers_intents=triggers_intents,
        )
    return build
