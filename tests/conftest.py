"""Pytest configuration and shared fixtures.

Every test gets its own SQLite database file, driven through aiosqlite.

Run with:
    pytest tests/
    pytest tests/test_apply.py -v
"""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from playbook_engine.config import Settings
from playbook_engine.database.session import SessionFactory, build_engine, build_session_factory, init_db
from playbook_engine.services import Services, build_services

from helpers import FakeGenerator, Seeder


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'playbooks.db'}",
        deepseek_api_key="",
        apply_rate_limit_backoff_seconds=0,
        inline_run_processing=False,
        worker_concurrency=2,
    )


@pytest_asyncio.fixture
async def engine(settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine) -> SessionFactory:
    return build_session_factory(engine)


@pytest.fixture
def seed(sessions) -> Seeder:
    return Seeder(sessions)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def make_services(settings, sessions, generator):
    """Build the service graph, optionally with a custom fixer."""

    def _make(fixer=None, **overrides) -> Services:
        return build_services(
            settings=settings,
            sessions=sessions,
            generator=overrides.pop("generator", generator),
            fixer_factory=(lambda: fixer) if fixer is not None else None,
            **overrides,
        )

    return _make


@pytest.fixture
def services(make_services) -> Services:
    return make_services()
