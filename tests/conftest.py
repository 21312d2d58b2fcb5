"""
Test Configuration and Fixtures

Shared fixtures for the conversation integrity suite: a deterministic clock,
an in-memory SQLite engine with the full schema, and a service bound to both.
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app.
#
# Use setdefault so CI can override these to point at real services.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("CONVERSATION_HEALTH_ENABLED", "false")


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (real database engine)")
    config.addinivalue_line("markers", "api: API endpoint tests")


def pytest_collection_modifyitems(config, items):
    """
    Auto-assign tier markers so we can run:
    - pytest -m unit
    - pytest -m integration
    - pytest -m api

    Convention:
    - tests/integration/** => integration
    - tests/api/**         => api
    - everything else      => unit
    """
    for item in items:
        path = str(getattr(item, "fspath", ""))
        if item.get_closest_marker("integration") or item.get_closest_marker("api") or item.get_closest_marker("unit"):
            continue
        if "/tests/integration/" in path:
            item.add_marker(pytest.mark.integration)
        elif "/tests/api/" in path:
            item.add_marker(pytest.mark.api)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def fake_clock():
    """Deterministic clock; pass `fake_clock.now` wherever a clock is injected."""
    from tests.support.clock import FakeClock

    return FakeClock.fixed()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine with the chat schema created."""
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool

    from src.db.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_scope(db_engine):
    from src.db.client import build_session_factory, build_session_scope

    return build_session_scope(build_session_factory(db_engine))


@pytest.fixture
def integrity_policy():
    from src.contexts.conversation_integrity.application.policy import IntegrityPolicy

    return IntegrityPolicy()


@pytest.fixture
def integrity_service(session_scope, integrity_policy, fake_clock):
    from src.contexts.conversation_integrity.application.service import (
        ConversationIntegrityService,
    )

    return ConversationIntegrityService(
        session_scope,
        policy=integrity_policy,
        clock=fake_clock.now,
    )


@pytest.fixture
def load_chat(session_scope):
    """Reload a chat aggregate in a fresh unit of work."""
    from src.contexts.conversation_integrity.infrastructure.sql_repository import (
        SqlConversationRepository,
    )

    async def _load(chat_id: str):
        async with session_scope() as session:
            return await SqlConversationRepository(session).load_chat(chat_id)

    return _load


@pytest.fixture
def metrics():
    """Metrics bound to a private registry so tests never collide."""
    from prometheus_client import CollectorRegistry

    from src.monitoring.metrics import Metrics

    return Metrics(registry=CollectorRegistry())


# =============================================================================
# API FIXTURES
# =============================================================================


@pytest.fixture
def app():
    from src.api.main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
