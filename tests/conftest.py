"""Shared pytest fixtures for all test suites."""

import os
from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from ledgerline.app.config import get_settings
from ledgerline.app.db.engine import install_pool_hygiene
from ledgerline.app.db.models import Base, Tenant
from ledgerline.app.db.rls import AUDIT_VIEW
from ledgerline.app.governance.roles import RoleRegistry, install_role_registry, reset_role_registry
from ledgerline.app.utils.audit import InMemoryAuditSink

FIXTURES_DIR = Path(__file__).parent / "fixtures"
GOVERNANCE_FIXTURE_DIR = FIXTURES_DIR / "governance"

TEST_ROLES = frozenset({"owner", "admin", "accountant", "viewer"})


@pytest.fixture(autouse=True)
def _fresh_settings() -> Generator[None, None, None]:
    """Settings are cached per process; tests that patch env need a clean cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def role_registry() -> Generator[RoleRegistry, None, None]:
    """Install the test role registry for the duration of a test."""
    registry = RoleRegistry(version="test-1", roles=TEST_ROLES)
    install_role_registry(registry)
    yield registry
    reset_role_registry()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with pool hygiene and the full schema.

    File-backed (not :memory:) so that concurrent sessions get distinct
    pooled connections.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledgerline.db'}")
    install_pool_hygiene(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSession(engine) as session:
        session.add_all([Tenant(tenant_id="acme", name="Acme"), Tenant(tenant_id="globex", name="Globex")])
        await session.commit()

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to be set to a real PostgreSQL connection string.
    Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    # Ensure it's a postgres URL
    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    # Convert to async driver if needed
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(
        database_url,
        poolclass=NullPool,
        echo=False,
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup: drop the audit view (it depends on the tables), then all tables
    async with engine.begin() as conn:
        await conn.execute(text(f"DROP VIEW IF EXISTS {AUDIT_VIEW}"))
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def governance_dir() -> Path:
    """Complete, valid governance lock set."""
    return GOVERNANCE_FIXTURE_DIR
