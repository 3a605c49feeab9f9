"""Database engine, session scoping and pooled-connection hygiene.

Scoping protocol: before any query on a scoped table, the connection's
session variables are set once, through a parameterized ``set_config``
call, to the resolved TenantScope. The scope is also recorded in the pooled
connection's ``info`` so the pool can tell a clean connection from one that
still carries another tenant's scope.

Pool rules:
- check-in resets the session variables and forgets the scope;
- checkout force-resets any connection that still carries a scope (a reset
  missed because of cancellation or an error) before handing it out;
- binding a connection already bound to a different scope fails closed.
"""

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, exc, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, create_async_engine

from ledgerline.app.config import Settings, get_settings
from ledgerline.app.db.context import TenantScope
from ledgerline.app.db.rls import BYPASS_SETTING, ORGANIZATION_SETTING, TENANT_SETTING
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation
from ledgerline.app.utils.logging import security_logger
from ledgerline.app.utils.metrics import metrics

logger = logging.getLogger(__name__)

SCOPE_INFO_KEY = "ledgerline.scope"
BYPASS_INFO_KEY = "ledgerline.bypass"

BIND_SCOPE_SQL = text(
    "SELECT set_config(:tenant_setting, :tenant_id, false), "
    "set_config(:org_setting, :organization_id, false)"
)

RESET_SCOPE_SQL = (
    f"SELECT set_config('{TENANT_SETTING}', '', false), "
    f"set_config('{ORGANIZATION_SETTING}', '', false), "
    f"set_config('{BYPASS_SETTING}', 'off', false)"
)


def normalize_async_url(database_url: str) -> str:
    """Convert sync driver URLs to their async equivalents."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def create_async_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create async SQLAlchemy engine from settings, with pool hygiene installed.

    Raises:
        ValueError: If DATABASE_URL is empty.
    """
    if not settings.database_url:
        raise ValueError("DATABASE_URL must be set to a valid connection string.")

    database_url = normalize_async_url(settings.database_url)
    kwargs: dict[str, Any] = {"pool_pre_ping": True, "echo": False}
    if database_url.startswith("postgresql"):
        kwargs["pool_size"] = settings.database_pool_size

    engine = create_async_engine(database_url, **kwargs)
    install_pool_hygiene(engine)
    return engine


def make_pool_listeners(
    is_postgres: bool,
) -> tuple[Callable[..., None], Callable[..., None]]:
    """Build (checkout, checkin) pool listeners.

    Kept separate from ``install_pool_hygiene`` so the listeners can be
    driven directly with a stub DBAPI connection.
    """

    def _reset(dbapi_connection: Any) -> None:
        if not is_postgres or dbapi_connection is None:
            return
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(RESET_SCOPE_SQL)
        finally:
            cursor.close()
        # The DBAPI opened a transaction; an uncommitted reset is undone by the next rollback
        dbapi_connection.commit()

    def on_checkout(dbapi_connection: Any, connection_record: Any, connection_proxy: Any) -> None:
        stale = connection_record.info.get(SCOPE_INFO_KEY)
        bypass = connection_record.info.get(BYPASS_INFO_KEY)
        if stale is None and not bypass:
            return
        security_logger.log_pool_reset("stale_scope_on_checkout", stale)
        metrics.inc_pool_reset("checkout")
        try:
            _reset(dbapi_connection)
        except Exception as e:
            # The pool discards this connection and retries with another one
            raise exc.DisconnectionError("Could not reset stale tenant scope") from e
        connection_record.info.pop(SCOPE_INFO_KEY, None)
        connection_record.info.pop(BYPASS_INFO_KEY, None)

    def on_checkin(dbapi_connection: Any, connection_record: Any) -> None:
        if connection_record.info.get(SCOPE_INFO_KEY) is None and not connection_record.info.get(
            BYPASS_INFO_KEY
        ):
            return
        try:
            _reset(dbapi_connection)
        except Exception:
            # Scope stays recorded; the next checkout resets or discards it
            logger.warning("Scope reset on check-in failed", exc_info=True)
            return
        metrics.inc_pool_reset("checkin")
        connection_record.info.pop(SCOPE_INFO_KEY, None)
        connection_record.info.pop(BYPASS_INFO_KEY, None)

    return on_checkout, on_checkin


def install_pool_hygiene(engine: AsyncEngine) -> None:
    """Attach scope reset listeners to the engine's pool."""
    on_checkout, on_checkin = make_pool_listeners(engine.dialect.name == "postgresql")
    event.listen(engine.sync_engine, "checkout", on_checkout)
    event.listen(engine.sync_engine, "checkin", on_checkin)


def current_scope(conn: AsyncConnection) -> TenantScope | None:
    """Scope currently bound to the connection, if any."""
    return conn.info.get(SCOPE_INFO_KEY)


async def bind_session_scope(conn: AsyncConnection, scope: TenantScope) -> None:
    """Set the connection's session scoping variables.

    Raises:
        RuntimeInvariantViolation: TENANT_ISOLATION_VIOLATION if the
            connection is already bound to a different scope.
    """
    bound = current_scope(conn)
    if bound is not None:
        if bound == scope:
            return
        violation = RuntimeInvariantViolation(
            InvariantCode.TENANT_ISOLATION_VIOLATION,
            "Connection is already bound to another tenant scope",
            {
                "reason": "stale_session_scope",
                "bound_tenant_id": bound.tenant_id,
                "requested_tenant_id": scope.tenant_id,
            },
        )
        security_logger.log_violation(violation, scope)
        metrics.inc_violation(violation.code.value)
        raise violation

    if conn.dialect.name == "postgresql":
        await conn.execute(
            BIND_SCOPE_SQL,
            {
                "tenant_setting": TENANT_SETTING,
                "tenant_id": scope.tenant_id,
                "org_setting": ORGANIZATION_SETTING,
                "organization_id": ""
                if scope.organization_id is None
                else str(scope.organization_id),
            },
        )
        # Session-level set_config is undone by a rollback unless committed
        await conn.commit()
    conn.info[SCOPE_INFO_KEY] = scope


async def clear_session_scope(conn: AsyncConnection) -> None:
    """Reset tenant, organization and bypass session variables."""
    if conn.dialect.name == "postgresql":
        await conn.rollback()
        await conn.execute(text(RESET_SCOPE_SQL))
        await conn.commit()
    conn.info.pop(SCOPE_INFO_KEY, None)
    conn.info.pop(BYPASS_INFO_KEY, None)


@asynccontextmanager
async def tenant_connection(
    engine: AsyncEngine, scope: TenantScope
) -> AsyncGenerator[AsyncConnection, None]:
    """Check out a connection bound to exactly one tenant scope.

    The scope is cleared in ``finally`` so a cancelled request never returns
    a scoped connection to the pool; the check-in listener resets again.
    """
    async with engine.connect() as conn:
        await bind_session_scope(conn, scope)
        try:
            yield conn
        finally:
            await clear_session_scope(conn)


@asynccontextmanager
async def tenant_session(
    engine: AsyncEngine, scope: TenantScope
) -> AsyncGenerator[AsyncSession, None]:
    """AsyncSession over a tenant-bound connection."""
    async with tenant_connection(engine, scope) as conn:
        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            yield session


# Global async engine
_async_engine: AsyncEngine | None = None


def get_async_engine() -> AsyncEngine:
    """Get global async engine instance."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_async_engine_from_settings(get_settings())
    return _async_engine


async def dispose_async_engine() -> None:
    global _async_engine
    if _async_engine is not None:
        await _async_engine.dispose()
        _async_engine = None
