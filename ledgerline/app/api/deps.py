"""Shared FastAPI dependencies for tenant-scoped data access."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine

from ledgerline.app.api.auth import get_current_principal
from ledgerline.app.db.context import Principal
from ledgerline.app.db.engine import get_async_engine, tenant_session
from ledgerline.app.db.guard import QueryGuard


def get_engine() -> AsyncEngine:
    """Engine dependency; tests override it with their own engine."""
    return get_async_engine()


async def get_query_guard(
    principal: Annotated[Principal, Depends(get_current_principal)],
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> AsyncGenerator[QueryGuard, None]:
    """QueryGuard over a connection bound to the principal's scope.

    Handlers commit explicitly; anything uncommitted is rolled back when
    the session closes.
    """
    async with tenant_session(engine, principal.scope) as session:
        yield QueryGuard(session, principal.scope)
