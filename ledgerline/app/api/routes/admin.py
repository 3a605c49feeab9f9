"""Operator endpoints - isolation audit."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncEngine

from ledgerline.app.api.auth import require_roles
from ledgerline.app.api.deps import get_engine
from ledgerline.app.api.versioning import api_version_dependency
from ledgerline.app.db.context import Principal
from ledgerline.app.db.rls import audit_isolation, find_unprotected

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(api_version_dependency("admin"))],
)


@router.get("/isolation-audit")
async def isolation_audit(
    principal: Annotated[Principal, Depends(require_roles("admin"))],
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> dict[str, Any]:
    """Per-table RLS enabled/forced flags and policy counts.

    Reads catalog metadata only, so no tenant scope is bound.

    Returns:
        {"tables": [...], "unprotected": [...], "ok": bool}
    """
    if engine.dialect.name != "postgresql":
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Isolation audit requires PostgreSQL",
        )

    async with engine.connect() as conn:
        statuses = await audit_isolation(conn)

    unprotected = find_unprotected(statuses)
    return {
        "tables": [
            {
                "table_name": s.table_name,
                "rls_enabled": s.rls_enabled,
                "rls_forced": s.rls_forced,
                "policy_count": s.policy_count,
                "protected": s.protected,
            }
            for s in statuses
        ],
        "unprotected": unprotected,
        "ok": not unprotected,
    }
