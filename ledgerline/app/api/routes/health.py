"""Health check endpoints.

- /health is liveness only
- /healthz reports startup state and database connectivity
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from ledgerline.app.api.deps import get_engine
from ledgerline.app.invariants.startup import StartupState

router = APIRouter()


async def check_db(engine: AsyncEngine) -> tuple[bool, str]:
    """Check database connectivity.

    Returns:
        (is_ok, status_message)
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return (True, "ok")
    except Exception as e:
        return (False, f"error: {type(e).__name__}")


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check for Docker/k8s.

    Returns:
        200 OK always (application is running)
    """
    return {"status": "ok"}


@router.get("/healthz", response_model=None)
async def healthz(
    request: Request,
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> dict[str, Any] | Response:
    """Readiness check.

    Returns:
        200 with component status if startup reached Ready and the DB answers
        503 otherwise
    """
    report = getattr(request.app.state, "startup_report", None)
    startup_state = report.state if report is not None else StartupState.UNVALIDATED

    db_ok, db_status = await check_db(engine)
    ready = startup_state is StartupState.READY and db_ok

    response_body = {
        "status": "ok" if ready else "degraded",
        "components": {
            "startup": startup_state.value,
            "db": db_status,
        },
    }
    if report is not None:
        response_body["skipped_checks"] = report.skipped_checks

    if not ready:
        return Response(
            content=json.dumps(response_body),
            status_code=503,
            media_type="application/json",
        )

    return response_body
