"""FastAPI application.

The lifespan runs the startup invariant validator before any route is
served; a violation aborts startup with its code logged.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ledgerline.app.api.routes.admin import router as admin_router
from ledgerline.app.api.routes.health import router as health_router
from ledgerline.app.api.routes.invoices import router as invoices_router
from ledgerline.app.api.routes.metrics import router as metrics_router
from ledgerline.app.db.engine import dispose_async_engine
from ledgerline.app.invariants.errors import RuntimeInvariantViolation, ViolationClass
from ledgerline.app.invariants.startup import validate_startup_or_throw
from ledgerline.app.utils.logging import configure_logging, security_logger
from ledgerline.app.utils.metrics import metrics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    try:
        report = await validate_startup_or_throw()
    except RuntimeInvariantViolation as violation:
        logger.critical(f"Startup aborted: {violation.code.value}")
        raise

    configure_logging(report.settings.log_level)
    app.state.startup_report = report
    app.state.api_versions = report.api_versions
    try:
        yield
    finally:
        await dispose_async_engine()


async def invariant_violation_handler(
    request: Request, exc: RuntimeInvariantViolation
) -> JSONResponse:
    """Opaque client response; full details stay in the server log."""
    # Engine, guard and bypass paths log and count before raising
    if exc.violation_class is ViolationClass.REQUEST and not exc.logged:
        security_logger.log_violation(exc)
        metrics.inc_violation(exc.code.value)
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": {"code": exc.code.value, "message": exc.public_message}},
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Ledgerline API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(RuntimeInvariantViolation, invariant_violation_handler)

    # Register routes
    app.include_router(health_router, tags=["health"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(invoices_router)
    app.include_router(admin_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {"message": "Ledgerline API", "version": "0.1.0"}

    return app


app = create_app()
