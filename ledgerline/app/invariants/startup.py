r"""Startup invariant validator.

Runs once, before the service accepts traffic:

    Unvalidated -> EnvValidated -> GovernanceValidated -> MigrationsValidated -> Ready
                \______________________ any failure ______________________/-> Aborted

Outside production, ALLOW_RELAXED_STARTUP skips the governance and
migrations checks. In production that toggle is ignored.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ledgerline.app.config import Settings
from ledgerline.app.db.engine import normalize_async_url
from ledgerline.app.governance.locks import (
    CONTRACT_LOCK_FILE,
    GovernanceLockSet,
    load_contract_lock,
    load_lock_set,
    missing_lock_files,
)
from ledgerline.app.governance.roles import RoleRegistry, install_role_registry
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation
from ledgerline.app.utils.logging import security_logger
from ledgerline.app.utils.metrics import metrics

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "alembic_version"


class StartupState(str, Enum):
    UNVALIDATED = "unvalidated"
    ENV_VALIDATED = "env_validated"
    GOVERNANCE_VALIDATED = "governance_validated"
    MIGRATIONS_VALIDATED = "migrations_validated"
    READY = "ready"
    ABORTED = "aborted"


@dataclass
class StartupReport:
    """Outcome of a successful validation run."""

    state: StartupState
    settings: Settings
    registry: RoleRegistry
    lock_set: GovernanceLockSet | None = None
    api_versions: dict[str, str] = field(default_factory=dict)
    skipped_checks: list[str] = field(default_factory=list)


MigrationsProbe = Callable[[Settings], Awaitable[bool]]


async def migrations_table_exists(settings: Settings) -> bool:
    """Whether the migration bookkeeping table exists in the database."""
    engine = create_async_engine(normalize_async_url(settings.database_url), poolclass=NullPool)
    try:
        async with engine.connect() as conn:
            return await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).has_table(MIGRATIONS_TABLE)
            )
    finally:
        await engine.dispose()


def load_settings_or_throw(settings_factory: Callable[[], Settings] = Settings) -> Settings:
    """Build settings, collecting every invalid field into one ENV_INVALID."""
    try:
        return settings_factory()
    except ValidationError as e:
        fields = [
            {
                "field": ".".join(str(part) for part in err["loc"]).upper() or "SETTINGS",
                "error": err["msg"],
            }
            for err in e.errors()
        ]
        raise RuntimeInvariantViolation(
            InvariantCode.ENV_INVALID,
            f"{len(fields)} environment variable(s) missing or invalid",
            {"fields": fields},
        ) from e


class StartupValidator:
    """Runs the startup state machine exactly once."""

    def __init__(
        self,
        settings_factory: Callable[[], Settings] = Settings,
        migrations_probe: MigrationsProbe = migrations_table_exists,
    ) -> None:
        self._settings_factory = settings_factory
        self._migrations_probe = migrations_probe
        self._state = StartupState.UNVALIDATED

    @property
    def state(self) -> StartupState:
        return self._state

    async def run(self) -> StartupReport:
        """Advance to Ready or raise the violation that aborted startup."""
        if self._state is not StartupState.UNVALIDATED:
            raise RuntimeError(f"Startup validation already ran (state={self._state.value})")
        try:
            return await self._run()
        except RuntimeInvariantViolation as violation:
            self._state = StartupState.ABORTED
            security_logger.log_violation(violation)
            metrics.inc_violation(violation.code.value)
            raise

    async def _run(self) -> StartupReport:
        skipped: list[str] = []

        settings = load_settings_or_throw(self._settings_factory)
        if settings.is_production and settings.allow_relaxed_startup:
            logger.warning("ALLOW_RELAXED_STARTUP is ignored in production")
        self._state = StartupState.ENV_VALIDATED

        lock_set: GovernanceLockSet | None = None
        if settings.relaxed_startup:
            skipped.append("governance_lock")
        else:
            missing = missing_lock_files(settings.governance_dir)
            if missing:
                raise RuntimeInvariantViolation(
                    InvariantCode.GOVERNANCE_LOCK_MISSING,
                    f"{len(missing)} governance lock file(s) missing",
                    {"missing": missing, "governance_dir": str(settings.governance_dir)},
                )
            lock_set = load_lock_set(settings.governance_dir)
        self._state = StartupState.GOVERNANCE_VALIDATED

        if not settings.is_production:
            skipped.append("migrations")
        else:
            await self._check_migrations(settings)
        self._state = StartupState.MIGRATIONS_VALIDATED

        registry = self._build_registry(settings, lock_set)
        install_role_registry(registry)

        api_versions = dict(settings.api_versions)
        if lock_set is not None:
            api_versions.update(lock_set.contract.api.versions)

        self._state = StartupState.READY
        logger.info(
            f"Startup invariants passed ({settings.app_env})",
            extra={
                "structured": {
                    "app_env": settings.app_env,
                    "registry_version": registry.version,
                    "skipped_checks": skipped,
                }
            },
        )
        return StartupReport(
            state=self._state,
            settings=settings,
            registry=registry,
            lock_set=lock_set,
            api_versions=api_versions,
            skipped_checks=skipped,
        )

    async def _check_migrations(self, settings: Settings) -> None:
        try:
            applied = await self._migrations_probe(settings)
        except Exception as e:
            raise RuntimeInvariantViolation(
                InvariantCode.DB_MIGRATIONS_MISSING,
                "Could not verify applied migrations",
                {"table": MIGRATIONS_TABLE, "error": type(e).__name__},
            ) from e
        if not applied:
            raise RuntimeInvariantViolation(
                InvariantCode.DB_MIGRATIONS_MISSING,
                f"Migration bookkeeping table {MIGRATIONS_TABLE!r} not found",
                {"table": MIGRATIONS_TABLE},
            )

    def _build_registry(
        self, settings: Settings, lock_set: GovernanceLockSet | None
    ) -> RoleRegistry:
        if lock_set is not None:
            return RoleRegistry.from_contract(lock_set.contract)
        # Relaxed startup: use the contract lock if present, else govern nothing
        if (settings.governance_dir / CONTRACT_LOCK_FILE).is_file():
            return RoleRegistry.from_contract(load_contract_lock(settings.governance_dir))
        logger.warning("No contract lock available; every role check will fail closed")
        return RoleRegistry.empty()


async def validate_startup_or_throw(
    settings_factory: Callable[[], Settings] = Settings,
    migrations_probe: MigrationsProbe = migrations_table_exists,
) -> StartupReport:
    """Validate every startup invariant or raise RuntimeInvariantViolation."""
    return await StartupValidator(settings_factory, migrations_probe).run()
