"""Unit tests for the startup invariant validator."""

import warnings
from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from ledgerline.app.config import Settings
from ledgerline.app.governance.roles import get_role_registry, reset_role_registry
from ledgerline.app.invariants import startup
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation
from ledgerline.app.invariants.startup import (
    StartupState,
    StartupValidator,
    load_settings_or_throw,
    migrations_table_exists,
    validate_startup_or_throw,
)

PRODUCTION_SECRET = "production-secret-that-is-long-enough-0123"


def _settings() -> Settings:
    return Settings(_env_file=None)  # type: ignore[call-arg]


async def _migrated(settings: Settings) -> bool:
    return True


async def _not_migrated(settings: Settings) -> bool:
    return False


async def _unreachable(settings: Settings) -> bool:
    raise ConnectionRefusedError("db down")


@pytest.fixture(autouse=True)
def _reset_registry():
    yield
    reset_role_registry()


@pytest.fixture
def production(monkeypatch: pytest.MonkeyPatch, governance_dir: Path) -> pytest.MonkeyPatch:
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("SESSION_SECRET", PRODUCTION_SECRET)
    monkeypatch.setenv("GOVERNANCE_DIR", str(governance_dir))
    return monkeypatch


class TestEnvironment:
    def test_missing_database_url_is_env_invalid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL")

        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            load_settings_or_throw(_settings)

        violation = exc_info.value
        assert violation.code is InvariantCode.ENV_INVALID
        assert [f["field"] for f in violation.details["fields"]] == ["DATABASE_URL"]

    def test_all_invalid_fields_reported_together(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL")
        monkeypatch.setenv("PORT", "not-a-port")

        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            load_settings_or_throw(_settings)

        fields = {f["field"] for f in exc_info.value.details["fields"]}
        assert fields == {"DATABASE_URL", "PORT"}


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_env_failure_aborts(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL")
        validator = StartupValidator(_settings, _migrated)

        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            await validator.run()

        assert exc_info.value.code is InvariantCode.ENV_INVALID
        assert validator.state is StartupState.ABORTED

    @pytest.mark.asyncio
    async def test_runs_only_once(self) -> None:
        validator = StartupValidator(_settings, _migrated)
        await validator.run()

        with pytest.raises(RuntimeError, match="already ran"):
            await validator.run()

    @pytest.mark.asyncio
    async def test_test_env_with_locks_reaches_ready(self) -> None:
        report = await validate_startup_or_throw(_settings, _not_migrated)

        assert report.state is StartupState.READY
        assert report.skipped_checks == ["migrations"]
        assert report.lock_set is not None
        assert report.api_versions == {"core": "v1", "admin": "v1"}
        assert get_role_registry().version == "test-1"


class TestGovernance:
    @pytest.mark.asyncio
    async def test_production_without_locks_fails(
        self, production: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        production.setenv("GOVERNANCE_DIR", str(tmp_path))
        validator = StartupValidator(_settings, _migrated)

        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            await validator.run()

        violation = exc_info.value
        assert violation.code is InvariantCode.GOVERNANCE_LOCK_MISSING
        assert "contract.lock.json" in violation.details["missing"]
        assert validator.state is StartupState.ABORTED

    @pytest.mark.asyncio
    async def test_production_ignores_relaxation(
        self, production: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        production.setenv("GOVERNANCE_DIR", str(tmp_path))
        production.setenv("ALLOW_RELAXED_STARTUP", "true")

        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            await validate_startup_or_throw(_settings, _migrated)

        assert exc_info.value.code is InvariantCode.GOVERNANCE_LOCK_MISSING

    @pytest.mark.asyncio
    async def test_development_relaxed_without_locks_succeeds(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("APP_ENV", "development")
        monkeypatch.setenv("ALLOW_RELAXED_STARTUP", "true")
        monkeypatch.setenv("GOVERNANCE_DIR", str(tmp_path))

        report = await validate_startup_or_throw(_settings, _not_migrated)

        assert report.state is StartupState.READY
        assert report.skipped_checks == ["governance_lock", "migrations"]
        # No contract available: every role check fails closed
        assert get_role_registry().roles == frozenset()

    @pytest.mark.asyncio
    async def test_development_without_relaxation_requires_locks(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("APP_ENV", "development")
        monkeypatch.setenv("GOVERNANCE_DIR", str(tmp_path))

        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            await validate_startup_or_throw(_settings, _not_migrated)

        assert exc_info.value.code is InvariantCode.GOVERNANCE_LOCK_MISSING


class TestMigrations:
    @pytest.mark.asyncio
    async def test_production_with_migrations_ready(self, production: pytest.MonkeyPatch) -> None:
        report = await validate_startup_or_throw(_settings, _migrated)

        assert report.state is StartupState.READY
        assert report.skipped_checks == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("probe", [_not_migrated, _unreachable])
    async def test_production_without_migrations_fails(
        self, production: pytest.MonkeyPatch, probe
    ) -> None:
        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            await validate_startup_or_throw(_settings, probe)

        assert exc_info.value.code is InvariantCode.DB_MIGRATIONS_MISSING
        assert exc_info.value.details["table"] == "alembic_version"

    @pytest.mark.asyncio
    async def test_migrations_probe_against_database(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        url = f"sqlite+aiosqlite:///{tmp_path / 'migrated.db'}"
        monkeypatch.setenv("DATABASE_URL", url)
        settings = _settings()

        assert await migrations_table_exists(settings) is False

        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32))"))
        await engine.dispose()

        assert await migrations_table_exists(settings) is True


def test_module_source_has_no_invalid_escape_sequences() -> None:
    """The state diagram in the module docstring must compile cleanly."""
    source = Path(startup.__file__).read_text()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, startup.__file__, "exec")
