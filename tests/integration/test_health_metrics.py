"""Integration tests for /health, /healthz, /metrics and startup wiring."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from ledgerline.app.api.deps import get_engine
from ledgerline.app.governance.roles import reset_role_registry
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation
from ledgerline.app.main import create_app, invariant_violation_handler


@pytest.fixture
def app():
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: MagicMock()
    yield app
    reset_role_registry()


class TestHealthEndpoint:
    def test_health_always_ok(self, app) -> None:
        assert TestClient(app).get("/health").json() == {"status": "ok"}

    @patch("ledgerline.app.api.routes.health.check_db")
    def test_healthz_ok_after_startup(self, mock_check_db: MagicMock, app) -> None:
        mock_check_db.return_value = (True, "ok")

        with TestClient(app) as client:
            response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["components"] == {"startup": "ready", "db": "ok"}
        assert data["skipped_checks"] == ["migrations"]

    @patch("ledgerline.app.api.routes.health.check_db")
    def test_healthz_503_when_db_fails(self, mock_check_db: MagicMock, app) -> None:
        mock_check_db.return_value = (False, "error: ConnectionRefusedError")

        with TestClient(app) as client:
            response = client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    @patch("ledgerline.app.api.routes.health.check_db")
    def test_healthz_503_before_startup(self, mock_check_db: MagicMock, app) -> None:
        """Without the lifespan having run, the service is not ready."""
        mock_check_db.return_value = (True, "ok")

        response = TestClient(app).get("/healthz")

        assert response.status_code == 503
        assert response.json()["components"]["startup"] == "unvalidated"


class TestMetricsEndpoint:
    def test_metrics_exposes_isolation_counters(self, app) -> None:
        with TestClient(app) as client:
            # Produce at least one violation sample
            client.get("/invoices")
            response = client.get("/metrics")

        assert response.status_code == 200
        assert "invariant_violations_total" in response.text
        assert 'code="API_VERSION_HEADER_MISSING"' in response.text


class TestStartupAbort:
    @pytest.mark.asyncio
    async def test_production_without_locks_aborts_lifespan(
        self, app, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("SESSION_SECRET", "production-secret-that-is-long-enough-0123")
        monkeypatch.setenv("GOVERNANCE_DIR", str(tmp_path))

        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            async with app.router.lifespan_context(app):
                pass

        assert exc_info.value.code is InvariantCode.GOVERNANCE_LOCK_MISSING


class TestInvariantViolationHandler:
    """The handler is called directly, independent of assertion settings."""

    @pytest.mark.asyncio
    @patch("ledgerline.app.main.security_logger")
    async def test_unlogged_request_violation_is_logged_once(self, mock_logger: MagicMock) -> None:
        violation = RuntimeInvariantViolation(
            InvariantCode.API_VERSION_MISMATCH, "bad version", {"expected": "v1", "received": "v9"}
        )

        response = await invariant_violation_handler(MagicMock(), violation)

        assert response.status_code == 400
        assert json.loads(response.body) == {
            "error": {"code": "API_VERSION_MISMATCH", "message": "Unsupported API version"}
        }
        mock_logger.log_violation.assert_called_once_with(violation)

    @pytest.mark.asyncio
    @patch("ledgerline.app.main.security_logger")
    async def test_already_logged_violation_is_not_logged_again(
        self, mock_logger: MagicMock
    ) -> None:
        violation = RuntimeInvariantViolation(
            InvariantCode.TENANT_ISOLATION_VIOLATION, "foreign row", {"reason": "x"}
        )
        violation.logged = True

        response = await invariant_violation_handler(MagicMock(), violation)

        assert response.status_code == violation.http_status
        mock_logger.log_violation.assert_not_called()
