"""Unit tests for the API version guard."""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from ledgerline.app.api.versioning import api_version_dependency, require_api_version
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation
from ledgerline.app.main import invariant_violation_handler


class TestRequireApiVersion:
    def test_matching_version_passes(self) -> None:
        require_api_version("v1", "v1")
        require_api_version("v1", " v1 ")

    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_missing_header(self, header: str | None) -> None:
        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            require_api_version("v1", header)

        assert exc_info.value.code is InvariantCode.API_VERSION_HEADER_MISSING

    def test_mismatch_reports_expected_and_received(self) -> None:
        with pytest.raises(RuntimeInvariantViolation) as exc_info:
            require_api_version("v1", "v2")

        violation = exc_info.value
        assert violation.code is InvariantCode.API_VERSION_MISMATCH
        assert violation.details == {"expected": "v1", "received": "v2"}


@pytest.fixture
def client() -> TestClient:
    """Minimal app with one versioned route per group."""
    app = FastAPI()
    app.add_exception_handler(RuntimeInvariantViolation, invariant_violation_handler)

    @app.get("/core", dependencies=[Depends(api_version_dependency("core"))])
    async def core() -> dict[str, str]:
        return {"ok": "core"}

    @app.get("/admin", dependencies=[Depends(api_version_dependency("admin"))])
    async def admin() -> dict[str, str]:
        return {"ok": "admin"}

    app.state.api_versions = {"core": "v1", "admin": "v2"}
    return TestClient(app)


class TestVersionDependency:
    def test_route_groups_have_independent_versions(self, client: TestClient) -> None:
        assert client.get("/core", headers={"X-API-Version": "v1"}).status_code == 200
        assert client.get("/admin", headers={"X-API-Version": "v2"}).status_code == 200

    def test_missing_header_is_400(self, client: TestClient) -> None:
        response = client.get("/core")

        assert response.status_code == 400
        assert response.json() == {
            "error": {
                "code": "API_VERSION_HEADER_MISSING",
                "message": "API version header required",
            }
        }

    def test_wrong_group_version_is_400(self, client: TestClient) -> None:
        response = client.get("/admin", headers={"X-API-Version": "v1"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "API_VERSION_MISMATCH"

    def test_header_name_from_settings(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("API_VERSION_HEADER", "X-Contract-Version")

        assert client.get("/core", headers={"X-Contract-Version": "v1"}).status_code == 200
        assert client.get("/core", headers={"X-API-Version": "v1"}).status_code == 400
