"""API version guard - per-request contract version check."""

from fastapi import Request

from ledgerline.app.config import get_settings
from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation


def require_api_version(expected: str, header_value: str | None) -> None:
    """Reject a request whose version header is absent or not ``expected``.

    Raises:
        RuntimeInvariantViolation: API_VERSION_HEADER_MISSING or
            API_VERSION_MISMATCH (with expected and received values).
    """
    if header_value is None or not header_value.strip():
        raise RuntimeInvariantViolation(
            InvariantCode.API_VERSION_HEADER_MISSING,
            "API version header is required",
            {"expected": expected},
        )
    received = header_value.strip()
    if received != expected:
        raise RuntimeInvariantViolation(
            InvariantCode.API_VERSION_MISMATCH,
            f"API version {received!r} does not match {expected!r}",
            {"expected": expected, "received": received},
        )


def expected_version(request: Request, group: str) -> str:
    """Expected version for a route group.

    Startup installs the effective map (settings merged with the contract
    lock) on app state; settings alone are the fallback.
    """
    versions = getattr(request.app.state, "api_versions", None) or get_settings().api_versions
    try:
        return versions[group]
    except KeyError as e:
        raise RuntimeError(f"No API version configured for route group {group!r}") from e


def api_version_dependency(group: str):
    """Dependency factory enforcing the version header for a route group."""

    async def _check(request: Request) -> str:
        expected = expected_version(request, group)
        header_name = get_settings().api_version_header
        require_api_version(expected, request.headers.get(header_name))
        return expected

    return _check
