"""Verify runtime invariants without starting the server.

Runs the same startup validation as the API lifespan and exits 1 with the
violation code on failure. Intended as a deploy gate:

    python -m scripts.verify_runtime_invariants
"""

import asyncio
import logging
import sys

from ledgerline.app.invariants.errors import RuntimeInvariantViolation
from ledgerline.app.invariants.startup import validate_startup_or_throw
from ledgerline.app.utils.logging import configure_logging

logger = logging.getLogger("ledgerline.verify")


def main() -> int:
    """Validate startup invariants.

    Returns:
        Process exit status: 0 when Ready, 1 on any violation.
    """
    configure_logging()
    try:
        report = asyncio.run(validate_startup_or_throw())
    except RuntimeInvariantViolation as violation:
        logger.error(f"Runtime invariants violated: {violation.code.value}")
        print(f"FAILED {violation.code.value}: {violation.message}", file=sys.stderr)
        return 1

    skipped = ", ".join(report.skipped_checks) or "none"
    print(f"OK {report.state.value} (registry {report.registry.version}, skipped: {skipped})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
