"""Global pytest configuration."""

import os
from pathlib import Path

ROOT = Path(__file__).parent

# Required settings for tests, set before any app imports
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PORT", "8000")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
os.environ.setdefault("GOVERNANCE_DIR", str(ROOT / "tests" / "fixtures" / "governance"))
