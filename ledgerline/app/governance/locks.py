"""Governance lock artifacts - versioned contracts read once at startup.

The lock set lives under GOVERNANCE_DIR:

    contract.lock.json       primary contract lock (RBAC roles, API versions)
    snapshots/api-v1.json    versioned API contract snapshot
    deprecations.json        deprecation list

Every artifact is validated against a strict model; unknown keys or
malformed values are rejected rather than passed through.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ledgerline.app.invariants.errors import InvariantCode, RuntimeInvariantViolation

logger = logging.getLogger(__name__)

CONTRACT_LOCK_FILE = "contract.lock.json"
SNAPSHOT_FILES = ("snapshots/api-v1.json",)
DEPRECATIONS_FILE = "deprecations.json"

REQUIRED_LOCK_FILES: tuple[str, ...] = (CONTRACT_LOCK_FILE, *SNAPSHOT_FILES, DEPRECATIONS_FILE)

ROLE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class RbacSection(_StrictModel):
    roles: list[str] = Field(min_length=1)

    @field_validator("roles")
    @classmethod
    def _roles_well_formed(cls, roles: list[str]) -> list[str]:
        bad = [r for r in roles if not ROLE_PATTERN.match(r)]
        if bad:
            raise ValueError(f"malformed role names: {bad}")
        if len(set(roles)) != len(roles):
            raise ValueError("duplicate role names")
        return roles


class ApiSection(_StrictModel):
    versions: dict[str, str] = Field(default_factory=dict)


class ContractLock(_StrictModel):
    """Primary contract lock."""

    version: str = Field(min_length=1)
    generated_at: str
    rbac: RbacSection
    api: ApiSection = ApiSection()


class ContractSnapshot(_StrictModel):
    """Frozen view of one API contract version."""

    api_version: str = Field(min_length=1)
    routes: list[str]


class Deprecation(_StrictModel):
    id: str = Field(min_length=1)
    description: str
    remove_after: str


class DeprecationList(_StrictModel):
    deprecations: list[Deprecation]


@dataclass(frozen=True)
class GovernanceLockSet:
    """All governance artifacts, immutable for the process lifetime."""

    contract: ContractLock
    snapshots: tuple[ContractSnapshot, ...]
    deprecations: DeprecationList


def missing_lock_files(governance_dir: Path) -> list[str]:
    """Required lock files absent from the governance directory."""
    return [rel for rel in REQUIRED_LOCK_FILES if not (governance_dir / rel).is_file()]


def _load(path: Path, model: type[_StrictModel]) -> _StrictModel:
    if not path.is_file():
        raise RuntimeInvariantViolation(
            InvariantCode.GOVERNANCE_LOCK_MISSING,
            f"Governance lock file missing: {path.name}",
            {"missing": [str(path)]},
        )
    try:
        return model.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, ValidationError) as e:
        raise RuntimeInvariantViolation(
            InvariantCode.GOVERNANCE_LOCK_INVALID,
            f"Governance lock file is malformed: {path.name}",
            {"path": str(path), "error": str(e)},
        ) from e


def load_contract_lock(governance_dir: Path) -> ContractLock:
    return _load(governance_dir / CONTRACT_LOCK_FILE, ContractLock)  # type: ignore[return-value]


def load_lock_set(governance_dir: Path) -> GovernanceLockSet:
    """Load and validate every required artifact."""
    contract = load_contract_lock(governance_dir)
    snapshots = tuple(
        _load(governance_dir / rel, ContractSnapshot) for rel in SNAPSHOT_FILES
    )
    deprecations = _load(governance_dir / DEPRECATIONS_FILE, DeprecationList)
    logger.info(
        "Loaded governance lock set",
        extra={
            "structured": {
                "contract_version": contract.version,
                "roles": len(contract.rbac.roles),
                "snapshots": len(snapshots),
            }
        },
    )
    return GovernanceLockSet(
        contract=contract,
        snapshots=snapshots,  # type: ignore[arg-type]
        deprecations=deprecations,  # type: ignore[arg-type]
    )
