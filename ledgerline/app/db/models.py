"""SQLAlchemy ORM models for the tenancy-bearing tables.

Business columns are kept to what the isolation layer and its tests need;
the scoping columns are the point of this schema.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Table, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from sqlalchemy.sql import func

SCOPE_INFO_KEY = "tenant_scope"


class ScopeKind(str, Enum):
    """Scoping dimension of a table. Never combined in one predicate."""

    TENANT = "tenant"
    ORGANIZATION = "organization"


@dataclass(frozen=True)
class ScopeSpec:
    """A scoped table and the column its isolation policies compare."""

    table: str
    column: str
    kind: ScopeKind


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    # Server defaults (created_at) are fetched on INSERT, never lazy-loaded
    __mapper_args__ = {"eager_defaults": True}


class TenantScoped:
    """Mixin: row owned by a tenant (string identifier)."""

    @declared_attr
    def tenant_id(cls) -> Mapped[str]:
        return mapped_column(
            String(64),
            ForeignKey("tenant.tenant_id"),
            nullable=False,
            index=True,
            info={SCOPE_INFO_KEY: ScopeKind.TENANT},
        )


class OrganizationScoped:
    """Mixin: row owned by an organization (integer identifier)."""

    @declared_attr
    def organization_id(cls) -> Mapped[int]:
        return mapped_column(
            Integer,
            ForeignKey("organization.id"),
            nullable=False,
            index=True,
            info={SCOPE_INFO_KEY: ScopeKind.ORGANIZATION},
        )


class Tenant(Base):
    """Tenant table - top-level isolation boundary (not itself scoped)."""

    __tablename__ = "tenant"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Organization(TenantScoped, Base):
    """Organization within a tenant."""

    __tablename__ = "organization"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Account(TenantScoped, Base):
    """Chart-of-accounts entry."""

    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_accounts_tenant_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Invoice(TenantScoped, Base):
    """Invoice header."""

    __tablename__ = "invoices"
    __table_args__ = (Index("idx_invoices_tenant_status", "tenant_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class InventoryItem(TenantScoped, Base):
    """Stock-keeping unit."""

    __tablename__ = "inventory_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AuditLog(OrganizationScoped, Base):
    """Organization audit trail entry."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Document(OrganizationScoped, Base):
    """Organization document (reports, exports)."""

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)


def scope_spec_for_table(table: Table) -> ScopeSpec | None:
    """Return the scope annotation of a table, or None if it is unscoped.

    Raises:
        ValueError: If the table carries more than one scoping column.
    """
    scoped = [col for col in table.columns if SCOPE_INFO_KEY in col.info]
    if not scoped:
        return None
    if len(scoped) > 1:
        raise ValueError(
            f"Table {table.name} has multiple scoping columns: {[c.name for c in scoped]}"
        )
    col = scoped[0]
    return ScopeSpec(table=table.name, column=col.name, kind=ScopeKind(col.info[SCOPE_INFO_KEY]))


def scoped_tables(metadata=Base.metadata) -> dict[str, ScopeSpec]:
    """All scoped tables in the metadata, keyed by table name (sorted)."""
    specs: dict[str, ScopeSpec] = {}
    for name in sorted(metadata.tables):
        spec = scope_spec_for_table(metadata.tables[name])
        if spec is not None:
            specs[name] = spec
    return specs
