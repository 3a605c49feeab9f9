"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-09-28

Creates the tenant registry and the scoped accounting tables:
- tenant, organization
- accounts, invoices, inventory_items (tenant-scoped)
- audit_logs, documents (organization-scoped)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _tenant_column() -> sa.Column:
    return sa.Column(
        "tenant_id", sa.String(64), sa.ForeignKey("tenant.tenant_id"), nullable=False
    )


def _organization_column() -> sa.Column:
    return sa.Column(
        "organization_id", sa.Integer(), sa.ForeignKey("organization.id"), nullable=False
    )


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "tenant",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "organization",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("name", sa.Text(), nullable=False),
    )
    op.create_index("ix_organization_tenant_id", "organization", ["tenant_id"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("code", sa.String(32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.UniqueConstraint("tenant_id", "code", name="uq_accounts_tenant_code"),
    )
    op.create_index("ix_accounts_tenant_id", "accounts", ["tenant_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("number", sa.String(64), nullable=False),
        sa.Column("customer_name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), server_default="draft", nullable=False),
        sa.Column("amount_cents", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_invoices_tenant_id", "invoices", ["tenant_id"])
    op.create_index("ix_invoices_tenant_status", "invoices", ["tenant_id", "status"])

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), server_default="0", nullable=False),
    )
    op.create_index("ix_inventory_items_tenant_id", "inventory_items", ["tenant_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _organization_column(),
        sa.Column("actor", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])

    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _organization_column(),
        sa.Column("title", sa.Text(), nullable=False),
    )
    op.create_index("ix_documents_organization_id", "documents", ["organization_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("documents")
    op.drop_table("audit_logs")
    op.drop_table("inventory_items")
    op.drop_table("invoices")
    op.drop_table("accounts")
    op.drop_table("organization")
    op.drop_table("tenant")
