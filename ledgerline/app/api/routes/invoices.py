"""Invoice endpoints - tenant-scoped CRUD through the query guard."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from ledgerline.app.api.auth import require_roles
from ledgerline.app.api.deps import get_query_guard
from ledgerline.app.api.versioning import api_version_dependency
from ledgerline.app.db.guard import QueryGuard
from ledgerline.app.db.models import Invoice

READ_ROLES = ("owner", "accountant", "viewer")
WRITE_ROLES = ("owner", "accountant")

router = APIRouter(
    prefix="/invoices",
    tags=["invoices"],
    dependencies=[Depends(api_version_dependency("core"))],
)


class InvoiceCreate(BaseModel):
    """Request body for POST /invoices.

    A tenant_id in the body is ignored; the guard forces the caller's scope.
    """

    number: str = Field(..., min_length=1, max_length=64)
    customer_name: str = Field(..., min_length=1)
    amount_cents: int = Field(0, ge=0)
    tenant_id: str | None = None


class InvoiceUpdate(BaseModel):
    """Request body for PATCH /invoices/{invoice_id}."""

    customer_name: str | None = Field(None, min_length=1)
    status: str | None = Field(None, pattern="^(draft|sent|paid|void)$")
    amount_cents: int | None = Field(None, ge=0)


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    number: str
    customer_name: str
    status: str
    amount_cents: int
    created_at: datetime


@router.get(
    "",
    response_model=list[InvoiceResponse],
    dependencies=[Depends(require_roles(*READ_ROLES))],
)
async def list_invoices(
    guard: Annotated[QueryGuard, Depends(get_query_guard)],
    invoice_status: Annotated[str | None, Query(alias="status")] = None,
) -> list[Invoice]:
    stmt = select(Invoice).order_by(Invoice.id)
    if invoice_status is not None:
        stmt = stmt.where(Invoice.status == invoice_status)
    return await guard.scoped_read(stmt)


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    dependencies=[Depends(require_roles(*READ_ROLES))],
)
async def get_invoice(
    invoice_id: int,
    guard: Annotated[QueryGuard, Depends(get_query_guard)],
) -> Invoice:
    invoice = await guard.get(Invoice, invoice_id)
    if invoice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return invoice


@router.post(
    "",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_roles(*WRITE_ROLES))],
)
async def create_invoice(
    body: InvoiceCreate,
    guard: Annotated[QueryGuard, Depends(get_query_guard)],
) -> Invoice:
    invoice = await guard.insert(Invoice, body.model_dump(exclude_none=True))
    await guard.commit()
    return invoice


@router.patch(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    dependencies=[Depends(require_roles(*WRITE_ROLES))],
)
async def update_invoice(
    invoice_id: int,
    body: InvoiceUpdate,
    guard: Annotated[QueryGuard, Depends(get_query_guard)],
) -> Invoice:
    invoice = await guard.update(Invoice, invoice_id, body.model_dump(exclude_none=True))
    if invoice is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    await guard.commit()
    return invoice


@router.delete(
    "/{invoice_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_roles(*WRITE_ROLES))],
)
async def delete_invoice(
    invoice_id: int,
    guard: Annotated[QueryGuard, Depends(get_query_guard)],
) -> None:
    deleted = await guard.delete(Invoice, invoice_id)
    if deleted is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    await guard.commit()
