"""
Invoice API Endpoints.

Create invoices, recalculate totals, move them through their lifecycle and
read them back with items, payments and ledger entries.
"""

from typing import List

from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InsufficientPermissionsError
from backend.app.core.guards import ADMIN_ROLES, require_staff, role_of
from backend.app.db.session import get_db
from backend.app.domain.billing.invoice_state import (
    ADMINISTRATIVE_STATUSES,
    effective_status,
    update_invoice_status_atomic,
)
from backend.app.domain.billing.ledger_store import (
    LedgerStore,
    add_invoice_item_atomic,
    create_invoice_atomic,
    update_invoice_totals_atomic,
)
from backend.app.domain.billing.payment_recorder import PaymentRecorder
from backend.app.schemas.common import Envelope
from backend.app.schemas.invoice import (
    InvoiceCreate,
    InvoiceCreateResult,
    InvoiceDetailResponse,
    InvoiceItemCreate,
    InvoiceItemResponse,
    InvoiceResponse,
    InvoiceStatusResult,
    InvoiceStatusUpdate,
    InvoiceTotalsResult,
    LedgerEntryResponse,
)
from backend.app.schemas.payment import PaymentResponse
from backend.app.services.idempotency import IdempotencyCache, idempotency_cache

router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.post("", response_model=Envelope[InvoiceCreateResult], status_code=status.HTTP_201_CREATED)
async def create_invoice(
    payload: InvoiceCreate,
    current_user: dict = Depends(require_staff),
    cache: IdempotencyCache = Depends(idempotency_cache),
    db: AsyncSession = Depends(get_db),
):
    """
    Create an invoice with its items as draft or pending.

    Totals are always computed server-side from the items.
    """
    cached = await cache.reserve()
    if cached is not None:
        return cached

    creation = await create_invoice_atomic(db, payload, current_user["user_id"])
    body = Envelope(
        data=InvoiceCreateResult(
            invoice_id=creation.invoice.id,
            invoice_number=creation.invoice.invoice_number,
            status=creation.invoice.status,
            total_amount=creation.invoice.total_amount,
            ledger_entry_id=creation.ledger_entry.id if creation.ledger_entry else None,
        )
    )
    await cache.store(body)
    return body


@router.get("/{invoice_id}", response_model=Envelope[InvoiceDetailResponse])
async def get_invoice(
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    invoice = await LedgerStore.get_invoice(db, invoice_id)
    items = await LedgerStore.active_items(db, invoice_id)
    payments = await PaymentRecorder.list_payments(db, invoice_id)

    return Envelope(
        data=InvoiceDetailResponse(
            invoice=InvoiceResponse.model_validate(invoice),
            effective_status=effective_status(invoice),
            items=[InvoiceItemResponse.model_validate(item) for item in items],
            payments=[PaymentResponse.model_validate(payment) for payment in payments],
        )
    )


@router.post("/{invoice_id}/items", response_model=Envelope[InvoiceItemResponse], status_code=status.HTTP_201_CREATED)
async def add_invoice_item(
    item: InvoiceItemCreate,
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_staff),
    cache: IdempotencyCache = Depends(idempotency_cache),
    db: AsyncSession = Depends(get_db),
):
    """Add a manual line to a draft invoice."""
    cached = await cache.reserve()
    if cached is not None:
        return cached

    created = await add_invoice_item_atomic(db, invoice_id, item, current_user["user_id"])
    body = Envelope(data=InvoiceItemResponse.model_validate(created))
    await cache.store(body)
    return body


@router.post("/{invoice_id}/recalculate", response_model=Envelope[InvoiceTotalsResult])
async def recalculate_invoice_totals(
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    invoice = await update_invoice_totals_atomic(db, invoice_id, current_user["user_id"])
    return Envelope(
        data=InvoiceTotalsResult(
            invoice_id=invoice.id,
            subtotal=invoice.subtotal,
            tax_total=invoice.tax_total,
            total_amount=invoice.total_amount,
            total_paid=invoice.total_paid,
            balance_due=invoice.balance_due,
        )
    )


@router.post("/{invoice_id}/status", response_model=Envelope[InvoiceStatusResult])
async def update_invoice_status(
    payload: InvoiceStatusUpdate,
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_staff),
    cache: IdempotencyCache = Depends(idempotency_cache),
    db: AsyncSession = Depends(get_db),
):
    """
    Move an invoice to a new status.

    Cancelling or refunding is restricted to owners and admins.
    """
    if payload.status in ADMINISTRATIVE_STATUSES and role_of(current_user) not in ADMIN_ROLES:
        raise InsufficientPermissionsError(
            f"Only owners and admins can set an invoice to {payload.status.value}"
        )

    cached = await cache.reserve()
    if cached is not None:
        return cached

    change = await update_invoice_status_atomic(db, invoice_id, payload.status, current_user["user_id"])
    body = Envelope(
        data=InvoiceStatusResult(
            invoice_id=invoice_id,
            status=change.invoice.status,
            changed=change.changed,
            transaction_id=change.ledger_entry.id if change.ledger_entry else None,
        )
    )
    await cache.store(body)
    return body


@router.get("/{invoice_id}/ledger", response_model=Envelope[List[LedgerEntryResponse]])
async def list_invoice_ledger(
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    await LedgerStore.get_invoice(db, invoice_id)
    entries = await LedgerStore.ledger_entries(db, invoice_id)
    return Envelope(data=[LedgerEntryResponse.model_validate(entry) for entry in entries])
