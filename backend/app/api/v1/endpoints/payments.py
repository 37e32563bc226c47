"""
Payment API Endpoints.

Record payments against an approved invoice and list what has been paid.
"""

from typing import List

from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.guards import require_staff
from backend.app.db.session import get_db
from backend.app.domain.billing.ledger_store import LedgerStore
from backend.app.domain.billing.payment_recorder import PaymentRecorder, record_invoice_payment_atomic
from backend.app.schemas.common import Envelope
from backend.app.schemas.payment import PaymentCreate, PaymentReceipt, PaymentResponse
from backend.app.services.idempotency import IdempotencyCache, idempotency_cache

router = APIRouter(prefix="/invoices", tags=["Payments"])


@router.post("/{invoice_id}/payments", response_model=Envelope[PaymentReceipt], status_code=status.HTTP_201_CREATED)
async def record_payment(
    payload: PaymentCreate,
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_staff),
    cache: IdempotencyCache = Depends(idempotency_cache),
    db: AsyncSession = Depends(get_db),
):
    """
    Record a payment.

    Overpayment is rejected with the current balance in the error details,
    never clamped.
    """
    cached = await cache.reserve()
    if cached is not None:
        return cached

    recorded = await record_invoice_payment_atomic(
        db,
        invoice_id,
        payload.amount,
        payload.payment_method,
        current_user["user_id"],
        payment_reference=payload.payment_reference,
        notes=payload.notes,
        paid_at=payload.paid_at,
    )
    body = Envelope(
        data=PaymentReceipt(
            invoice_id=invoice_id,
            payment_id=recorded.payment.id,
            transaction_id=recorded.ledger_entry.id,
            new_total_paid=recorded.new_total_paid,
            new_balance_due=recorded.new_balance_due,
            new_status=recorded.new_status,
        )
    )
    await cache.store(body)
    return body


@router.get("/{invoice_id}/payments", response_model=Envelope[List[PaymentResponse]])
async def list_payments(
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    await LedgerStore.get_invoice(db, invoice_id)
    payments = await PaymentRecorder.list_payments(db, invoice_id)
    return Envelope(data=[PaymentResponse.model_validate(payment) for payment in payments])
