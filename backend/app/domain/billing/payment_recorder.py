"""
Payment Recorder (Domain Logic).

Applies a payment against an invoice's balance under a row lock, so two
concurrent payments can never both read the same balance.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    AlreadyPaidError,
    BusinessValidationError,
    OverpaymentError,
    StateConflictError,
)
from backend.app.db.transaction import atomic
from backend.app.domain.billing.ledger_store import LedgerStore, utc_now
from backend.app.domain.billing.money import balance_due, round2, to_decimal
from backend.app.models.billing_enums import InvoiceStatus, LedgerEntryKind, LedgerEntryType, PaymentMethod
from backend.app.models.invoice import Invoice
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.payment import Payment
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("aeroledger.payments")


@dataclass
class RecordedPayment:
    invoice: Invoice
    payment: Payment
    ledger_entry: LedgerEntry
    new_total_paid: Decimal
    new_balance_due: Decimal

    @property
    def new_status(self) -> InvoiceStatus:
        return self.invoice.status


class PaymentRecorder:

    @staticmethod
    async def record_payment(
        db: AsyncSession,
        *,
        invoice_id: int,
        amount,
        payment_method: PaymentMethod,
        actor_id: Optional[int],
        payment_reference: Optional[str] = None,
        notes: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> RecordedPayment:
        """
        Record one payment.

        Flow:
        1. Validate amount (> 0 after rounding to cents)
        2. Lock the invoice row (SELECT ... FOR UPDATE)
        3. Reject cancelled/refunded, draft, already paid and overpayment
        4. Write credit ledger entry, then the payment row linked to it
        5. Update total_paid/balance_due; flip to paid when nothing remains
        """
        # 1. Amount
        if amount is None or to_decimal(amount) <= 0 or round2(amount) <= 0:
            raise BusinessValidationError("Payment amount must be greater than zero")
        amount = round2(amount)

        # 2. Lock
        invoice = await LedgerStore.get_invoice(db, invoice_id, for_update=True)

        # 3. Status and balance rules
        if invoice.status in (InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED):
            raise StateConflictError(
                "Cannot record payments for cancelled or refunded invoices",
                details={"invoice_id": invoice.id, "status": invoice.status.value},
            )
        if invoice.status == InvoiceStatus.DRAFT:
            raise StateConflictError(
                "Invoice must be approved before payments can be recorded",
                details={"invoice_id": invoice.id, "status": invoice.status.value},
            )

        current_balance = balance_due(invoice.total_amount, invoice.total_paid)
        if current_balance <= 0:
            raise AlreadyPaidError(invoice.id)
        if amount > current_balance:
            raise OverpaymentError(current_balance)

        new_total_paid = round2(to_decimal(invoice.total_paid or 0) + amount)
        new_balance_due = balance_due(invoice.total_amount, new_total_paid)
        paid_at = paid_at or utc_now()

        # 4. Ledger entry first, payment row references it
        ledger_entry = await LedgerStore.record_ledger_entry(
            db,
            invoice,
            LedgerEntryType.CREDIT,
            LedgerEntryKind.INVOICE_PAYMENT,
            amount,
            f"Invoice payment received: {invoice.invoice_number}",
            actor_id,
            extra={"payment_method": payment_method.value, "payment_reference": payment_reference},
            completed_at=paid_at,
        )

        payment = Payment(
            invoice_id=invoice.id,
            ledger_entry_id=ledger_entry.id,
            amount=amount,
            payment_method=payment_method,
            payment_reference=payment_reference,
            notes=notes,
            paid_at=paid_at,
            created_by=actor_id,
        )
        db.add(payment)

        # 5. Invoice totals and status
        invoice.total_paid = new_total_paid
        invoice.balance_due = new_balance_due
        invoice.payment_method = payment_method
        invoice.payment_reference = payment_reference
        if new_balance_due <= 0:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_date = paid_at

        await db.flush()
        await log_event(
            db,
            AuditAction.PAYMENT_RECORDED,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={
                "payment_id": payment.id,
                "amount": amount,
                "payment_method": payment_method.value,
                "new_balance_due": new_balance_due,
            },
        )
        return RecordedPayment(
            invoice=invoice,
            payment=payment,
            ledger_entry=ledger_entry,
            new_total_paid=new_total_paid,
            new_balance_due=new_balance_due,
        )

    @staticmethod
    async def list_payments(db: AsyncSession, invoice_id: int) -> List[Payment]:
        result = await db.execute(
            select(Payment).where(Payment.invoice_id == invoice_id).order_by(Payment.paid_at, Payment.id)
        )
        return list(result.scalars().all())


async def record_invoice_payment_atomic(
    db: AsyncSession,
    invoice_id: int,
    amount,
    payment_method: PaymentMethod,
    actor_id: Optional[int],
    payment_reference: Optional[str] = None,
    notes: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> RecordedPayment:
    """Lock the invoice and apply one payment in a single unit."""
    async with atomic(db, "record_payment", invoice_id=invoice_id):
        recorded = await PaymentRecorder.record_payment(
            db,
            invoice_id=invoice_id,
            amount=amount,
            payment_method=payment_method,
            actor_id=actor_id,
            payment_reference=payment_reference,
            notes=notes,
            paid_at=paid_at,
        )

    logger.info(
        "Payment %s of %s recorded on invoice %s, balance now %s",
        recorded.payment.id,
        recorded.payment.amount,
        recorded.invoice.invoice_number,
        recorded.new_balance_due,
    )
    return recorded
