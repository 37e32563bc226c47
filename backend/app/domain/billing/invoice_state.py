"""
Invoice State Machine (Domain Logic).

draft -> pending -> paid, with cancelled/refunded as terminal exits.
Overdue is never stored by a transition; it is derived at read time from
the due date.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import BusinessValidationError, IntegrityFailureError, StateConflictError
from backend.app.db.transaction import atomic
from backend.app.domain.billing.ledger_store import LedgerStore, utc_now
from backend.app.models.billing_enums import InvoiceStatus, LedgerEntryKind, LedgerEntryType
from backend.app.models.invoice import Invoice
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("aeroledger.invoice_state")

ALLOWED_TRANSITIONS = {
    InvoiceStatus.DRAFT: {InvoiceStatus.PENDING, InvoiceStatus.CANCELLED},
    InvoiceStatus.PENDING: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED},
    # Rows stored as overdue by older tooling behave like pending
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED},
    InvoiceStatus.PAID: {InvoiceStatus.REFUNDED},
    InvoiceStatus.CANCELLED: set(),
    InvoiceStatus.REFUNDED: set(),
}

# Transitions restricted to owners and admins
ADMINISTRATIVE_STATUSES = {InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED}


@dataclass
class StatusChange:
    invoice: Invoice
    previous_status: InvoiceStatus
    changed: bool
    ledger_entry: Optional[LedgerEntry] = None


def effective_status(invoice: Invoice, now: Optional[datetime] = None) -> InvoiceStatus:
    """Status as shown to readers: an unpaid pending invoice past its due date is overdue."""
    if invoice.status != InvoiceStatus.PENDING or invoice.due_date is None:
        return invoice.status

    now = now or datetime.now(timezone.utc)
    due = invoice.due_date
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)

    if due < now and (invoice.balance_due or 0) > 0:
        return InvoiceStatus.OVERDUE
    return invoice.status


class InvoiceStateMachine:

    @staticmethod
    async def transition(
        db: AsyncSession,
        invoice: Invoice,
        new_status: InvoiceStatus,
        actor_id: Optional[int],
    ) -> StatusChange:
        """
        Move an invoice to ``new_status``.

        Requesting the current status is a no-op success: no ledger entry is
        written twice. draft -> pending recalculates totals and emits the
        debit sized to the invoice total.
        """
        previous = invoice.status

        if new_status == InvoiceStatus.OVERDUE:
            raise BusinessValidationError(
                "Overdue is derived from the due date and cannot be set directly",
                details={"invoice_id": invoice.id},
            )

        if previous == new_status:
            logger.debug("Invoice %s already %s, nothing to do", invoice.invoice_number, new_status.value)
            return StatusChange(invoice=invoice, previous_status=previous, changed=False)

        if new_status not in ALLOWED_TRANSITIONS.get(previous, set()):
            raise StateConflictError(
                f"Cannot change invoice status from {previous.value} to {new_status.value}",
                details={"invoice_id": invoice.id, "from": previous.value, "to": new_status.value},
            )

        ledger_entry = None

        if new_status == InvoiceStatus.PENDING:
            totals = await LedgerStore.recalculate_totals(db, invoice)
            if totals.total_amount <= 0:
                raise IntegrityFailureError(
                    "Invoice total must be greater than zero",
                    details={"invoice_id": invoice.id, "total_amount": totals.total_amount},
                )
            invoice.status = InvoiceStatus.PENDING
            await db.flush()
            ledger_entry = await LedgerStore.record_ledger_entry(
                db,
                invoice,
                LedgerEntryType.DEBIT,
                LedgerEntryKind.INVOICE_DEBIT,
                invoice.total_amount,
                f"Invoice approved: {invoice.invoice_number}",
                actor_id,
            )

        elif new_status == InvoiceStatus.PAID:
            if (invoice.balance_due or 0) > 0:
                raise StateConflictError(
                    "Invoice cannot be marked paid while a balance is outstanding",
                    details={"invoice_id": invoice.id, "balance_due": invoice.balance_due},
                )
            invoice.status = InvoiceStatus.PAID
            if invoice.paid_date is None:
                invoice.paid_date = utc_now()

        else:
            invoice.status = new_status

        await db.flush()
        await log_event(
            db,
            AuditAction.INVOICE_STATUS_CHANGED,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={
                "from": previous.value,
                "to": new_status.value,
                "ledger_entry_id": ledger_entry.id if ledger_entry else None,
            },
        )
        return StatusChange(invoice=invoice, previous_status=previous, changed=True, ledger_entry=ledger_entry)


async def update_invoice_status_atomic(
    db: AsyncSession, invoice_id: int, new_status: InvoiceStatus, actor_id: Optional[int]
) -> StatusChange:
    """Lock the invoice and apply one transition."""
    async with atomic(db, "update_invoice_status", invoice_id=invoice_id, status=new_status.value):
        invoice = await LedgerStore.get_invoice(db, invoice_id, for_update=True)
        change = await InvoiceStateMachine.transition(db, invoice, new_status, actor_id)

    if change.changed:
        logger.info(
            "Invoice %s moved %s -> %s",
            invoice.invoice_number,
            change.previous_status.value,
            new_status.value,
        )
    return change
