"""
Booking Check-in Service (Domain Logic).

Turns a completed flight into an approved invoice and a locked flight log.
Every approval path runs in one transaction: the invoice, its items, the
ledger debit, the aircraft TTIS and the booking lock land together or not
at all.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    AppException,
    BusinessValidationError,
    CheckinAlreadyApprovedError,
    CheckinStepError,
    StateConflictError,
)
from backend.app.db.transaction import atomic
from backend.app.domain.billing.invoice_state import InvoiceStateMachine
from backend.app.domain.billing.ledger_store import LedgerStore, _validate_tax_rate, checkin_time_charge_matcher
from backend.app.domain.checkin.debrief import save_debrief_after_approval
from backend.app.domain.checkin.ttis import TTISApplication, TTISEngine, lock_booking
from backend.app.models.billing_enums import InvoiceStatus, ItemOrigin
from backend.app.models.booking import Booking
from backend.app.models.booking_enums import BookingStatus, BookingType
from backend.app.models.invoice import Invoice
from backend.app.schemas.checkin import CheckinApprovalResult, CheckinApprove, CheckinFinalize, CheckinFlightLog
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("aeroledger.checkin")

# Which approval path was taken
BRANCH_CREATED = "created"
BRANCH_ALREADY_PENDING = "already_pending"
BRANCH_DRAFT_APPROVED = "draft_approved"
BRANCH_FINALIZED = "finalized"


@dataclass
class CheckinApproval:
    booking: Booking
    invoice: Invoice
    ttis: TTISApplication
    branch: str

    def to_result(self, debrief_saved: bool = False) -> CheckinApprovalResult:
        return CheckinApprovalResult(
            booking_id=self.booking.id,
            invoice_id=self.invoice.id,
            invoice_number=self.invoice.invoice_number,
            invoice_status=self.invoice.status,
            total_amount=self.invoice.total_amount,
            applied_aircraft_delta=self.ttis.applied_delta,
            aircraft_total_time_in_service=self.ttis.total_hours_end,
            debrief_saved=debrief_saved,
        )


def _validate_flight_log(log: CheckinFlightLog) -> None:
    if log.billing_basis is None:
        raise BusinessValidationError("billing_basis is required (hobbs, tacho or airswitch)")
    if log.billing_hours is None or log.billing_hours <= 0:
        raise BusinessValidationError("billing_hours must be greater than zero")
    if log.checked_out_aircraft_id is None:
        raise BusinessValidationError("checked_out_aircraft_id is required")


def _ensure_approvable(booking: Booking) -> None:
    if booking.booking_type != BookingType.FLIGHT:
        raise BusinessValidationError(
            "Check-in approval is only valid for flight bookings",
            details={"booking_id": booking.id, "booking_type": booking.booking_type.value},
        )
    if booking.status == BookingStatus.CANCELLED:
        raise StateConflictError(
            "Cannot approve check-in for cancelled bookings",
            details={"booking_id": booking.id},
        )
    if booking.checkin_approved_at is not None:
        raise CheckinAlreadyApprovedError(booking.id)


class CheckinService:

    @staticmethod
    async def lock_flight_log(
        db: AsyncSession,
        booking: Booking,
        invoice: Invoice,
        log: CheckinFlightLog,
        actor_id: Optional[int],
    ) -> TTISApplication:
        """
        Apply the flight to aircraft TTIS and write the booking's check-in
        fields, marking the check-in approved. After this flush the flight
        log only changes through a TTIS correction.
        """
        ttis = await TTISEngine.apply_flight(
            db,
            log.checked_out_aircraft_id,
            hobbs_start=log.hobbs_start,
            hobbs_end=log.hobbs_end,
            tach_start=log.tach_start,
            tach_end=log.tach_end,
            airswitch_start=log.airswitch_start,
            airswitch_end=log.airswitch_end,
        )

        booking.status = BookingStatus.COMPLETE
        booking.checked_out_aircraft_id = log.checked_out_aircraft_id
        booking.checked_out_instructor_id = log.checked_out_instructor_id
        booking.flight_type_id = log.flight_type_id
        booking.actual_start = log.actual_start
        booking.actual_end = log.actual_end

        booking.hobbs_start = log.hobbs_start
        booking.hobbs_end = log.hobbs_end
        booking.tach_start = log.tach_start
        booking.tach_end = log.tach_end
        booking.airswitch_start = log.airswitch_start
        booking.airswitch_end = log.airswitch_end
        booking.solo_end_hobbs = log.solo_end_hobbs
        booking.solo_end_tach = log.solo_end_tach
        booking.dual_time = log.dual_time
        booking.solo_time = log.solo_time

        booking.flight_time_hobbs = ttis.hobbs_delta
        booking.flight_time_tach = ttis.tach_delta
        booking.flight_time_airswitch = ttis.airswitch_delta

        booking.billing_basis = log.billing_basis
        booking.billing_hours = log.billing_hours
        booking.flight_time = log.billing_hours

        booking.total_hours_start = ttis.total_hours_start
        booking.total_hours_end = ttis.total_hours_end
        booking.applied_aircraft_delta = ttis.applied_delta
        booking.applied_total_time_method = ttis.method

        booking.checkin_invoice_id = invoice.id
        booking.checkin_approved_at = datetime.now(timezone.utc)
        booking.checkin_approved_by = actor_id

        await db.flush()
        return ttis

    @staticmethod
    async def approve(
        db: AsyncSession,
        booking_id: int,
        payload: CheckinApprove,
        actor_id: Optional[int],
    ) -> CheckinApproval:
        """
        Approve a booking check-in.

        Flow:
        1. Validate flight-log input
        2. Lock booking; reject non-flight, cancelled or already approved
        3. No linked invoice: create it as pending from the payload items
        4. Linked pending invoice (retry after an interrupted approval):
           leave the invoice alone, only lock the booking
        5. Linked draft invoice: replace auto-generated lines, recalculate,
           approve, lock. A failing sub-step raises CheckinStepError naming it
        6. Linked invoice in any other status: reject
        """
        # 1. Input
        _validate_flight_log(payload)

        # 2. Booking
        booking = await lock_booking(db, booking_id)
        _ensure_approvable(booking)

        # 3. Fresh invoice
        if booking.checkin_invoice_id is None:
            if booking.user_id is None:
                raise BusinessValidationError("Booking has no member to bill", details={"booking_id": booking.id})

            creation = await LedgerStore.create_invoice(
                db,
                actor_id=actor_id,
                user_id=booking.user_id,
                items=payload.items,
                booking_id=booking.id,
                status=InvoiceStatus.PENDING,
                tax_rate=payload.tax_rate,
                due_date=payload.due_date,
                reference=payload.reference,
                notes=payload.notes,
                item_origin=ItemOrigin.AUTO_TIME_CHARGE,
            )
            invoice = creation.invoice
            ttis = await CheckinService.lock_flight_log(db, booking, invoice, payload, actor_id)
            branch = BRANCH_CREATED

        else:
            invoice = await LedgerStore.get_invoice(db, booking.checkin_invoice_id, for_update=True)

            # 4. Retry path
            if invoice.status == InvoiceStatus.PENDING:
                ttis = await CheckinService.lock_flight_log(db, booking, invoice, payload, actor_id)
                branch = BRANCH_ALREADY_PENDING

            # 5. Draft path
            elif invoice.status == InvoiceStatus.DRAFT:
                ttis = await CheckinService._approve_draft(db, booking, invoice, payload, actor_id)
                branch = BRANCH_DRAFT_APPROVED

            # 6. Anything else
            else:
                raise StateConflictError(
                    "Cannot approve: linked invoice is not a draft or pending",
                    details={"invoice_id": invoice.id, "status": invoice.status.value},
                )

        await log_event(
            db,
            AuditAction.CHECKIN_APPROVED,
            entity_type="booking",
            entity_id=booking.id,
            actor_id=actor_id,
            metadata={
                "invoice_id": invoice.id,
                "branch": branch,
                "applied_aircraft_delta": ttis.applied_delta,
            },
        )
        return CheckinApproval(booking=booking, invoice=invoice, ttis=ttis, branch=branch)

    @staticmethod
    async def _approve_draft(
        db: AsyncSession,
        booking: Booking,
        invoice: Invoice,
        payload: CheckinApprove,
        actor_id: Optional[int],
    ) -> TTISApplication:
        try:
            if payload.tax_rate is not None:
                invoice.tax_rate = _validate_tax_rate(payload.tax_rate)
            if payload.due_date is not None:
                invoice.due_date = payload.due_date
            if payload.reference is not None:
                invoice.reference = payload.reference
            if payload.notes is not None:
                invoice.notes = payload.notes
            await LedgerStore.replace_auto_generated_items(
                db, invoice, payload.items, actor_id, matcher=checkin_time_charge_matcher
            )
        except AppException as exc:
            raise CheckinStepError("item_replacement", "Failed to update invoice items before approval", exc)

        try:
            await LedgerStore.recalculate_totals(db, invoice)
        except AppException as exc:
            raise CheckinStepError("totals_recalculation", "Failed to recalculate invoice totals before approval", exc)

        try:
            await InvoiceStateMachine.transition(db, invoice, InvoiceStatus.PENDING, actor_id)
        except AppException as exc:
            raise CheckinStepError("status_transition", "Failed to approve invoice", exc)

        try:
            return await CheckinService.lock_flight_log(db, booking, invoice, payload, actor_id)
        except AppException as exc:
            raise CheckinStepError("booking_lock", "Invoice approved but failed to lock booking check-in", exc)

    @staticmethod
    async def finalize(
        db: AsyncSession,
        booking_id: int,
        payload: CheckinFinalize,
        actor_id: Optional[int],
    ) -> CheckinApproval:
        """
        Lock a booking's flight log against an invoice that is already approved.
        """
        _validate_flight_log(payload)

        booking = await lock_booking(db, booking_id)
        _ensure_approvable(booking)

        invoice = await LedgerStore.get_invoice(db, payload.invoice_id, for_update=True)
        if invoice.booking_id is not None and invoice.booking_id != booking.id:
            raise StateConflictError(
                "Invoice belongs to a different booking",
                details={"invoice_id": invoice.id, "booking_id": invoice.booking_id},
            )
        if invoice.status not in (InvoiceStatus.PENDING, InvoiceStatus.PAID):
            raise StateConflictError(
                "Check-in can only be finalized against an approved invoice",
                details={"invoice_id": invoice.id, "status": invoice.status.value},
            )

        ttis = await CheckinService.lock_flight_log(db, booking, invoice, payload, actor_id)
        await log_event(
            db,
            AuditAction.CHECKIN_FINALIZED,
            entity_type="booking",
            entity_id=booking.id,
            actor_id=actor_id,
            metadata={"invoice_id": invoice.id, "applied_aircraft_delta": ttis.applied_delta},
        )
        return CheckinApproval(booking=booking, invoice=invoice, ttis=ttis, branch=BRANCH_FINALIZED)


async def approve_booking_checkin_atomic(
    db: AsyncSession,
    booking_id: int,
    payload: CheckinApprove,
    actor_id: Optional[int],
) -> CheckinApprovalResult:
    """Approval in one unit, then the debrief in its own."""
    async with atomic(db, "approve_checkin", booking_id=booking_id):
        approval = await CheckinService.approve(db, booking_id, payload, actor_id)
    result = approval.to_result()

    logger.info(
        "Booking %s check-in approved (%s) with invoice %s, total %s",
        booking_id,
        approval.branch,
        approval.invoice.invoice_number,
        approval.invoice.total_amount,
    )

    result.debrief_saved = await save_debrief_after_approval(db, approval.booking, payload.debrief, actor_id)
    return result


async def finalize_booking_checkin_atomic(
    db: AsyncSession,
    booking_id: int,
    payload: CheckinFinalize,
    actor_id: Optional[int],
) -> CheckinApprovalResult:
    """TTIS and booking lock against an existing invoice."""
    async with atomic(db, "finalize_checkin", booking_id=booking_id, invoice_id=payload.invoice_id):
        approval = await CheckinService.finalize(db, booking_id, payload, actor_id)

    logger.info("Booking %s check-in finalized against invoice %s", booking_id, approval.invoice.invoice_number)
    return approval.to_result()
