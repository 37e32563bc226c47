"""
ORM immutability guards.

A single ``before_flush`` listener on the Session class checks every
pending insert, update and delete against the locking rules below, so any
code path that goes through the ORM is covered, not just the domain
services:

- ledger entries, payments and audit rows are append-only
- invoice items change only while their invoice is a draft
- an approved booking's flight log changes only through a TTIS correction
- aircraft TTIS never goes negative, and a large decrease needs a correction
"""

import logging
from decimal import Decimal

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from backend.app.core.exceptions import ImmutabilityViolationError
from backend.app.domain.checkin.ttis import TTIS_CORRECTION_FLAG
from backend.app.models.aircraft import Aircraft
from backend.app.models.audit_log import AuditLog
from backend.app.models.billing_enums import InvoiceStatus
from backend.app.models.booking import Booking
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_item import InvoiceItem
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.payment import Payment

logger = logging.getLogger("aeroledger.guards")

APPEND_ONLY = (LedgerEntry, Payment, AuditLog)

# Flight-log fields frozen once checkin_approved_at is set
BOOKING_LOCKED_FIELDS = frozenset({
    "checked_out_aircraft_id",
    "checked_out_instructor_id",
    "flight_type_id",
    "actual_start",
    "actual_end",
    "hobbs_start",
    "hobbs_end",
    "tach_start",
    "tach_end",
    "airswitch_start",
    "airswitch_end",
    "solo_end_hobbs",
    "solo_end_tach",
    "dual_time",
    "solo_time",
    "flight_time_hobbs",
    "flight_time_tach",
    "flight_time_airswitch",
    "flight_time",
    "billing_basis",
    "billing_hours",
    "total_hours_start",
    "total_hours_end",
    "applied_aircraft_delta",
    "applied_total_time_method",
    "correction_delta",
    "corrected_at",
    "corrected_by",
    "correction_reason",
    "checkin_invoice_id",
    "checkin_approved_at",
    "checkin_approved_by",
})

# Subset a correction may touch
BOOKING_CORRECTABLE_FIELDS = frozenset({
    "hobbs_end",
    "tach_end",
    "airswitch_end",
    "flight_time_hobbs",
    "flight_time_tach",
    "flight_time_airswitch",
    "total_hours_end",
    "applied_aircraft_delta",
    "correction_delta",
    "corrected_at",
    "corrected_by",
    "correction_reason",
})

# Largest TTIS decrease accepted outside a correction, in hours
MAX_UNAUDITED_TTIS_DECREASE = Decimal("5")


def _previous_value(target, key):
    """Value as loaded from the database, before any pending change."""
    history = get_history(target, key)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None if history.added else getattr(target, key)


def _changed_fields(target) -> set:
    return {attr.key for attr in inspect(target).attrs if attr.history.has_changes()}


def _reject(entity: str, target, reason: str, operation: str):
    logger.error(
        "Immutability violation blocked: %s %s %s (%s)",
        operation,
        entity,
        target.id,
        reason,
    )
    raise ImmutabilityViolationError(entity, target.id, reason)


def _check_append_only(session: Session) -> None:
    for obj in session.dirty:
        if isinstance(obj, APPEND_ONLY) and session.is_modified(obj, include_collections=False):
            name = type(obj).__name__
            _reject(name, obj, f"{name} records cannot be modified", "UPDATE")
    for obj in session.deleted:
        if isinstance(obj, APPEND_ONLY):
            name = type(obj).__name__
            _reject(name, obj, f"{name} records cannot be deleted", "DELETE")


def _invoice_status(session: Session, invoice_id) -> InvoiceStatus:
    with session.no_autoflush:
        invoice = session.get(Invoice, invoice_id)
    if invoice is None:
        return None
    return _previous_value(invoice, "status")


def _check_invoice_items(session: Session) -> None:
    changes = [(obj, "INSERT") for obj in session.new if isinstance(obj, InvoiceItem)]
    changes += [
        (obj, "UPDATE")
        for obj in session.dirty
        if isinstance(obj, InvoiceItem) and session.is_modified(obj, include_collections=False)
    ]
    changes += [(obj, "DELETE") for obj in session.deleted if isinstance(obj, InvoiceItem)]

    for item, operation in changes:
        status = _invoice_status(session, item.invoice_id)
        if status is not None and status != InvoiceStatus.DRAFT:
            _reject(
                "InvoiceItem",
                item,
                f"items of a {status.value} invoice cannot be changed",
                operation,
            )


def _check_approved_bookings(session: Session) -> None:
    for booking in session.dirty:
        if not isinstance(booking, Booking):
            continue
        if _previous_value(booking, "checkin_approved_at") is None:
            continue

        locked_changes = _changed_fields(booking) & BOOKING_LOCKED_FIELDS
        if not locked_changes:
            continue

        is_correction = "corrected_at" in locked_changes and locked_changes <= BOOKING_CORRECTABLE_FIELDS
        if not is_correction:
            _reject(
                "Booking",
                booking,
                "approved check-in fields can only change through a TTIS correction "
                f"(attempted: {', '.join(sorted(locked_changes))})",
                "UPDATE",
            )


def _check_aircraft_ttis(session: Session) -> None:
    for aircraft in session.dirty:
        if not isinstance(aircraft, Aircraft):
            continue
        history = get_history(aircraft, "total_time_in_service")
        if not history.added:
            continue

        new_value = aircraft.total_time_in_service
        old_value = history.deleted[0] if history.deleted else None

        if new_value is not None and new_value < 0:
            _reject("Aircraft", aircraft, "total_time_in_service cannot be negative", "UPDATE")

        if (
            old_value is not None
            and new_value is not None
            and old_value - new_value > MAX_UNAUDITED_TTIS_DECREASE
            and not session.info.get(TTIS_CORRECTION_FLAG)
        ):
            _reject(
                "Aircraft",
                aircraft,
                f"total_time_in_service decrease of {old_value - new_value} hours requires a correction",
                "UPDATE",
            )

        total_hours = aircraft.total_hours
        if total_hours is not None and total_hours > 100 and new_value is not None and new_value < total_hours / 2:
            logger.warning(
                "Aircraft %s TTIS %s is below half of recorded total hours %s",
                aircraft.registration,
                new_value,
                total_hours,
            )


def check_immutability(session: Session, flush_context, instances) -> None:
    _check_append_only(session)
    _check_invoice_items(session)
    _check_approved_bookings(session)
    _check_aircraft_ttis(session)


def register_immutability_listeners() -> None:
    """Install the flush guard once per process."""
    if not event.contains(Session, "before_flush", check_immutability):
        event.listen(Session, "before_flush", check_immutability)


def unregister_immutability_listeners() -> None:
    if event.contains(Session, "before_flush", check_immutability):
        event.remove(Session, "before_flush", check_immutability)
