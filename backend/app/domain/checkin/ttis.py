"""
Aircraft total-time-in-service (TTIS) tracking.

Approval adds the flight's applied delta to the aircraft counter and
snapshots the method and delta on the booking. A later correction moves
the counter by (new applied delta - old applied delta) only, so flights
checked in after the corrected one are never overwritten.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    BusinessValidationError,
    IntegrityFailureError,
    ResourceNotFoundError,
    StateConflictError,
)
from backend.app.db.transaction import atomic
from backend.app.domain.billing.money import round2, to_decimal
from backend.app.models.aircraft import Aircraft
from backend.app.models.booking import Booking
from backend.app.models.booking_enums import BookingStatus, BookingType, TotalTimeMethod
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("aeroledger.ttis")

# Session.info key that lets the aircraft guard accept a large TTIS decrease
TTIS_CORRECTION_FLAG = "ttis_correction"

METERS = ("hobbs", "tach", "airswitch")


def meter_delta(start, end) -> Optional[Decimal]:
    """end - start, or None when either reading is missing."""
    if start is None or end is None:
        return None
    return round2(to_decimal(end) - to_decimal(start))


def validate_meter_deltas(deltas: dict, prefix: str = "") -> None:
    for meter in METERS:
        value = deltas.get(meter)
        if value is not None and value < 0:
            raise BusinessValidationError(
                f"{prefix}{meter}_end must be >= {meter}_start",
                details={"meter": meter, "delta": value},
            )


def applied_delta(method: TotalTimeMethod, hobbs_delta: Optional[Decimal], tach_delta: Optional[Decimal]) -> Decimal:
    """
    Hours credited to TTIS for one flight.

    hobbs/airswitch read the hobbs delta, tacho reads the tach delta; the
    "less 5%/10%" variants scale it by 0.95/0.90.
    """
    base = hobbs_delta if method.meter == "hobbs" else tach_delta
    if base is None:
        raise BusinessValidationError(
            f"{method.meter} delta is required for total_time_method={method.value}",
            details={"total_time_method": method.value},
        )
    return round2(base * method.factor)


@contextmanager
def ttis_correction(db: AsyncSession):
    """Mark flushes inside the block as part of an audited TTIS correction."""
    info = db.sync_session.info
    info[TTIS_CORRECTION_FLAG] = True
    try:
        yield
    finally:
        info.pop(TTIS_CORRECTION_FLAG, None)


@dataclass
class TTISApplication:
    aircraft: Aircraft
    method: TotalTimeMethod
    hobbs_delta: Optional[Decimal]
    tach_delta: Optional[Decimal]
    airswitch_delta: Optional[Decimal]
    applied_delta: Decimal
    total_hours_start: Decimal
    total_hours_end: Decimal


@dataclass
class TTISCorrection:
    booking: Booking
    aircraft: Aircraft
    old_applied_delta: Decimal
    new_applied_delta: Decimal
    correction_delta: Decimal

    @property
    def aircraft_total_time_in_service(self) -> Decimal:
        return self.aircraft.total_time_in_service


async def lock_booking(db: AsyncSession, booking_id: int) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise ResourceNotFoundError("Booking", booking_id)
    return booking


async def lock_aircraft(db: AsyncSession, aircraft_id: int) -> Aircraft:
    result = await db.execute(
        select(Aircraft)
        .where(Aircraft.id == aircraft_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    aircraft = result.scalar_one_or_none()
    if aircraft is None:
        raise ResourceNotFoundError("Aircraft", aircraft_id)
    return aircraft


class TTISEngine:

    @staticmethod
    async def apply_flight(
        db: AsyncSession,
        aircraft_id: int,
        hobbs_start=None,
        hobbs_end=None,
        tach_start=None,
        tach_end=None,
        airswitch_start=None,
        airswitch_end=None,
    ) -> TTISApplication:
        """
        Lock the aircraft and add one approved flight's applied delta to its TTIS.
        """
        if aircraft_id is None:
            raise BusinessValidationError("checked_out_aircraft_id is required to approve a flight check-in")

        aircraft = await lock_aircraft(db, aircraft_id)
        if aircraft.total_time_method is None:
            raise BusinessValidationError(
                "Aircraft total_time_method must be set to apply TTIS deltas",
                details={"aircraft_id": aircraft.id},
            )

        deltas = {
            "hobbs": meter_delta(hobbs_start, hobbs_end),
            "tach": meter_delta(tach_start, tach_end),
            "airswitch": meter_delta(airswitch_start, airswitch_end),
        }
        validate_meter_deltas(deltas)

        method = aircraft.total_time_method
        delta = applied_delta(method, deltas["hobbs"], deltas["tach"])
        if delta < 0:
            raise BusinessValidationError("Applied aircraft delta must be non-negative")

        old_ttis = to_decimal(aircraft.total_time_in_service or 0)
        new_ttis = round2(old_ttis + delta)
        aircraft.total_time_in_service = new_ttis
        await db.flush()

        return TTISApplication(
            aircraft=aircraft,
            method=method,
            hobbs_delta=deltas["hobbs"],
            tach_delta=deltas["tach"],
            airswitch_delta=deltas["airswitch"],
            applied_delta=delta,
            total_hours_start=round2(old_ttis),
            total_hours_end=new_ttis,
        )

    @staticmethod
    async def correct(
        db: AsyncSession,
        booking_id: int,
        actor_id: Optional[int],
        correction_reason: str,
        hobbs_end=None,
        tach_end=None,
        airswitch_end=None,
    ) -> TTISCorrection:
        """
        Correct the end readings of an approved flight.

        Flow:
        1. Validate reason (3-1000 chars) and that at least one end reading is given
        2. Lock booking; it must be an approved, uncancelled flight with a TTIS snapshot
        3. Lock aircraft
        4. New deltas = stored starts vs. corrected ends (unsupplied ends keep stored values)
        5. correction = new applied delta - snapshotted applied delta
        6. Move aircraft TTIS and booking total_hours_end by the correction
        """
        # 1. Input
        reason = (correction_reason or "").strip()
        if len(reason) < 3 or len(reason) > 1000:
            raise BusinessValidationError("correction_reason must be between 3 and 1000 characters")
        if hobbs_end is None and tach_end is None and airswitch_end is None:
            raise BusinessValidationError("At least one corrected end reading is required")

        # 2. Booking
        booking = await lock_booking(db, booking_id)
        if booking.booking_type != BookingType.FLIGHT:
            raise BusinessValidationError("Corrections are only valid for flight bookings")
        if booking.status == BookingStatus.CANCELLED:
            raise StateConflictError("Cannot correct cancelled bookings", details={"booking_id": booking.id})
        if booking.checkin_approved_at is None:
            raise StateConflictError("Cannot correct an unapproved check-in", details={"booking_id": booking.id})
        if booking.checked_out_aircraft_id is None:
            raise IntegrityFailureError("Booking has no checked_out_aircraft_id", details={"booking_id": booking.id})
        if booking.applied_aircraft_delta is None:
            raise IntegrityFailureError(
                "Booking is missing applied_aircraft_delta (cannot correct safely)",
                details={"booking_id": booking.id},
            )
        if booking.applied_total_time_method is None:
            raise IntegrityFailureError(
                "Booking is missing applied_total_time_method (cannot correct deterministically)",
                details={"booking_id": booking.id},
            )

        # 3. Aircraft
        aircraft = await lock_aircraft(db, booking.checked_out_aircraft_id)

        # 4. New deltas
        new_hobbs_end = to_decimal(hobbs_end) if hobbs_end is not None else booking.hobbs_end
        new_tach_end = to_decimal(tach_end) if tach_end is not None else booking.tach_end
        new_airswitch_end = to_decimal(airswitch_end) if airswitch_end is not None else booking.airswitch_end

        deltas = {
            "hobbs": meter_delta(booking.hobbs_start, new_hobbs_end),
            "tach": meter_delta(booking.tach_start, new_tach_end),
            "airswitch": meter_delta(booking.airswitch_start, new_airswitch_end),
        }
        validate_meter_deltas(deltas, prefix="New ")

        # 5. Delta of deltas
        old_applied = round2(booking.applied_aircraft_delta)
        new_applied = applied_delta(booking.applied_total_time_method, deltas["hobbs"], deltas["tach"])
        correction = round2(new_applied - old_applied)

        new_ttis = round2(to_decimal(aircraft.total_time_in_service or 0) + correction)
        if new_ttis < 0:
            raise BusinessValidationError(
                "Correction would result in negative aircraft TTIS",
                details={"aircraft_id": aircraft.id, "correction_delta": correction},
            )

        # 6. Apply
        with ttis_correction(db):
            aircraft.total_time_in_service = new_ttis

            booking.hobbs_end = new_hobbs_end
            booking.tach_end = new_tach_end
            booking.airswitch_end = new_airswitch_end
            booking.flight_time_hobbs = deltas["hobbs"]
            booking.flight_time_tach = deltas["tach"]
            booking.flight_time_airswitch = deltas["airswitch"]
            booking.applied_aircraft_delta = new_applied
            booking.correction_delta = correction
            booking.corrected_at = datetime.now(timezone.utc)
            booking.corrected_by = actor_id
            booking.correction_reason = reason
            booking.total_hours_end = round2(to_decimal(booking.total_hours_end or 0) + correction)

            await db.flush()

        await log_event(
            db,
            AuditAction.CHECKIN_CORRECTED,
            entity_type="booking",
            entity_id=booking.id,
            actor_id=actor_id,
            metadata={
                "aircraft_id": aircraft.id,
                "old_applied_delta": old_applied,
                "new_applied_delta": new_applied,
                "correction_delta": correction,
                "reason": reason,
            },
        )
        return TTISCorrection(
            booking=booking,
            aircraft=aircraft,
            old_applied_delta=old_applied,
            new_applied_delta=new_applied,
            correction_delta=correction,
        )


async def correct_booking_checkin_ttis_atomic(
    db: AsyncSession,
    booking_id: int,
    actor_id: Optional[int],
    correction_reason: str,
    hobbs_end=None,
    tach_end=None,
    airswitch_end=None,
) -> TTISCorrection:
    """End-reading fix and TTIS adjustment in one unit."""
    async with atomic(db, "correct_checkin_ttis", booking_id=booking_id):
        outcome = await TTISEngine.correct(
            db,
            booking_id,
            actor_id,
            correction_reason,
            hobbs_end=hobbs_end,
            tach_end=tach_end,
            airswitch_end=airswitch_end,
        )

    logger.info(
        "Booking %s corrected: applied delta %s -> %s, aircraft %s TTIS now %s",
        booking_id,
        outcome.old_applied_delta,
        outcome.new_applied_delta,
        outcome.aircraft.registration,
        outcome.aircraft.total_time_in_service,
    )
    return outcome
