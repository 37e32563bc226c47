"""
Booking database model.

Scheduling fields belong to the surrounding application. The check-in
block below is owned by the billing core: written once at approval and
thereafter only through a TTIS correction.
"""

from sqlalchemy import Column, Integer, String, Text, Numeric, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import db_values
from backend.app.models.booking_enums import BookingType, BookingStatus, BillingBasis, TotalTimeMethod


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Scheduling
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    instructor_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    aircraft_id = Column(Integer, ForeignKey('aircraft.id'), nullable=True)
    lesson_id = Column(Integer, nullable=True)
    booking_type = Column(Enum(BookingType, name="booking_type", values_callable=db_values), nullable=False, default=BookingType.FLIGHT)
    status = Column(Enum(BookingStatus, name="booking_status", values_callable=db_values), nullable=False, default=BookingStatus.CONFIRMED)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    purpose = Column(String(255), nullable=True)

    # Check-in: actuals
    checked_out_aircraft_id = Column(Integer, ForeignKey('aircraft.id'), nullable=True)
    checked_out_instructor_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    flight_type_id = Column(Integer, nullable=True)
    actual_start = Column(DateTime(timezone=True), nullable=True)
    actual_end = Column(DateTime(timezone=True), nullable=True)

    # Check-in: meter readings
    hobbs_start = Column(Numeric(10, 2), nullable=True)
    hobbs_end = Column(Numeric(10, 2), nullable=True)
    tach_start = Column(Numeric(10, 2), nullable=True)
    tach_end = Column(Numeric(10, 2), nullable=True)
    airswitch_start = Column(Numeric(10, 2), nullable=True)
    airswitch_end = Column(Numeric(10, 2), nullable=True)
    solo_end_hobbs = Column(Numeric(10, 2), nullable=True)
    solo_end_tach = Column(Numeric(10, 2), nullable=True)
    dual_time = Column(Numeric(6, 2), nullable=True)
    solo_time = Column(Numeric(6, 2), nullable=True)

    # Check-in: derived times and billing
    flight_time_hobbs = Column(Numeric(6, 2), nullable=True)
    flight_time_tach = Column(Numeric(6, 2), nullable=True)
    flight_time_airswitch = Column(Numeric(6, 2), nullable=True)
    flight_time = Column(Numeric(6, 2), nullable=True)
    billing_basis = Column(Enum(BillingBasis, name="billing_basis", values_callable=db_values), nullable=True)
    billing_hours = Column(Numeric(6, 2), nullable=True)

    # TTIS snapshot taken at approval
    total_hours_start = Column(Numeric(12, 2), nullable=True)
    total_hours_end = Column(Numeric(12, 2), nullable=True)
    applied_aircraft_delta = Column(Numeric(8, 2), nullable=True)
    applied_total_time_method = Column(Enum(TotalTimeMethod, name="applied_total_time_method", values_callable=db_values), nullable=True)

    # Correction audit
    correction_delta = Column(Numeric(8, 2), nullable=True)
    corrected_at = Column(DateTime(timezone=True), nullable=True)
    corrected_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    correction_reason = Column(Text, nullable=True)

    # Approval lock; the invoice link is not a foreign key because invoices reference bookings
    checkin_invoice_id = Column(Integer, nullable=True, index=True)
    checkin_approved_at = Column(DateTime(timezone=True), nullable=True)
    checkin_approved_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Booking(id={self.id}, type='{self.booking_type.value}', status='{self.status.value}', approved={self.checkin_approved_at is not None})>"
