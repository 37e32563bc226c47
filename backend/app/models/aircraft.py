"""
Aircraft database model.

Fleet records are maintained by the surrounding application. This service
only moves total_time_in_service, always by a relative delta.
"""

from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, Enum, CheckConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import db_values
from backend.app.models.booking_enums import TotalTimeMethod


class Aircraft(Base):
    __tablename__ = "aircraft"
    __table_args__ = (
        CheckConstraint("total_time_in_service >= 0", name="ck_aircraft_ttis_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    registration = Column(String(20), unique=True, index=True, nullable=False)
    model = Column(String(100), nullable=True)

    total_time_method = Column(Enum(TotalTimeMethod, name="total_time_method", values_callable=db_values), nullable=True)
    total_time_in_service = Column(Numeric(12, 2), nullable=False, default=0)

    # Legacy airframe hours carried over from the paper logbook
    total_hours = Column(Numeric(12, 2), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Aircraft(id={self.id}, registration='{self.registration}', ttis={self.total_time_in_service})>"
