"""
Lesson Progress database model.

Training debrief captured at check-in. At most one record per booking.
"""

from sqlalchemy import Column, Integer, Text, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import db_values
from backend.app.models.booking_enums import LessonOutcome


class LessonProgress(Base):
    __tablename__ = "lesson_progress"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey('bookings.id'), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    instructor_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    lesson_id = Column(Integer, nullable=True)

    instructor_comments = Column(Text, nullable=True)
    lesson_highlights = Column(Text, nullable=True)
    areas_for_improvement = Column(Text, nullable=True)
    airmanship = Column(Text, nullable=True)
    focus_next_lesson = Column(Text, nullable=True)
    safety_concerns = Column(Text, nullable=True)
    weather_conditions = Column(Text, nullable=True)

    status = Column(Enum(LessonOutcome, name="lesson_outcome", values_callable=db_values), nullable=True)
    date = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<LessonProgress(id={self.id}, booking_id={self.booking_id}, status={self.status})>"
