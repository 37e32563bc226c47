"""
Database seeding script for a development flight school.

Creates an ADMIN, an INSTRUCTOR and a MEMBER, one aircraft and one
confirmed flight booking, then prints bearer tokens for the staff users.
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.db.session import AsyncSessionLocal, engine, Base
from backend.app.core.jwt import create_access_token
from backend.app.models.user import User
from backend.app.models.enums import UserRole
from backend.app.models.aircraft import Aircraft
from backend.app.models.booking import Booking
from backend.app.models.booking_enums import BookingStatus, BookingType, TotalTimeMethod
from sqlalchemy import select


def bearer_token(user: User) -> str:
    return create_access_token(data={"sub": user.email, "user_id": user.id, "role": user.role.value})


async def seed_users():
    """
    Seed a minimal school.

    Creates:
    - 1 ADMIN user (may cancel and refund invoices)
    - 1 INSTRUCTOR user (approves check-ins, records payments)
    - 1 MEMBER user (billed)
    - aircraft ZK-FLY on the hobbs method
    - a confirmed flight booking ready for check-in
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting seeding...")

        result = await db.execute(
            select(User).where(User.email == "admin@flightschool.test")
        )
        if result.scalar_one_or_none():
            print("ℹ️  ADMIN user already exists, skipping seeding")
            return

        admin_user = User(email="admin@flightschool.test", full_name="Office Admin", role=UserRole.ADMIN, is_active=True)
        instructor = User(email="instructor@flightschool.test", full_name="Duty Instructor", role=UserRole.INSTRUCTOR, is_active=True)
        member = User(email="member@flightschool.test", full_name="Club Member", role=UserRole.MEMBER, is_active=True)
        db.add_all([admin_user, instructor, member])
        await db.flush()
        print("✅ Created ADMIN, INSTRUCTOR and MEMBER users")

        aircraft = Aircraft(
            registration="ZK-FLY",
            model="Cessna 152",
            total_time_method=TotalTimeMethod.HOBBS,
            total_time_in_service=Decimal("5120.40"),
            is_active=True,
        )
        db.add(aircraft)
        await db.flush()
        print("✅ Created aircraft ZK-FLY (TTIS 5120.40, hobbs)")

        start = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        booking = Booking(
            user_id=member.id,
            instructor_id=instructor.id,
            aircraft_id=aircraft.id,
            booking_type=BookingType.FLIGHT,
            status=BookingStatus.CONFIRMED,
            start_time=start,
            end_time=start + timedelta(hours=2),
            purpose="Dual circuits",
        )
        db.add(booking)

        await db.commit()

        print("\n🎉 Seeding completed successfully!")
        print(f"\nBooking ready for check-in: id={booking.id}, aircraft_id={aircraft.id}, member_id={member.id}")
        print("\nTokens (expire after ACCESS_TOKEN_EXPIRE_MINUTES):")
        print(f"  - ADMIN:      {bearer_token(admin_user)}")
        print(f"  - INSTRUCTOR: {bearer_token(instructor)}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_users())
