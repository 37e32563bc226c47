"""
Centralized Test Configuration.
"""

import pytest
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.db.guards import register_immutability_listeners
from backend.app.core.jwt import create_access_token
from backend.app.core.redis_client import get_redis
import backend.app.core.redis_client as redis_client_module
from backend.app.models.enums import UserRole
from backend.app.models.user import User
from backend.app.models.aircraft import Aircraft
from backend.app.models.booking import Booking
from backend.app.models.booking_enums import BillingBasis, BookingStatus, BookingType, TotalTimeMethod
from backend.app.schemas.checkin import CheckinApprove
from backend.app.schemas.invoice import InvoiceItemCreate

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# The app lifespan does not run under ASGITransport
register_immutability_listeners()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)

# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if self._closed:
            return False
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}

# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()

@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session.
    Global override is safer here than per-test override to avoid app state flux.
    """

    # Patch the global redis client used by the health check
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client

@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


# Domain fixtures

async def _add_user(db_session, email, full_name, role):
    user = User(email=email, full_name=full_name, role=role, is_active=True)
    db_session.add(user)
    await db_session.commit()
    return user

@pytest.fixture
async def staff_user(db_session):
    """Instructor who approves check-ins and records payments."""
    return await _add_user(db_session, "instructor@school.test", "Chief Instructor", UserRole.INSTRUCTOR)

@pytest.fixture
async def admin_user(db_session):
    return await _add_user(db_session, "office@school.test", "Office Admin", UserRole.ADMIN)

@pytest.fixture
async def member_user(db_session):
    """Billed member."""
    return await _add_user(db_session, "pilot@school.test", "Student Pilot", UserRole.MEMBER)

@pytest.fixture
async def aircraft(db_session):
    plane = Aircraft(
        registration="ZK-ABC",
        model="Cessna 172",
        total_time_method=TotalTimeMethod.HOBBS,
        total_time_in_service=Decimal("1000.00"),
        is_active=True,
    )
    db_session.add(plane)
    await db_session.commit()
    return plane

@pytest.fixture
async def make_booking(db_session, member_user, staff_user, aircraft):
    """Factory for bookings owned by ``member_user`` on ``aircraft``."""
    async def _make(booking_type=BookingType.FLIGHT, status=BookingStatus.CONFIRMED, **fields):
        booking = Booking(
            user_id=member_user.id,
            instructor_id=staff_user.id,
            aircraft_id=aircraft.id,
            booking_type=booking_type,
            status=status,
            purpose="Circuits",
            **fields,
        )
        db_session.add(booking)
        await db_session.commit()
        return booking
    return _make

@pytest.fixture
async def flight_booking(make_booking):
    return await make_booking()

@pytest.fixture
def hire_item():
    """Factory for an auto-generated aircraft hire line."""
    def _item(quantity="2.0", unit_price="100.00", tax_rate="0.15", **fields):
        return InvoiceItemCreate(
            description=fields.pop("description", "Aircraft Hire (ZK-ABC)"),
            quantity=Decimal(quantity),
            unit_price=Decimal(unit_price),
            tax_rate=Decimal(tax_rate) if tax_rate is not None else None,
            **fields,
        )
    return _item

@pytest.fixture
def approval_payload(aircraft, staff_user, hire_item):
    """Factory for a 2.0 hobbs-hour check-in billed at 100.00/hr + 15% tax."""
    def _payload(**overrides):
        data = dict(
            checked_out_aircraft_id=aircraft.id,
            checked_out_instructor_id=staff_user.id,
            hobbs_start=Decimal("1200.00"),
            hobbs_end=Decimal("1202.00"),
            tach_start=Decimal("900.00"),
            tach_end=Decimal("901.60"),
            billing_basis=BillingBasis.HOBBS,
            billing_hours=Decimal("2.0"),
            items=[hire_item()],
        )
        data.update(overrides)
        return CheckinApprove(**data)
    return _payload

@pytest.fixture
def auth_headers():
    """Bearer headers for a user, shaped like the identity provider's tokens."""
    def _headers(user):
        token = create_access_token(data={"sub": user.email, "user_id": user.id, "role": user.role.value})
        return {"Authorization": f"Bearer {token}"}
    return _headers
