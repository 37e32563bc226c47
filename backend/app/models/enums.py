"""
User roles enumeration.

Defines the role types for the flight school ledger.
"""

import enum


def db_values(enum_cls):
    """Persist enum values (not member names) in SQLAlchemy ``Enum`` columns."""
    return [member.value for member in enum_cls]


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        OWNER: School owner, full access
        ADMIN: Office staff, full billing access
        INSTRUCTOR: Approves check-ins and records payments
        MEMBER: Billed club member
        STUDENT: Billed student pilot
    """
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    INSTRUCTOR = "INSTRUCTOR"
    MEMBER = "MEMBER"
    STUDENT = "STUDENT"
