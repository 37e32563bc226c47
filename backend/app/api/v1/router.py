"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import invoices, payments, checkin

router = APIRouter()

# Invoice ledger: creation, totals, lifecycle, reads
router.include_router(invoices.router)

# Payments against approved invoices
router.include_router(payments.router)

# Booking check-in approval, finalize and TTIS correction
router.include_router(checkin.router)
