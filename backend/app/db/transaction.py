"""
Transaction boundary for core operations.

Domain steps only flush; the outermost atomic operation commits once at the
end or rolls back every write made inside it.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import AppException

logger = logging.getLogger("aeroledger.db")


@asynccontextmanager
async def atomic(db: AsyncSession, operation: str, **context):
    """
    Run a block as a single unit of work.

    Business-rule rejections are logged at WARNING, anything else is logged
    with a traceback. Both roll back and re-raise.

    Usage:
        async with atomic(db, "record_payment", invoice_id=invoice_id):
            ...
    """
    try:
        yield db
        await db.commit()
    except AppException as exc:
        await db.rollback()
        logger.warning(
            "%s rejected: %s",
            operation,
            exc.message,
            extra={"operation": operation, "error_code": exc.error_code, "context": context},
        )
        raise
    except Exception:
        await db.rollback()
        logger.exception(
            "%s failed and was rolled back",
            operation,
            extra={"operation": operation, "context": context},
        )
        raise
