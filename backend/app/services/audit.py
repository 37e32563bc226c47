"""
Audit logging service for billing and check-in events.

Audit rows join the caller's transaction: they are added to the session
but never committed here, so a rolled-back operation leaves no trace.
"""

from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from fastapi.encoders import jsonable_encoder
from backend.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_TOTALS_RECALCULATED = "INVOICE_TOTALS_RECALCULATED"
    INVOICE_STATUS_CHANGED = "INVOICE_STATUS_CHANGED"
    INVOICE_ITEM_ADDED = "INVOICE_ITEM_ADDED"
    INVOICE_ITEMS_REPLACED = "INVOICE_ITEMS_REPLACED"

    PAYMENT_RECORDED = "PAYMENT_RECORDED"

    CHECKIN_APPROVED = "CHECKIN_APPROVED"
    CHECKIN_FINALIZED = "CHECKIN_FINALIZED"
    CHECKIN_CORRECTED = "CHECKIN_CORRECTED"
    DEBRIEF_SAVED = "DEBRIEF_SAVED"


async def log_event(
    db: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Record an audit event in the current transaction.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        entity_type: "invoice", "payment", "booking", ...
        entity_id: ID of the entity acted upon
        actor_id: ID of user performing the action
        metadata: Additional context; Decimals and datetimes are made JSON-safe

    Returns:
        Pending AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=jsonable_encoder(metadata) if metadata else None,
    )
    db.add(audit_log)
    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> List[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.where(AuditLog.entity_id == entity_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
