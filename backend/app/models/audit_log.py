"""
Audit Log Database Model.

Tracks billing and check-in events. Rows are written in the same
transaction as the operation they describe, so a rolled-back operation
leaves no audit trace.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - INVOICE_CREATED / INVOICE_TOTALS_RECALCULATED / INVOICE_STATUS_CHANGED
    - INVOICE_ITEM_ADDED / INVOICE_ITEMS_REPLACED
    - PAYMENT_RECORDED
    - CHECKIN_APPROVED / CHECKIN_FINALIZED / CHECKIN_CORRECTED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)

    action = Column(String(100), nullable=False, index=True)

    # What was acted upon
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, index=True, nullable=True)

    meta_data = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
