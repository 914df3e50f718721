"""
Append-only payment audit trail.

Entries are written in their own transaction so a decision is recorded even
when the caller's work later fails, and a failed write never reaches the
caller. There is deliberately no update or delete here.
"""
import enum

import structlog
from sqlalchemy import select

from settlement.models import PaymentAuditLog, utcnow

logger = structlog.get_logger(__name__)


class AuditAction(str, enum.Enum):
    SOURCE_SELECTED = "source_selected"
    GIFT_CERTIFICATE_PAYMENT_ATTEMPT = "gift_certificate_payment_attempt"
    GIFT_CERTIFICATE_PAYMENT_SUCCEEDED = "gift_certificate_payment_succeeded"
    GIFT_CERTIFICATE_PAYMENT_FAILED = "gift_certificate_payment_failed"
    CREDIT_CARD_PAYMENT_ATTEMPT = "credit_card_payment_attempt"
    GATEWAY_CHARGE_CREATED = "gateway_charge_created"
    CREDIT_CARD_PAYMENT_SUCCEEDED = "credit_card_payment_succeeded"
    CREDIT_CARD_PAYMENT_FAILED = "credit_card_payment_failed"
    MANUAL_PAYMENT_PROCESSED = "manual_payment_processed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_ROLLED_BACK = "payment_rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    REFUND_INITIATED = "refund_initiated"
    GATEWAY_REFUND_CREATED = "gateway_refund_created"
    REFUND_COMPLETED = "refund_completed"
    # Gateway says a charge succeeded after we already rolled the payment back
    RECONCILIATION_CONFLICT = "reconciliation_conflict"


class AuditLog:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def append(self, payment_id, action, details=None):
        """Record ``action`` for ``payment_id``; returns the entry id or None."""
        action = AuditAction(action)
        now = utcnow()
        entry = PaymentAuditLog(
            payment_id=payment_id,
            action=action.value,
            details={**(details or {}), "timestamp": now.isoformat()},
            created_at=now,
        )
        try:
            with self.session_factory() as session:
                session.add(entry)
                session.commit()
                return entry.id
        except Exception:
            logger.exception("audit_write_failed", payment_id=payment_id, action=action.value)
            return None

    def list_by_payment(self, payment_id):
        with self.session_factory() as session:
            return session.scalars(
                select(PaymentAuditLog)
                .where(PaymentAuditLog.payment_id == payment_id)
                .order_by(PaymentAuditLog.created_at, PaymentAuditLog.id)
            ).all()
