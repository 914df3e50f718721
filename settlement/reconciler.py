"""
Gateway event reconciliation.

The gateway delivers at-least-once and in no particular order, and its events
may land before, during or long after the orchestrator's own attempt. Every
transition here is precondition-checked against the status we read, so a
replayed or stale event degrades to a logged no-op, and an event that arrives
ahead of the one it depends on is refused so the gateway redelivers it.
"""
import enum
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select

from settlement.audit import AuditAction
from settlement.models import (
    PAYMENT_TRANSITIONS,
    Payment,
    PaymentStatus,
    can_transition,
    transition_payment,
    utcnow,
)
from settlement.money import from_cents

logger = structlog.get_logger(__name__)


class GatewayEventKind(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    CHARGE_REFUNDED = "charge_refunded"


class ReconciliationOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"
    CONFLICT = "conflict"
    # Target is only reachable after another event lands; the gateway must redeliver
    DEFERRED = "deferred"


STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": GatewayEventKind.CHARGE_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventKind.CHARGE_FAILED,
    "payment_intent.canceled": GatewayEventKind.CHARGE_FAILED,
    "charge.refunded": GatewayEventKind.CHARGE_REFUNDED,
}

TARGET_STATUS = {
    GatewayEventKind.CHARGE_SUCCEEDED: PaymentStatus.COMPLETED,
    GatewayEventKind.CHARGE_FAILED: PaymentStatus.FAILED,
    GatewayEventKind.CHARGE_REFUNDED: PaymentStatus.REFUNDED,
}

AUDIT_ACTION = {
    GatewayEventKind.CHARGE_SUCCEEDED: AuditAction.PAYMENT_SUCCEEDED,
    GatewayEventKind.CHARGE_FAILED: AuditAction.PAYMENT_FAILED,
    GatewayEventKind.CHARGE_REFUNDED: AuditAction.REFUND_COMPLETED,
}


def _reachable_later(current, target):
    steps = PAYMENT_TRANSITIONS.get(PaymentStatus(current), ())
    return any(can_transition(step, target) for step in steps)


def _field(obj, *path):
    for key in path:
        if obj is None:
            return None
        try:
            obj = obj[key]
        except (KeyError, TypeError):
            return None
    return obj


@dataclass
class GatewayEvent:
    kind: GatewayEventKind
    event_id: Optional[str]
    reference: Optional[str]
    payment_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_stripe(cls, event):
        """Map a verified Stripe event; None for event types we don't consume."""
        kind = STRIPE_EVENT_KINDS.get(_field(event, "type"))
        if kind is None:
            return None
        obj = _field(event, "data", "object")

        if kind == GatewayEventKind.CHARGE_REFUNDED:
            reference = _field(obj, "payment_intent")
            if not isinstance(reference, str):
                reference = _field(reference, "id")
            return cls(
                kind=kind,
                event_id=_field(event, "id"),
                reference=reference,
                payment_id=_field(obj, "metadata", "payment_id"),
                amount_cents=_field(obj, "amount_refunded"),
                currency=_field(obj, "currency"),
            )

        if _field(event, "type") == "payment_intent.canceled":
            # Abandoned authentication; releases the appointment for another attempt
            return cls(
                kind=kind,
                event_id=_field(event, "id"),
                reference=_field(obj, "id"),
                payment_id=_field(obj, "metadata", "payment_id"),
                amount_cents=_field(obj, "amount"),
                currency=_field(obj, "currency"),
                error_code="canceled",
                error_message=_field(obj, "cancellation_reason") or "Payment was canceled",
            )

        return cls(
            kind=kind,
            event_id=_field(event, "id"),
            reference=_field(obj, "id"),
            payment_id=_field(obj, "metadata", "payment_id"),
            amount_cents=_field(obj, "amount"),
            currency=_field(obj, "currency"),
            error_code=_field(obj, "last_payment_error", "code"),
            error_message=_field(obj, "last_payment_error", "message"),
        )


class GatewayEventReconciler:
    def __init__(self, session_factory, audit):
        self.session_factory = session_factory
        self.audit = audit

    def _find_payment(self, session, event):
        if event.reference:
            payment = session.scalars(
                select(Payment).where(Payment.external_reference == event.reference)
            ).first()
            if payment is not None:
                return payment
        # Charges whose creation call timed out never got their reference stored
        if event.payment_id:
            payment = session.get(Payment, event.payment_id)
            if payment is not None and payment.external_reference in (None, event.reference):
                return payment
        return None

    def _meta_for(self, event):
        now = utcnow().isoformat()
        if event.kind == GatewayEventKind.CHARGE_SUCCEEDED:
            return {"completed_at": now, "gateway_status": "succeeded"}
        if event.kind == GatewayEventKind.CHARGE_FAILED:
            return {
                "failed_at": now,
                "gateway_status": "failed",
                "error_code": event.error_code or "unknown",
                "error_message": event.error_message or "Unknown error",
            }
        return {
            "refunded_at": now,
            "refunded_amount": from_cents(event.amount_cents or 0),
            "gateway_event_id": event.event_id,
        }

    def handle(self, event: GatewayEvent) -> ReconciliationOutcome:
        log = logger.bind(event_kind=event.kind.value, event_id=event.event_id,
                          reference=event.reference)
        target = TARGET_STATUS[event.kind]

        with self.session_factory() as session:
            payment = self._find_payment(session, event)
            if payment is None:
                log.warning("gateway_event_unmatched")
                return ReconciliationOutcome.UNMATCHED

            log = log.bind(payment_id=payment.id, status=PaymentStatus(payment.status).value)
            if payment.status == target:
                log.info("gateway_event_already_applied")
                return ReconciliationOutcome.ALREADY_APPLIED

            if not can_transition(payment.status, target):
                if _reachable_later(payment.status, target):
                    # e.g. refund delivered before the success event
                    log.warning("gateway_event_deferred")
                    return ReconciliationOutcome.DEFERRED
                if event.kind == GatewayEventKind.CHARGE_SUCCEEDED \
                        and payment.status == PaymentStatus.FAILED:
                    return self._record_conflict(session, payment, event, log)
                log.info("gateway_event_ignored")
                return ReconciliationOutcome.IGNORED

            values = {}
            if payment.external_reference is None and event.reference:
                values["external_reference"] = event.reference
            if event.kind == GatewayEventKind.CHARGE_SUCCEEDED and event.amount_cents is not None:
                values["amount_applied"] = from_cents(event.amount_cents)
            if not transition_payment(session, payment, target, meta=self._meta_for(event), **values):
                session.rollback()
                log.info("gateway_event_lost_race")
                return ReconciliationOutcome.ALREADY_APPLIED
            session.commit()
            payment_id = payment.id

        details = {
            "event": event.kind.value,
            "gateway_event_id": event.event_id,
            "external_reference": event.reference,
            "currency": event.currency,
        }
        if event.kind == GatewayEventKind.CHARGE_FAILED:
            details.update(error_code=event.error_code, error_message=event.error_message)
        elif event.kind == GatewayEventKind.CHARGE_REFUNDED:
            details["amount_refunded"] = from_cents(event.amount_cents or 0)
        elif event.amount_cents is not None:
            details["amount"] = from_cents(event.amount_cents)
        self.audit.append(payment_id, AUDIT_ACTION[event.kind], details)

        log.info("gateway_event_applied", new_status=target.value)
        return ReconciliationOutcome.APPLIED

    def _record_conflict(self, session, payment, event, log):
        # The charge went through after we rolled back (e.g. client-side timeout).
        # State stays FAILED; an operator has to refund or re-settle it.
        log.error("gateway_success_for_failed_payment")
        if (payment.meta or {}).get("gateway_conflict_at"):
            return ReconciliationOutcome.CONFLICT

        payment.meta = {
            **(payment.meta or {}),
            "gateway_conflict_at": utcnow().isoformat(),
            "gateway_conflict_reference": event.reference,
        }
        if payment.external_reference is None and event.reference:
            payment.external_reference = event.reference
        session.commit()
        self.audit.append(payment.id, AuditAction.RECONCILIATION_CONFLICT, {
            "event": event.kind.value,
            "gateway_event_id": event.event_id,
            "external_reference": event.reference,
            "amount": from_cents(event.amount_cents) if event.amount_cents is not None else None,
        })
        return ReconciliationOutcome.CONFLICT
