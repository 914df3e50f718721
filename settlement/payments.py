"""
Payment orchestration.

Each process_payment call is exactly one attempt: it records a PENDING row
and the chosen source before charging anything, dispatches to the source's
processor, then completes or rolls back. Retrying is the caller's job; the
result says whether another attempt is allowed and which counter to send.
"""
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from settlement import stripe_service
from settlement.appointments import find_appointment
from settlement.audit import AuditAction
from settlement.errors import (
    ConflictError,
    NotFoundError,
    RetryLimitExceeded,
    SourceProcessingError,
    UnauthorizedError,
    ValidationError,
)
from settlement.models import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    Role,
    transition_payment,
    utcnow,
)
from settlement.money import to_amount
from settlement.processors import ProcessorResult

logger = structlog.get_logger(__name__)

MAX_RETRIES = 2

SETTLED_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)


@dataclass
class PaymentResult:
    success: bool
    payment_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    amount_applied: Optional[Decimal] = None
    remaining_due: Optional[Decimal] = None
    method: Optional[str] = None
    error: Optional[str] = None
    can_retry: bool = False
    retry_attempt: Optional[int] = None
    requires_action: bool = False
    client_secret: Optional[str] = None

    def to_dict(self):
        return {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in asdict(self).items()
            if value is not None
        }


class PaymentOrchestrator:
    def __init__(self, session_factory, audit, processors, appointment_lookup=find_appointment):
        missing = set(PaymentMethod) - set(processors)
        if missing:
            raise ValueError(f"No processor registered for {sorted(m.value for m in missing)}")
        self.session_factory = session_factory
        self.audit = audit
        self.processors = processors
        self.appointment_lookup = appointment_lookup

    def process_payment(self, principal, appointment_id, amount, source, retry_attempt=0):
        amount = to_amount(amount)
        if retry_attempt < 0:
            raise ValidationError("Invalid retry attempt")
        if retry_attempt >= MAX_RETRIES:
            raise RetryLimitExceeded("Maximum payment retry attempts exceeded")
        source.validate()

        payment_id, remaining_due = self._open_payment(
            principal, appointment_id, amount, source, retry_attempt
        )
        log = logger.bind(payment_id=payment_id, appointment_id=appointment_id,
                          method=source.method.value, retry_attempt=retry_attempt)

        self.audit.append(payment_id, AuditAction.SOURCE_SELECTED, {
            "source": source.method.value,
            "amount": amount,
            "appointment_id": appointment_id,
            "selected_by": principal.email,
            "retry_attempt": retry_attempt,
            **source.describe(),
        })

        result = self._dispatch(payment_id, amount, source, principal.salon_id)

        if result.requires_action:
            self._await_customer_action(payment_id, result)
            log.info("payment_requires_action", external_reference=result.external_reference)
            return PaymentResult(
                success=False,
                payment_id=payment_id,
                status=PaymentStatus.PENDING.value,
                amount=amount,
                method=source.method.value,
                error=result.error,
                requires_action=True,
                client_secret=result.client_secret,
            )

        if not result.success:
            self.rollback(payment_id, result.error or "Payment processing failed",
                          external_reference=result.external_reference)
            can_retry = retry_attempt < MAX_RETRIES - 1
            log.info("payment_attempt_failed", error=result.error, can_retry=can_retry)
            return PaymentResult(
                success=False,
                payment_id=payment_id,
                status=PaymentStatus.FAILED.value,
                amount=amount,
                method=source.method.value,
                error=result.error or "Payment failed",
                can_retry=can_retry,
                retry_attempt=retry_attempt + 1 if can_retry else None,
            )

        applied = result.amount_applied if result.amount_applied is not None else amount
        self._complete(payment_id, source, result, applied)
        log.info("payment_completed", amount_applied=str(applied))
        return PaymentResult(
            success=True,
            payment_id=payment_id,
            status=PaymentStatus.COMPLETED.value,
            amount=amount,
            amount_applied=applied,
            remaining_due=remaining_due - applied,
            method=source.method.value,
        )

    def _open_payment(self, principal, appointment_id, amount, source, retry_attempt):
        with self.session_factory() as session:
            appointment = self.appointment_lookup(
                session, appointment_id, principal.salon_id, for_update=True
            )
            if appointment is None:
                raise NotFoundError("Appointment not found")

            existing = session.scalars(
                select(Payment).where(Payment.appointment_id == appointment_id)
            ).all()
            if any(p.status == PaymentStatus.PENDING for p in existing):
                raise ConflictError("A payment is already in progress for this appointment")

            covered = sum(
                (p.amount_applied if p.amount_applied is not None else p.amount)
                for p in existing if p.status == PaymentStatus.COMPLETED
            )
            outstanding = appointment.amount_due - covered
            if outstanding <= 0:
                raise ConflictError("Payment already exists for this appointment")
            if amount > outstanding:
                raise ValidationError(f"Amount exceeds the outstanding balance of {outstanding}")

            now = utcnow()
            payment = Payment(
                appointment_id=appointment_id,
                amount=amount,
                method=source.method,
                status=PaymentStatus.PENDING,
                installment=sum(1 for p in existing if p.status in SETTLED_STATUSES),
                retry_attempt=retry_attempt,
                meta={
                    "processed_by": principal.user_id,
                    "processed_at": now.isoformat(),
                    "retry_attempt": retry_attempt,
                },
            )
            session.add(payment)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError("Payment already exists for this appointment")
            return payment.id, outstanding

    def _dispatch(self, payment_id, amount, source, salon_id) -> ProcessorResult:
        processor = self.processors[source.method]
        try:
            return processor.process(payment_id, amount, source, salon_id)
        except Exception as e:
            logger.exception("source_processor_crashed", payment_id=payment_id,
                             method=source.method.value)
            return ProcessorResult(success=False, error=str(e) or "Payment processing failed")

    def _complete(self, payment_id, source, result, applied):
        with self.session_factory() as session:
            payment = session.get(Payment, payment_id)
            meta = {
                "completed_at": utcnow().isoformat(),
                "amount_charged": applied,
                **result.details,
            }
            values = {"amount_applied": applied}
            if result.external_reference:
                values["external_reference"] = result.external_reference
            # The gateway webhook may have settled it while we were charging
            if payment.status != PaymentStatus.PENDING or not transition_payment(
                    session, payment, PaymentStatus.COMPLETED, meta=meta, **values):
                session.rollback()
                logger.info("payment_completion_superseded", payment_id=payment_id)
                return
            session.commit()

        self.audit.append(payment_id, AuditAction.PAYMENT_SUCCEEDED, {
            "amount": applied,
            "method": source.method.value,
            "external_reference": result.external_reference,
        })

    def _await_customer_action(self, payment_id, result):
        # Stays PENDING; the reconciler finalizes once the customer authenticates
        with self.session_factory() as session:
            payment = session.get(Payment, payment_id)
            payment.external_reference = result.external_reference
            payment.meta = {
                **(payment.meta or {}),
                "requires_action_at": utcnow().isoformat(),
                **result.details,
            }
            session.commit()

    def rollback(self, payment_id, cause, external_reference=None):
        """Mark the attempt FAILED. Never raises; audit completeness is secondary."""
        cause = str(cause)
        try:
            with self.session_factory() as session:
                payment = session.get(Payment, payment_id)
                values = {"external_reference": external_reference} if external_reference else {}
                rolled_back = payment.status == PaymentStatus.PENDING and transition_payment(
                    session, payment, PaymentStatus.FAILED, meta={
                        "failed_at": utcnow().isoformat(),
                        "error_message": cause,
                    }, **values)
                session.commit()
        except Exception as e:
            logger.exception("payment_rollback_failed", payment_id=payment_id)
            self.audit.append(payment_id, AuditAction.ROLLBACK_FAILED, {
                "original_error": cause,
                "rollback_error": str(e),
            })
            return

        if not rolled_back:
            logger.warning("payment_rollback_superseded", payment_id=payment_id)
            return
        self.audit.append(payment_id, AuditAction.PAYMENT_ROLLED_BACK, {"reason": cause})

    def _tenant_payment(self, session, principal, payment_id):
        payment = session.get(Payment, payment_id)
        if payment is None or self.appointment_lookup(
                session, payment.appointment_id, principal.salon_id) is None:
            raise NotFoundError("Payment not found")
        return payment

    def get_payment_by_appointment(self, principal, appointment_id):
        """Latest attempt for the appointment."""
        with self.session_factory() as session:
            if self.appointment_lookup(session, appointment_id, principal.salon_id) is None:
                raise NotFoundError("Payment not found")
            payment = session.scalars(
                select(Payment)
                .where(Payment.appointment_id == appointment_id)
                .order_by(Payment.installment.desc(), Payment.retry_attempt.desc())
            ).first()
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    def get_audit_log(self, principal, payment_id):
        with self.session_factory() as session:
            self._tenant_payment(session, principal, payment_id)
        return self.audit.list_by_payment(payment_id)

    def refund_payment(self, principal, payment_id, reason=None):
        if principal.role != Role.OWNER:
            raise UnauthorizedError("Only salon owners can process refunds")

        with self.session_factory() as session:
            payment = self._tenant_payment(session, principal, payment_id)
            if payment.status != PaymentStatus.COMPLETED:
                raise ValidationError("Only completed payments can be refunded")
            method = PaymentMethod(payment.method)
            external_reference = payment.external_reference

        self.audit.append(payment_id, AuditAction.REFUND_INITIATED, {
            "initiated_by": principal.email,
            "reason": reason,
        })

        if method == PaymentMethod.CARD and external_reference:
            try:
                refund = stripe_service.refund_charge(external_reference, payment_id)
            except stripe.StripeError as e:
                logger.warning("gateway_refund_error", payment_id=payment_id, error=str(e))
                raise SourceProcessingError(f"Refund failed: {e}")
            self.audit.append(payment_id, AuditAction.GATEWAY_REFUND_CREATED, {
                "refund_id": refund.id,
                "status": refund.status,
            })

        with self.session_factory() as session:
            payment = session.get(Payment, payment_id)
            if payment.status == PaymentStatus.REFUNDED:
                # charge.refunded webhook won the race
                logger.info("payment_refund_already_recorded", payment_id=payment_id)
                return payment
            applied = transition_payment(session, payment, PaymentStatus.REFUNDED, meta={
                "refunded_at": utcnow().isoformat(),
                "refunded_by": principal.email,
                "refund_reason": reason,
            })
            session.commit()
            session.refresh(payment)

        if applied:
            self.audit.append(payment_id, AuditAction.REFUND_COMPLETED, {"refunded_by": principal.email})
            logger.info("payment_refunded", payment_id=payment_id, method=method.value)
        return payment
