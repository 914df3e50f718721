"""
Payment sources and the processors that settle them.

A source is one variant of a closed set (gift certificate, card, manual) and
each variant has exactly one processor. Processors report every outcome,
including gateway exceptions, through ProcessorResult; they never raise.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import stripe
import structlog

from settlement import stripe_service
from settlement.audit import AuditAction
from settlement.config import MINIMUM_CHARGE_CENTS
from settlement.errors import SettlementError, ValidationError
from settlement.models import PaymentMethod
from settlement.money import from_cents, to_cents

logger = structlog.get_logger(__name__)

ACTION_REQUIRED_STATUSES = ("requires_action", "requires_confirmation")


@dataclass(frozen=True)
class GiftCertificateSource:
    code: str
    method = PaymentMethod.GIFT_CERTIFICATE

    def validate(self):
        if not (self.code or "").strip():
            raise ValidationError("Gift certificate code is required")

    def describe(self):
        return {"gift_certificate_code": self.code}


@dataclass(frozen=True)
class CardSource:
    payment_method_id: str
    method = PaymentMethod.CARD

    def validate(self):
        if not self.payment_method_id:
            raise ValidationError("A card payment method is required")

    def describe(self):
        return {"payment_method_id": self.payment_method_id}


@dataclass(frozen=True)
class ManualSource:
    method: PaymentMethod = PaymentMethod.CASH
    note: Optional[str] = None

    def validate(self):
        if self.method not in (PaymentMethod.CASH, PaymentMethod.OTHER):
            raise ValidationError("Manual payments must be CASH or OTHER")

    def describe(self):
        return {"note": self.note} if self.note else {}


@dataclass
class ProcessorResult:
    success: bool
    external_reference: Optional[str] = None
    amount_applied: Optional[Decimal] = None
    error: Optional[str] = None
    requires_action: bool = False
    client_secret: Optional[str] = None
    details: dict = field(default_factory=dict)


class SourceProcessor:
    method = None

    def __init__(self, audit):
        self.audit = audit

    def process(self, payment_id: str, amount: Decimal, source, salon_id: str) -> ProcessorResult:
        raise NotImplementedError


class GiftCertificateProcessor(SourceProcessor):
    method = PaymentMethod.GIFT_CERTIFICATE

    def __init__(self, audit, ledger):
        super().__init__(audit)
        self.ledger = ledger

    def process(self, payment_id, amount, source, salon_id):
        self.audit.append(payment_id, AuditAction.GIFT_CERTIFICATE_PAYMENT_ATTEMPT, {
            "code": source.code,
            "amount": amount,
        })
        try:
            redemption = self.ledger.redeem(
                source.code, amount, salon_id, payment_id=payment_id
            )
        except SettlementError as e:
            self.audit.append(payment_id, AuditAction.GIFT_CERTIFICATE_PAYMENT_FAILED, {
                "code": source.code,
                "error": e.message,
            })
            return ProcessorResult(success=False, error=e.message)
        except Exception as e:
            logger.exception("gift_certificate_redeem_error", payment_id=payment_id)
            self.audit.append(payment_id, AuditAction.GIFT_CERTIFICATE_PAYMENT_FAILED, {
                "code": source.code,
                "error": str(e),
            })
            return ProcessorResult(success=False, error="Failed to redeem gift certificate")

        self.audit.append(payment_id, AuditAction.GIFT_CERTIFICATE_PAYMENT_SUCCEEDED, {
            "code": redemption.code,
            "amount_applied": redemption.amount_applied,
            "remaining_balance": redemption.remaining_balance,
        })
        # Partial coverage is still a success; the caller collects the rest separately
        return ProcessorResult(
            success=True,
            amount_applied=redemption.amount_applied,
            details={
                "gift_certificate_id": redemption.certificate_id,
                "gift_certificate_remaining": redemption.remaining_balance,
            },
        )


class CardProcessor(SourceProcessor):
    method = PaymentMethod.CARD

    def process(self, payment_id, amount, source, salon_id):
        amount_cents = to_cents(amount)
        if amount_cents < MINIMUM_CHARGE_CENTS:
            error = f"Minimum charge amount is ${from_cents(MINIMUM_CHARGE_CENTS)}"
            self.audit.append(payment_id, AuditAction.CREDIT_CARD_PAYMENT_FAILED, {"error": error})
            return ProcessorResult(success=False, error=error)

        self.audit.append(payment_id, AuditAction.CREDIT_CARD_PAYMENT_ATTEMPT, {
            "amount": amount,
            "amount_cents": amount_cents,
        })

        try:
            intent = stripe_service.create_charge(amount_cents, payment_id, source.payment_method_id)
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e) or "Card charge failed"
            logger.warning("gateway_charge_error", payment_id=payment_id,
                           error_type=type(e).__name__, error=str(e))
            self.audit.append(payment_id, AuditAction.CREDIT_CARD_PAYMENT_FAILED, {
                "error": message,
                "error_type": type(e).__name__,
            })
            return ProcessorResult(success=False, error=message)

        self.audit.append(payment_id, AuditAction.GATEWAY_CHARGE_CREATED, {
            "charge_id": intent.id,
            "status": intent.status,
            "amount_cents": amount_cents,
        })

        if intent.status in ACTION_REQUIRED_STATUSES:
            return ProcessorResult(
                success=False,
                external_reference=intent.id,
                error="Payment requires additional authentication",
                requires_action=True,
                client_secret=intent.client_secret,
                details={"gateway_status": intent.status},
            )

        if intent.status != "succeeded":
            error = f"Payment failed with status: {intent.status}"
            self.audit.append(payment_id, AuditAction.CREDIT_CARD_PAYMENT_FAILED, {
                "charge_id": intent.id,
                "error": error,
            })
            return ProcessorResult(success=False, external_reference=intent.id, error=error)

        self.audit.append(payment_id, AuditAction.CREDIT_CARD_PAYMENT_SUCCEEDED, {
            "charge_id": intent.id,
            "amount": amount,
        })
        return ProcessorResult(
            success=True,
            external_reference=intent.id,
            amount_applied=amount,
            details={"gateway_status": intent.status},
        )


class ManualProcessor(SourceProcessor):
    method = None  # serves both CASH and OTHER

    def process(self, payment_id, amount, source, salon_id):
        self.audit.append(payment_id, AuditAction.MANUAL_PAYMENT_PROCESSED, {
            "method": source.method.value,
            "amount": amount,
            **source.describe(),
        })
        return ProcessorResult(success=True, amount_applied=amount)


def build_processors(audit, ledger):
    manual = ManualProcessor(audit)
    return {
        PaymentMethod.GIFT_CERTIFICATE: GiftCertificateProcessor(audit, ledger),
        PaymentMethod.CARD: CardProcessor(audit),
        PaymentMethod.CASH: manual,
        PaymentMethod.OTHER: manual,
    }
