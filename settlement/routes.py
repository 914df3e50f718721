from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from settlement.audit import AuditLog
from settlement.auth import Principal, verify_token
from settlement.database import SessionLocal
from settlement.gift_certificates import GiftCertificateLedger
from settlement.models import PaymentMethod, as_utc
from settlement.payments import PaymentOrchestrator
from settlement.processors import (
    CardSource,
    GiftCertificateSource,
    ManualSource,
    build_processors,
)

router = APIRouter()


class GiftCertificateSourceIn(BaseModel):
    type: Literal["GIFT_CERTIFICATE"]
    gift_certificate_code: str

    def to_source(self):
        return GiftCertificateSource(code=self.gift_certificate_code)


class CardSourceIn(BaseModel):
    type: Literal["CARD"]
    payment_method_id: str

    def to_source(self):
        return CardSource(payment_method_id=self.payment_method_id)


class ManualSourceIn(BaseModel):
    type: Literal["CASH", "OTHER"]
    note: Optional[str] = None

    def to_source(self):
        return ManualSource(method=PaymentMethod(self.type), note=self.note)


class PaymentRequest(BaseModel):
    appointment_id: str
    amount: Decimal
    retry_attempt: int = 0
    source: Annotated[
        Union[GiftCertificateSourceIn, CardSourceIn, ManualSourceIn],
        Field(discriminator="type"),
    ]


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class GiftCertificateRequest(BaseModel):
    amount: Decimal
    client_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    salon_id: Optional[str] = None


class VoidRequest(BaseModel):
    reason: Optional[str] = None


def _money(value):
    return None if value is None else str(value)


def _timestamp(value):
    return None if value is None else as_utc(value).isoformat()


def payment_out(payment):
    return {
        "id": payment.id,
        "appointment_id": payment.appointment_id,
        "amount": _money(payment.amount),
        "amount_applied": _money(payment.amount_applied),
        "method": payment.method.value,
        "status": payment.status.value,
        "external_reference": payment.external_reference,
        "installment": payment.installment,
        "retry_attempt": payment.retry_attempt,
        "metadata": payment.meta,
        "created_at": _timestamp(payment.created_at),
    }


def certificate_out(certificate):
    return {
        "id": certificate.id,
        "code": certificate.code,
        "salon_id": certificate.salon_id,
        "client_id": certificate.client_id,
        "balance": _money(certificate.balance),
        "original_amount": _money(certificate.original_amount),
        "expires_at": _timestamp(certificate.expires_at),
        "created_at": _timestamp(certificate.created_at),
    }


def audit_entry_out(entry):
    return {
        "id": entry.id,
        "payment_id": entry.payment_id,
        "action": entry.action,
        "details": entry.details,
        "created_at": _timestamp(entry.created_at),
    }


def get_ledger():
    return GiftCertificateLedger(SessionLocal)


def get_orchestrator():
    audit = AuditLog(SessionLocal)
    return PaymentOrchestrator(SessionLocal, audit, build_processors(audit, get_ledger()))


@router.post("/payments")
def process_payment_api(
    request: PaymentRequest,
    principal: Principal = Depends(verify_token)
):
    result = get_orchestrator().process_payment(
        principal,
        request.appointment_id,
        request.amount,
        request.source.to_source(),
        retry_attempt=request.retry_attempt,
    )
    return result.to_dict()


@router.get("/payments/appointment/{appointment_id}")
def get_payment_api(appointment_id: str, principal: Principal = Depends(verify_token)):
    payment = get_orchestrator().get_payment_by_appointment(principal, appointment_id)
    return {"success": True, "data": payment_out(payment)}


@router.get("/payments/{payment_id}/audit")
def get_audit_log_api(payment_id: str, principal: Principal = Depends(verify_token)):
    entries = get_orchestrator().get_audit_log(principal, payment_id)
    return {"success": True, "data": [audit_entry_out(e) for e in entries]}


@router.post("/payments/{payment_id}/refund")
def refund_api(
    payment_id: str,
    request: RefundRequest = RefundRequest(),
    principal: Principal = Depends(verify_token)
):
    payment = get_orchestrator().refund_payment(principal, payment_id, reason=request.reason)
    return {"success": True, "data": payment_out(payment)}


@router.post("/gift-certificates")
def create_gift_certificate_api(
    request: GiftCertificateRequest,
    principal: Principal = Depends(verify_token)
):
    certificate = get_ledger().create(
        principal,
        request.amount,
        client_id=request.client_id,
        expires_at=request.expires_at,
        salon_id=request.salon_id,
    )
    return {"success": True, "data": certificate_out(certificate)}


@router.get("/gift-certificates")
def list_gift_certificates_api(
    client_id: Optional[str] = None,
    has_balance: bool = False,
    include_expired: bool = False,
    principal: Principal = Depends(verify_token)
):
    certificates = get_ledger().list(
        principal.salon_id,
        client_id=client_id,
        has_balance=has_balance,
        include_expired=include_expired,
    )
    return {"success": True, "data": [certificate_out(c) for c in certificates]}


@router.get("/gift-certificates/balance")
def check_balance_api(code: str, principal: Principal = Depends(verify_token)):
    check = get_ledger().check_balance(code, principal.salon_id)
    response = {"success": check.usable, "data": certificate_out(check.certificate)}
    if check.is_expired:
        response["error"] = "Gift certificate has expired"
    elif check.is_exhausted:
        response["error"] = "Gift certificate has no remaining balance"
    return response


@router.get("/gift-certificates/{certificate_id}")
def get_gift_certificate_api(certificate_id: str, principal: Principal = Depends(verify_token)):
    certificate = get_ledger().get(certificate_id, principal.salon_id)
    return {"success": True, "data": certificate_out(certificate)}


@router.post("/gift-certificates/{certificate_id}/void")
def void_gift_certificate_api(
    certificate_id: str,
    request: VoidRequest = VoidRequest(),
    principal: Principal = Depends(verify_token)
):
    certificate = get_ledger().void(certificate_id, principal, reason=request.reason)
    return {"success": True, "data": certificate_out(certificate)}
