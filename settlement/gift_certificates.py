"""
Gift-certificate ledger: code allocation, balance lookup, atomic redemption.

Redemption is the only read-modify-write on shared money in the service. The
row is read with SELECT ... FOR UPDATE where the database supports it, and
the UPDATE is additionally guarded by the certificate's version column, so a
concurrent redeemer that slipped in between is detected (StaleDataError) and
the whole read/validate/write is retried against the fresh balance.
"""
import re
import secrets
from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from settlement.config import CODE_ALLOCATION_ATTEMPTS, REDEEM_MAX_ATTEMPTS
from settlement.errors import (
    CertificateExhaustedError,
    CertificateExpiredError,
    CertificateNotFoundError,
    CodeAllocationError,
    ConflictError,
    UnauthorizedError,
)
from settlement.models import GiftCertificate, Role, utcnow
from settlement.money import to_amount

logger = structlog.get_logger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_GROUPS = 3
CODE_GROUP_LENGTH = 4


def generate_code():
    return "-".join(
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_GROUP_LENGTH))
        for _ in range(CODE_GROUPS)
    )


def normalize_code(code):
    return re.sub(r"\s", "", code or "").upper()


@dataclass
class Redemption:
    certificate_id: str
    code: str
    amount_applied: Decimal
    remaining_balance: Decimal
    original_balance: Decimal


@dataclass
class BalanceCheck:
    certificate: GiftCertificate
    is_expired: bool
    is_exhausted: bool

    @property
    def usable(self):
        return not (self.is_expired or self.is_exhausted)


class GiftCertificateLedger:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, principal, amount, client_id=None, expires_at=None, salon_id=None):
        if principal.role == Role.CLIENT:
            raise UnauthorizedError("Insufficient permissions")
        salon_id = salon_id or principal.salon_id
        if salon_id != principal.salon_id:
            raise UnauthorizedError("Cannot create certificate for another salon")
        amount = to_amount(amount)

        for attempt in range(1, CODE_ALLOCATION_ATTEMPTS + 1):
            code = generate_code()
            with self.session_factory() as session:
                if session.scalar(select(GiftCertificate.id).where(GiftCertificate.code == code)):
                    logger.info("gift_certificate_code_collision", attempt=attempt)
                    continue
                certificate = GiftCertificate(
                    code=code,
                    salon_id=salon_id,
                    client_id=client_id,
                    balance=amount,
                    original_amount=amount,
                    expires_at=expires_at,
                )
                session.add(certificate)
                try:
                    session.commit()
                except IntegrityError:
                    # Lost the code to a concurrent creator between check and insert
                    session.rollback()
                    logger.info("gift_certificate_code_collision", attempt=attempt)
                    continue
                session.refresh(certificate)
                logger.info("gift_certificate_created", certificate_id=certificate.id,
                            salon_id=salon_id, amount=str(amount))
                return certificate

        logger.error("gift_certificate_code_allocation_exhausted", attempts=CODE_ALLOCATION_ATTEMPTS)
        raise CodeAllocationError("Failed to generate unique certificate code. Please try again.")

    def _find_by_code(self, session, code, salon_id, for_update=False):
        query = select(GiftCertificate).where(
            GiftCertificate.code == normalize_code(code),
            GiftCertificate.salon_id == salon_id,
        )
        if for_update:
            query = query.with_for_update()
        return session.scalars(query).first()

    def check_balance(self, code, salon_id):
        with self.session_factory() as session:
            certificate = self._find_by_code(session, code, salon_id)
            if certificate is None:
                raise CertificateNotFoundError()
            return BalanceCheck(
                certificate=certificate,
                is_expired=certificate.is_expired,
                is_exhausted=certificate.balance <= 0,
            )

    def redeem(self, code, amount, salon_id, payment_id=None):
        amount = to_amount(amount)

        for attempt in range(1, REDEEM_MAX_ATTEMPTS + 1):
            with self.session_factory() as session:
                certificate = self._find_by_code(session, code, salon_id, for_update=True)
                if certificate is None:
                    raise CertificateNotFoundError()
                if certificate.is_expired:
                    raise CertificateExpiredError()
                if certificate.balance <= 0:
                    raise CertificateExhaustedError()

                original_balance = certificate.balance
                applied = min(amount, original_balance)
                certificate.balance = original_balance - applied
                try:
                    session.commit()
                except StaleDataError:
                    session.rollback()
                    logger.info("gift_certificate_redeem_contended",
                                code=certificate.code, attempt=attempt)
                    continue

                redemption = Redemption(
                    certificate_id=certificate.id,
                    code=certificate.code,
                    amount_applied=applied,
                    remaining_balance=original_balance - applied,
                    original_balance=original_balance,
                )
                logger.info(
                    "gift_certificate_redeemed",
                    certificate_id=redemption.certificate_id,
                    payment_id=payment_id,
                    amount_applied=str(applied),
                    remaining_balance=str(redemption.remaining_balance),
                )
                return redemption

        raise ConflictError("Gift certificate is busy, please try again")

    def list(self, salon_id, client_id=None, has_balance=False, include_expired=False):
        query = select(GiftCertificate).where(GiftCertificate.salon_id == salon_id)
        if client_id:
            query = query.where(GiftCertificate.client_id == client_id)
        if has_balance:
            query = query.where(GiftCertificate.balance > 0)
        if not include_expired:
            query = query.where(or_(
                GiftCertificate.expires_at.is_(None),
                GiftCertificate.expires_at >= utcnow(),
            ))
        with self.session_factory() as session:
            return session.scalars(query.order_by(GiftCertificate.created_at.desc())).all()

    def get(self, certificate_id, salon_id):
        with self.session_factory() as session:
            certificate = session.scalars(
                select(GiftCertificate).where(
                    GiftCertificate.id == certificate_id,
                    GiftCertificate.salon_id == salon_id,
                )
            ).first()
        if certificate is None:
            raise CertificateNotFoundError()
        return certificate

    def void(self, certificate_id, principal, reason=None):
        """Force the balance to zero. Irreversible."""
        if principal.role != Role.OWNER:
            raise UnauthorizedError("Only salon owners can void gift certificates")

        for _ in range(REDEEM_MAX_ATTEMPTS):
            with self.session_factory() as session:
                certificate = session.scalars(
                    select(GiftCertificate)
                    .where(
                        GiftCertificate.id == certificate_id,
                        GiftCertificate.salon_id == principal.salon_id,
                    )
                    .with_for_update()
                ).first()
                if certificate is None:
                    raise CertificateNotFoundError()
                previous_balance = certificate.balance
                certificate.balance = Decimal("0.00")
                try:
                    session.commit()
                except StaleDataError:
                    session.rollback()
                    continue
                session.refresh(certificate)
                logger.warning(
                    "gift_certificate_voided",
                    certificate_id=certificate.id,
                    code=certificate.code,
                    previous_balance=str(previous_balance),
                    voided_by=principal.email,
                    reason=reason or "Not provided",
                )
                return certificate

        raise ConflictError("Gift certificate is busy, please try again")
