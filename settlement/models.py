import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
    update,
)

from settlement.database import Base
from settlement.errors import IllegalTransitionError


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id():
    return uuid.uuid4().hex


class PaymentMethod(str, enum.Enum):
    GIFT_CERTIFICATE = "GIFT_CERTIFICATE"
    CARD = "CARD"
    CASH = "CASH"
    OTHER = "OTHER"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Role(str, enum.Enum):
    OWNER = "OWNER"
    STAFF = "STAFF"
    CLIENT = "CLIENT"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
}


def can_transition(current, target):
    return PaymentStatus(target) in PAYMENT_TRANSITIONS.get(PaymentStatus(current), set())


def ensure_transition(current, target):
    if not can_transition(current, target):
        raise IllegalTransitionError(f"Illegal payment transition {current} -> {target}")


class Appointment(Base):
    """Owned by scheduling; this service only reads it."""

    __tablename__ = "appointments"

    id = Column(String, primary_key=True, default=new_id)
    salon_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=True)
    amount_due = Column(Numeric(10, 2), nullable=False)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=new_id)
    appointment_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    amount_applied = Column(Numeric(10, 2), nullable=True)
    method = Column(Enum(PaymentMethod, native_enum=False), nullable=False)
    status = Column(Enum(PaymentStatus, native_enum=False), nullable=False,
                    default=PaymentStatus.PENDING, index=True)
    external_reference = Column(String, unique=True, nullable=True)  # Stripe PaymentIntent ID
    meta = Column("metadata", JSON, nullable=False, default=dict)
    installment = Column(Integer, nullable=False, default=0)
    retry_attempt = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # One row per attempt of each installment; concurrent duplicates collide here
        UniqueConstraint("appointment_id", "installment", "retry_attempt",
                         name="uq_payment_attempt"),
        # At most one live (non-FAILED) attempt per installment
        Index("uq_payment_live_installment", "appointment_id", "installment", unique=True,
              sqlite_where=text("status != 'FAILED'"),
              postgresql_where=text("status != 'FAILED'")),
        CheckConstraint("amount > 0", name="positive_amount"),
    )


class PaymentAuditLog(Base):
    """Insert-only; go through settlement.audit.AuditLog."""

    __tablename__ = "payment_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class GiftCertificate(Base):
    __tablename__ = "gift_certificates"

    id = Column(String, primary_key=True, default=new_id)
    code = Column(String, unique=True, nullable=False, index=True)
    salon_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=True, index=True)
    balance = Column(Numeric(10, 2), nullable=False)
    original_amount = Column(Numeric(10, 2), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("balance >= 0", name="non_negative_balance"),
        CheckConstraint("balance <= original_amount", name="balance_within_original"),
        CheckConstraint("original_amount > 0", name="positive_original_amount"),
        Index("ix_gift_certificates_salon_client", "salon_id", "client_id"),
    )

    @property
    def is_expired(self):
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and expires_at < utcnow()


def transition_payment(session, payment, target, meta=None, **values):
    """Move ``payment`` to ``target`` only if its status is still what we read.

    Returns False when another writer changed the status first. The caller
    owns the commit.
    """
    current = PaymentStatus(payment.status)
    ensure_transition(current, target)
    merged = {**(payment.meta or {}), **(meta or {})}
    result = session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == current)
        .values({
            Payment.status: PaymentStatus(target),
            Payment.meta: merged,
            Payment.updated_at: utcnow(),
            **{getattr(Payment, key): value for key, value in values.items()},
        })
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
