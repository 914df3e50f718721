import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("LOG_JSON", "false")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from settlement.audit import AuditLog
from settlement.auth import verify_token
from settlement.database import Base, make_engine
from settlement.gift_certificates import GiftCertificateLedger
from settlement.main import app as fastapi_app
from settlement.models import Appointment, GiftCertificate
from settlement.payments import PaymentOrchestrator
from settlement.processors import build_processors
from tests.principals import OWNER, SALON_ID


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads in the concurrency tests share one database
    engine = make_engine(f"sqlite:///{tmp_path / 'settlement_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def TestingSessionLocal(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def audit(TestingSessionLocal):
    return AuditLog(TestingSessionLocal)


@pytest.fixture
def ledger(TestingSessionLocal):
    return GiftCertificateLedger(TestingSessionLocal)


@pytest.fixture
def orchestrator(TestingSessionLocal, audit, ledger):
    return PaymentOrchestrator(TestingSessionLocal, audit, build_processors(audit, ledger))


@pytest.fixture
def make_appointment(TestingSessionLocal):
    def _make(amount_due="55.00", salon_id=SALON_ID, appointment_id=None):
        db = TestingSessionLocal()
        appointment = Appointment(salon_id=salon_id, amount_due=Decimal(amount_due))
        if appointment_id:
            appointment.id = appointment_id
        db.add(appointment)
        db.commit()
        appointment_id = appointment.id
        db.close()
        return appointment_id
    return _make


@pytest.fixture
def make_certificate(TestingSessionLocal):
    def _make(code="AB3D-7F2K-9Q4R", balance="40.00", original_amount=None,
              expires_at=None, salon_id=SALON_ID):
        db = TestingSessionLocal()
        certificate = GiftCertificate(
            code=code,
            salon_id=salon_id,
            balance=Decimal(balance),
            original_amount=Decimal(original_amount or balance),
            expires_at=expires_at,
        )
        db.add(certificate)
        db.commit()
        certificate_id = certificate.id
        db.close()
        return certificate_id
    return _make


@pytest.fixture
def principal():
    return OWNER


@pytest.fixture
def client(monkeypatch, TestingSessionLocal, principal):
    # Point the application at the test database
    monkeypatch.setattr("settlement.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("settlement.main.SessionLocal", TestingSessionLocal)

    # Bypass token verification; tests pick the acting principal
    fastapi_app.dependency_overrides[verify_token] = lambda: principal

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
