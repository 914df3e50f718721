import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from settlement.errors import (
    CertificateExhaustedError,
    CertificateExpiredError,
    CertificateNotFoundError,
    CodeAllocationError,
    UnauthorizedError,
    ValidationError,
)
from settlement.gift_certificates import CODE_ALPHABET, generate_code, normalize_code
from settlement.models import GiftCertificate
from tests.principals import CLIENT, OTHER_SALON_OWNER, OWNER, SALON_ID, STAFF

CODE_PATTERN = re.compile(rf"^[{CODE_ALPHABET}]{{4}}-[{CODE_ALPHABET}]{{4}}-[{CODE_ALPHABET}]{{4}}$")


def balance_of(TestingSessionLocal, certificate_id):
    db = TestingSessionLocal()
    balance = db.get(GiftCertificate, certificate_id).balance
    db.close()
    return balance


def test_generated_codes_use_unambiguous_alphabet():
    for _ in range(200):
        code = generate_code()
        assert CODE_PATTERN.match(code)
        assert not set(code) & set("01IO")


def test_normalize_code_strips_whitespace_and_uppercases():
    assert normalize_code(" ab3d-7f2k -9q4r\n") == "AB3D-7F2K-9Q4R"


def test_create_certificate(ledger):
    certificate = ledger.create(STAFF, "25.00", client_id="client-1")

    assert CODE_PATTERN.match(certificate.code)
    assert certificate.balance == Decimal("25.00")
    assert certificate.original_amount == Decimal("25.00")
    assert certificate.salon_id == SALON_ID
    assert certificate.client_id == "client-1"


def test_create_certificate_rejects_clients_and_other_salons(ledger):
    with pytest.raises(UnauthorizedError):
        ledger.create(CLIENT, "25.00")
    with pytest.raises(UnauthorizedError):
        ledger.create(OWNER, "25.00", salon_id=OTHER_SALON_OWNER.salon_id)


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
def test_create_certificate_rejects_bad_amount(ledger, amount):
    with pytest.raises(ValidationError):
        ledger.create(OWNER, amount)


def test_create_certificate_gives_up_after_bounded_collisions(ledger, make_certificate, mocker):
    make_certificate(code="AAAA-BBBB-CCCC")
    generator = mocker.patch("settlement.gift_certificates.generate_code",
                             return_value="AAAA-BBBB-CCCC")

    with pytest.raises(CodeAllocationError):
        ledger.create(OWNER, "10.00")
    assert generator.call_count == 10


def test_create_certificate_retries_past_a_collision(ledger, make_certificate, mocker):
    make_certificate(code="AAAA-BBBB-CCCC")
    mocker.patch("settlement.gift_certificates.generate_code",
                 side_effect=["AAAA-BBBB-CCCC", "DDDD-EEEE-FFFF"])

    certificate = ledger.create(OWNER, "10.00")
    assert certificate.code == "DDDD-EEEE-FFFF"


def test_redeem_less_than_balance(ledger, make_certificate, TestingSessionLocal):
    certificate_id = make_certificate(balance="40.00")

    redemption = ledger.redeem("AB3D-7F2K-9Q4R", "12.50", SALON_ID)

    assert redemption.amount_applied == Decimal("12.50")
    assert redemption.remaining_balance == Decimal("27.50")
    assert redemption.original_balance == Decimal("40.00")
    assert balance_of(TestingSessionLocal, certificate_id) == Decimal("27.50")


def test_redeem_more_than_balance_applies_whole_balance(ledger, make_certificate, TestingSessionLocal):
    certificate_id = make_certificate(balance="40.00")

    redemption = ledger.redeem("ab3d-7f2k-9q4r", "55.00", SALON_ID)

    assert redemption.amount_applied == Decimal("40.00")
    assert redemption.remaining_balance == Decimal("0.00")
    assert balance_of(TestingSessionLocal, certificate_id) == Decimal("0.00")


def test_redeem_expired_leaves_balance_unchanged(ledger, make_certificate, TestingSessionLocal):
    certificate_id = make_certificate(expires_at=datetime.now(timezone.utc) - timedelta(days=1))

    with pytest.raises(CertificateExpiredError):
        ledger.redeem("AB3D-7F2K-9Q4R", "10.00", SALON_ID)
    assert balance_of(TestingSessionLocal, certificate_id) == Decimal("40.00")


def test_redeem_exhausted(ledger, make_certificate, TestingSessionLocal):
    certificate_id = make_certificate(balance="0.00", original_amount="40.00")

    with pytest.raises(CertificateExhaustedError):
        ledger.redeem("AB3D-7F2K-9Q4R", "10.00", SALON_ID)
    assert balance_of(TestingSessionLocal, certificate_id) == Decimal("0.00")


def test_redeem_unknown_or_other_salon_code(ledger, make_certificate):
    make_certificate(salon_id="salon-2")

    with pytest.raises(CertificateNotFoundError):
        ledger.redeem("AB3D-7F2K-9Q4R", "10.00", SALON_ID)
    with pytest.raises(CertificateNotFoundError):
        ledger.redeem("ZZZZ-ZZZZ-ZZZZ", "10.00", "salon-2")


def test_redeem_rejects_non_positive_amount(ledger, make_certificate):
    make_certificate()
    with pytest.raises(ValidationError):
        ledger.redeem("AB3D-7F2K-9Q4R", "0", SALON_ID)


def test_concurrent_redemptions_never_overspend(ledger, make_certificate, TestingSessionLocal):
    certificate_id = make_certificate(balance="100.00")

    def redeem():
        try:
            return ledger.redeem("AB3D-7F2K-9Q4R", "15.00", SALON_ID)
        except CertificateExhaustedError as e:
            return e

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: redeem(), range(10)))

    redemptions = [r for r in results if not isinstance(r, Exception)]
    exhausted = [r for r in results if isinstance(r, CertificateExhaustedError)]

    assert sum(r.amount_applied for r in redemptions) == Decimal("100.00")
    assert sorted(r.amount_applied for r in redemptions) == [Decimal("10.00")] + [Decimal("15.00")] * 6
    assert len(exhausted) == 3
    assert balance_of(TestingSessionLocal, certificate_id) == Decimal("0.00")
    # Each success saw the balance left by the one before it
    remaining = sorted((r.remaining_balance for r in redemptions), reverse=True)
    assert remaining == [Decimal("85.00"), Decimal("70.00"), Decimal("55.00"),
                         Decimal("40.00"), Decimal("25.00"), Decimal("10.00"), Decimal("0.00")]


def test_check_balance_classifies_without_mutating(ledger, make_certificate, TestingSessionLocal):
    live_id = make_certificate(code="AAAA-AAAA-AAAA")
    make_certificate(code="BBBB-BBBB-BBBB", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))
    make_certificate(code="CCCC-CCCC-CCCC", balance="0.00", original_amount="20.00")

    live = ledger.check_balance("aaaa-aaaa-aaaa", SALON_ID)
    expired = ledger.check_balance("BBBB-BBBB-BBBB", SALON_ID)
    exhausted = ledger.check_balance("CCCC-CCCC-CCCC", SALON_ID)

    assert live.usable and live.certificate.balance == Decimal("40.00")
    assert expired.is_expired and not expired.usable
    assert exhausted.is_exhausted and not exhausted.usable
    assert balance_of(TestingSessionLocal, live_id) == Decimal("40.00")

    with pytest.raises(CertificateNotFoundError):
        ledger.check_balance("DDDD-DDDD-DDDD", SALON_ID)


def test_void_is_owner_only_and_irreversible(ledger, make_certificate, TestingSessionLocal):
    certificate_id = make_certificate()

    with pytest.raises(UnauthorizedError):
        ledger.void(certificate_id, STAFF)
    assert balance_of(TestingSessionLocal, certificate_id) == Decimal("40.00")

    voided = ledger.void(certificate_id, OWNER, reason="customer complaint")
    assert voided.balance == Decimal("0.00")
    assert voided.original_amount == Decimal("40.00")

    with pytest.raises(CertificateExhaustedError):
        ledger.redeem("AB3D-7F2K-9Q4R", "1.00", SALON_ID)


def test_void_other_salon_certificate_is_not_found(ledger, make_certificate):
    certificate_id = make_certificate()
    with pytest.raises(CertificateNotFoundError):
        ledger.void(certificate_id, OTHER_SALON_OWNER)


def test_list_filters(ledger, make_certificate):
    make_certificate(code="AAAA-AAAA-AAAA")
    make_certificate(code="BBBB-BBBB-BBBB", balance="0.00", original_amount="10.00")
    make_certificate(code="CCCC-CCCC-CCCC", expires_at=datetime.now(timezone.utc) - timedelta(days=2))
    make_certificate(code="DDDD-DDDD-DDDD", salon_id="salon-2")

    codes = lambda certificates: sorted(c.code for c in certificates)

    assert codes(ledger.list(SALON_ID)) == ["AAAA-AAAA-AAAA", "BBBB-BBBB-BBBB"]
    assert codes(ledger.list(SALON_ID, has_balance=True)) == ["AAAA-AAAA-AAAA"]
    assert codes(ledger.list(SALON_ID, include_expired=True)) == [
        "AAAA-AAAA-AAAA", "BBBB-BBBB-BBBB", "CCCC-CCCC-CCCC",
    ]


def test_get_is_tenant_scoped(ledger, make_certificate):
    certificate_id = make_certificate()
    assert ledger.get(certificate_id, SALON_ID).code == "AB3D-7F2K-9Q4R"
    with pytest.raises(CertificateNotFoundError):
        ledger.get(certificate_id, "salon-2")
