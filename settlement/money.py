from decimal import ROUND_HALF_UP, Decimal

from settlement.errors import ValidationError

CENTS = Decimal("0.01")


def to_amount(value):
    """Parse a positive two-decimal amount, raising ValidationError otherwise."""
    try:
        amount = Decimal(str(value)).quantize(CENTS)
        positive = amount > 0
    except ArithmeticError:
        raise ValidationError("Invalid payment amount")
    if not positive:
        raise ValidationError("Invalid payment amount")
    return amount


def to_cents(amount):
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents):
    return (Decimal(cents) / 100).quantize(CENTS)
