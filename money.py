from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation

from errors import InvalidAmount

# all ledger amounts are integer minor units (paise, cents, ...)
MINOR_UNITS = 100
MINOR_EXPONENT = Decimal("0.01")


def to_minor(amount) -> int:
    """
    convert a major-unit amount (Decimal, str or int) into integer minor units.
    rounds half-even to 2 dp. floats are refused, they already lost precision.
    """
    if isinstance(amount, float):
        raise InvalidAmount("amounts must be given as decimal strings, not floats")
    try:
        major = Decimal(amount)
    except (InvalidOperation, TypeError):
        raise InvalidAmount(f"invalid amount: {amount!r}")
    if not major.is_finite():
        raise InvalidAmount(f"invalid amount: {amount!r}")
    major = major.quantize(MINOR_EXPONENT, rounding=ROUND_HALF_EVEN)
    return int(major * MINOR_UNITS)


def to_major(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNITS).quantize(MINOR_EXPONENT)


def fmt(amount_minor: int) -> str:
    """render minor units as a fixed 2-dp string for JSON."""
    return f"{to_major(amount_minor):.2f}"


def apply_share(amount_minor: int, share) -> int:
    """amount x share, rounded half-even to a whole minor unit."""
    value = Decimal(amount_minor) * Decimal(str(share))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def require_positive(amount_minor: int) -> int:
    if amount_minor is None or amount_minor <= 0:
        raise InvalidAmount("amount must be greater than zero")
    return amount_minor
