# Overview: Fixed-point helpers for money (2 dp) and percentages (3 dp).

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
PERCENT_STEP = Decimal("0.001")
HUNDRED = Decimal("100")
# Numeric(16, 2) columns hold 14 integer digits
MONEY_LIMIT = Decimal("1e14")


def to_decimal(value, field: str = "amount") -> Decimal:
    """Parse ints, strings and Decimals. Floats, NaN and infinities are rejected."""
    if isinstance(value, Decimal):
        return _finite(value, field)
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a decimal string or integer", {"field": field})
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"{field} is not a valid decimal", {"field": field, "value": value})
        return _finite(parsed, field)
    if value is None:
        return ZERO
    raise ValidationError(f"{field} must be a decimal", {"field": field})


def _finite(value: Decimal, field: str) -> Decimal:
    if not value.is_finite():
        raise ValidationError(f"{field} must be a finite number", {"field": field, "value": str(value)})
    return value


def _quantize(value: Decimal, step: Decimal, field: str) -> Decimal:
    try:
        return value.quantize(step, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the context precision allows
        raise ValidationError(f"{field} is out of range", {"field": field, "value": str(value)})


def money(value) -> Decimal:
    """Quantize to 2 fractional digits, rounding half away from zero."""
    result = _quantize(to_decimal(value), CENT, "amount")
    if abs(result) >= MONEY_LIMIT:
        raise ValidationError("amount is out of range", {"field": "amount", "value": str(result)})
    return result


def percent(value) -> Decimal:
    return _quantize(to_decimal(value, "percent"), PERCENT_STEP, "percent")


def apply_percent(amount, pct) -> Decimal:
    """amount * pct / 100, rounded once at the end."""
    return money(to_decimal(amount) * to_decimal(pct, "percent") / HUNDRED)


def discounted_price(price, discount_pct) -> Decimal:
    """Per-line discounted unit price. Rounding happens here and nowhere upstream."""
    p = to_decimal(price, "price")
    d = to_decimal(discount_pct or 0, "discount_percent")
    return money(p * (HUNDRED - d) / HUNDRED)


def to_str(value) -> str | None:
    if value is None:
        return None
    return str(from_db(value))


def from_db(value) -> Decimal:
    """Normalize an aggregate read back from the database (SQLite may hand back floats)."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        return money(Decimal(repr(value)))
    return money(value)
