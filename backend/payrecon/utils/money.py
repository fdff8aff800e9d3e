from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def to_decimal(value) -> Decimal:
    """Lenient amount coercion; anything unparseable or non-finite becomes 0."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        out = value
    else:
        try:
            out = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return Decimal("0")
    if not out.is_finite():
        return Decimal("0")
    return out


def whole_units(value) -> int:
    # KRW has no minor unit; the provider rejects fractional amounts.
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
