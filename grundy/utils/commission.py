from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

# Default fee schedule (overridable through PROCESSING_FEE_RATE,
# PROCESSING_FEE_FIXED and PLATFORM_FEE_RATE).
PLATFORM_FEE_RATE = Decimal("0.10")
PROCESSING_FEE_RATE = Decimal("0.015")
PROCESSING_FEE_FIXED = Decimal("100")

MINOR_PER_MAJOR = Decimal("100")


def to_decimal(value, default: str = "0") -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps the short repr (0.1 -> "0.1") instead of the binary expansion
        value = str(value)
    try:
        return Decimal(str(value if value is not None else default).strip() or default)
    except (InvalidOperation, ValueError):
        return Decimal(default)


def money_major_to_minor(amount, *, clamp: bool = True) -> int:
    minor = (to_decimal(amount) * MINOR_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    value = int(minor)
    if clamp and value < 0:
        return 0
    return value


def money_minor_to_major(minor) -> Decimal:
    try:
        parsed = Decimal(int(minor or 0))
    except (TypeError, ValueError, InvalidOperation):
        parsed = Decimal("0")
    return (parsed / MINOR_PER_MAJOR).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def money_json(value) -> str:
    """Decimal -> canonical string for JSON snapshots (no exponent, no float drift)."""
    dec = to_decimal(value)
    if dec == dec.to_integral_value():
        return str(dec.quantize(Decimal("1")))
    return format(dec.normalize(), "f")
