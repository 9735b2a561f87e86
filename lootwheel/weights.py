from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from lootwheel.errors import ValidationError


HUNDRED = Decimal('100')
CENT = Decimal('0.01')


def round_percent(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_percent(value) -> Decimal:
    """Parse a weight into a Decimal rounded to two places, rejecting anything outside 0-100."""
    try:
        percent = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Weight must be a number, got {value!r}.")
    if not percent.is_finite():
        raise ValidationError(f"Weight must be a finite number, got {value!r}.")
    if percent < 0 or percent > HUNDRED:
        raise ValidationError(f"Weight must be between 0 and 100, got {value}.")
    return round_percent(percent)


def to_amount(value, field_name="amount") -> float:
    """Parse a non-negative SOL amount."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}.")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}.")
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative, got {value}.")
    return float(amount)
