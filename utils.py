from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

CENT = Decimal("0.01")


def utcnow():
    """Naive UTC timestamp; every DateTime column in this app stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value, field_name="amount"):
    """Decimal conversion quantized to cents.

    Raises ValueError for None, unsupported types and unparsable strings.
    """
    if value is None:
        raise ValueError(f"{field_name} cannot be None")
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValueError(f"Invalid type for {field_name}: {type(value).__name__}")
    try:
        result = Decimal(str(value).strip()).quantize(CENT, ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Decimal conversion failed for {field_name}: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"{field_name} must be finite")
    return result
