from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Optional

from core.errors import DataIntegrityError

ZERO = Decimal('0')
ONE = Decimal('1')
HUNDRED = Decimal('100')
CRYPTO_QTY_STEP = Decimal('0.00000001')


def to_decimal(value: Any, field: str = 'value') -> Decimal:
    """Convert a DB/JSON/YAML scalar to Decimal without passing through binary float math."""
    if value is None:
        raise DataIntegrityError(f"{field} is missing")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise DataIntegrityError(f"{field} is not numeric: {value!r}")
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise DataIntegrityError(f"{field} is not numeric: {value!r}") from exc
    if not result.is_finite():
        raise DataIntegrityError(f"{field} is not finite: {value!r}")
    return result


def optional_decimal(value: Any, field: str = 'value') -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return to_decimal(value, field)


def quantize_down(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).to_integral_value(rounding=ROUND_DOWN) * step


def format_qty(value: Decimal) -> str:
    return format(quantize_down(value, CRYPTO_QTY_STEP), 'f')


def pct(value: Decimal, places: int = 2) -> str:
    return f"{(value * HUNDRED):.{places}f}%"
