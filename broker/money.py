#  Generation Broker - Fixed-Point Money
#
#  Balances, prices and ledger amounts are stored as integer units of 1e-8
#  and exposed as Decimal. No float arithmetic touches money.
#
#  Depends on: exceptions.py
#  Used by:    services/accounting.py, services/ledger.py, models/records.py

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from broker.exceptions import ValidationError

SCALE = 10 ** 8
_QUANTUM = Decimal("0.00000001")


def to_decimal(value) -> Decimal:
    """Coerce int/str/float/Decimal into an 8-digit Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary expansion.
    """
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, float):
        d = Decimal(str(value))
    else:
        try:
            d = Decimal(value)
        except (InvalidOperation, TypeError) as e:
            raise ValidationError(f"Not a valid amount: {value!r}") from e
    if not d.is_finite():
        raise ValidationError(f"Not a valid amount: {value!r}")
    try:
        return d.quantize(_QUANTUM, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as e:
        raise ValidationError(f"Amount out of range: {value!r}") from e


def to_units(value) -> int:
    """Decimal amount -> integer storage units."""
    return int(to_decimal(value) * SCALE)


def from_units(units: int | None) -> Decimal:
    """Integer storage units -> Decimal amount."""
    if units is None:
        return Decimal("0").quantize(_QUANTUM)
    return (Decimal(units) / SCALE).quantize(_QUANTUM)


def format_8(value) -> str:
    """'%.8f' rendering used in the ledger hash."""
    return f"{to_decimal(value):.8f}"


def format_2(value) -> str:
    """Two-decimal rendering used in CSV export."""
    return f"{to_decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_EVEN):.2f}"
