"""Integer money arithmetic for invoices.

All amounts are minor currency units held in ``int``. The only non-integer value
is the VAT rate, which is carried as a ``Decimal`` so rounding is exact and
reproducible. Nothing here touches the database.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, List, Tuple, Union

from tuitionbill.errors import InvalidAmount, ValidationError, require_non_negative

_HUNDRED = Decimal(100)

RateLike = Union[int, str, Decimal]


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal_minor: int
    tax_minor: int
    credit_offset_minor: int
    total_minor: int


def to_rate(value: RateLike) -> Decimal:
    """Normalise a VAT percentage (20, "20", Decimal("12.5")) to a Decimal in [0, 100]."""
    if isinstance(value, bool):
        raise ValidationError("vat_rate_percent must be a number", value=value)
    try:
        rate = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("vat_rate_percent must be a number", value=value)
    if not rate.is_finite() or rate < 0 or rate > _HUNDRED:
        raise ValidationError("vat_rate_percent must be between 0 and 100", value=str(value))
    return rate


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _pair(line) -> Tuple[int, int]:
    if isinstance(line, tuple):
        quantity, rate_minor = line
    else:
        quantity, rate_minor = line.quantity, line.rate_minor
    require_non_negative(quantity, "quantity")
    require_non_negative(rate_minor, "rate_minor")
    return quantity, rate_minor


def line_amount(quantity: int, rate_minor: int) -> int:
    return quantity * rate_minor


def compute_tax(subtotal_minor: int, vat_enabled: bool, vat_rate_percent: RateLike) -> int:
    if not vat_enabled:
        return 0
    rate = to_rate(vat_rate_percent)
    return round_half_up(Decimal(subtotal_minor) * rate / _HUNDRED)


def compute_invoice(
    lines: Iterable,
    vat_enabled: bool,
    vat_rate_percent: RateLike,
    credit_offset_minor: int = 0,
) -> InvoiceTotals:
    """
    Subtotal, tax and total for a set of (quantity, rate_minor) lines.

    Tax is round-half-up to the nearest minor unit (9999 at 20% → 2000).
    The total is floored at zero; credit beyond the gross amount is dropped,
    never carried forward here.
    """
    require_non_negative(credit_offset_minor, "credit_offset_minor")
    subtotal = 0
    for line in lines:
        quantity, rate_minor = _pair(line)
        subtotal += line_amount(quantity, rate_minor)
    tax = compute_tax(subtotal, vat_enabled, vat_rate_percent)
    total = max(0, subtotal + tax - credit_offset_minor)
    return InvoiceTotals(
        subtotal_minor=subtotal,
        tax_minor=tax,
        credit_offset_minor=credit_offset_minor,
        total_minor=total,
    )


def split_evenly(total_minor: int, count: int) -> List[int]:
    """Near-equal parts; the integer-division remainder goes on the last part."""
    require_non_negative(total_minor, "total_minor")
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise InvalidAmount("installment count must be a positive integer", value=count)
    base = total_minor // count
    parts = [base] * count
    parts[-1] = total_minor - base * (count - 1)
    return parts


def format_minor(amount_minor: int, currency_code: str = "GBP") -> str:
    sign = "-" if amount_minor < 0 else ""
    major, minor = divmod(abs(int(amount_minor)), 100)
    return f"{sign}{currency_code} {major}.{minor:02d}"
