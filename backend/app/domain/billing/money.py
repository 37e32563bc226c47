"""
Money math for invoice lines and invoice totals.

Pure functions over Decimal. Every derived value is rounded to cents,
half away from zero, at the step that produces it, so persisted line
values can be audited and re-summed on their own.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_TAX_RATE = Decimal("0.15")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert without rounding. Floats go through str to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round2(value: Number) -> Decimal:
    """Round to 2 decimal places, ties away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def resolve_tax_rate(item_rate: Optional[Number], invoice_rate: Optional[Number]) -> Decimal:
    """An item without its own rate inherits the invoice's, then the school default."""
    if item_rate is not None:
        return to_decimal(item_rate)
    if invoice_rate is not None:
        return to_decimal(invoice_rate)
    return DEFAULT_TAX_RATE


@dataclass(frozen=True)
class LineAmounts:
    amount: Decimal
    tax_amount: Decimal
    rate_inclusive: Decimal
    line_total: Decimal


def compute_line(quantity: Number, unit_price: Number, tax_rate: Number) -> LineAmounts:
    """
    Compute the derived money fields of one invoice line.

    amount         = round2(quantity * unit_price)
    tax_amount     = round2(amount * tax_rate)
    rate_inclusive = round2(unit_price * (1 + tax_rate))
    line_total     = round2(amount + tax_amount)
    """
    quantity = to_decimal(quantity)
    unit_price = to_decimal(unit_price)
    tax_rate = to_decimal(tax_rate)

    amount = round2(quantity * unit_price)
    tax_amount = round2(amount * tax_rate)
    rate_inclusive = round2(unit_price * (1 + tax_rate))
    line_total = round2(amount + tax_amount)
    return LineAmounts(amount, tax_amount, rate_inclusive, line_total)


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    tax_total: Decimal
    total_amount: Decimal


def compute_totals(lines: Iterable) -> InvoiceTotals:
    """
    Sum already-rounded line values. ``lines`` are objects exposing
    ``amount`` and ``tax_amount``; an empty iterable yields all zeros.
    """
    subtotal = ZERO
    tax_total = ZERO
    for line in lines:
        subtotal += to_decimal(line.amount)
        tax_total += to_decimal(line.tax_amount)
    subtotal = round2(subtotal)
    tax_total = round2(tax_total)
    return InvoiceTotals(subtotal, tax_total, round2(subtotal + tax_total))


def balance_due(total_amount: Number, total_paid: Number) -> Decimal:
    """max(0, total_amount - total_paid), rounded."""
    remaining = round2(to_decimal(total_amount or 0) - to_decimal(total_paid or 0))
    return remaining if remaining > ZERO else ZERO
