"""Whole-unit money arithmetic shared by invoice creation and the document codec."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .settings import AMOUNT_QUANTUM

HUNDRED = Decimal("100")


def to_decimal(value: Decimal | int | float | str | None) -> Decimal:
    """Convert to Decimal via ``str`` so floats never leak binary error."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Not a decimal amount: {value!r}") from e


def quantize_amount(value: Decimal | int | float | str | None) -> Decimal:
    """Round to the registry's whole-unit amount quantum."""
    return to_decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineAmounts:
    line_total: Decimal
    tax_amount: Decimal


def compute_line_amounts(
    quantity: Decimal | int | float | str,
    unit_price: Decimal | int | float | str,
    tax_rate: Decimal | int | float | str,
) -> LineAmounts:
    """``line_total = quantity * unit_price`` and ``tax = line_total * rate / 100``."""
    line_total = quantize_amount(to_decimal(quantity) * to_decimal(unit_price))
    tax_amount = quantize_amount(line_total * to_decimal(tax_rate) / HUNDRED)
    return LineAmounts(line_total=line_total, tax_amount=tax_amount)
