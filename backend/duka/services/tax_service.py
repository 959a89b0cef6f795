# Overview: VAT arithmetic for order lines.

"""
VAT calculator.

Rounding policy (applies everywhere money is computed):
- Amounts are integer cents; rates are integer basis points (1600 = 16%).
- Intermediate math uses Decimal, never float.
- Each line's VAT is rounded ONCE to whole cents, half-up.
- Order headers are exact integer sums of the rounded line values, so a
  header can always be re-added from its lines without drift.
- The header subtotal sums each line's value net of VAT. For VAT-inclusive
  lines that is subtotal - vat, so VAT is never counted twice in
  total = subtotal + vat - discount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

BPS_DENOMINATOR = Decimal(10000)


def round_cents(value: Decimal) -> int:
    """Nearest-cent rounding, half-up."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_vat(amount_cents: int, vat_rate_bps: int, inclusive: bool = False) -> int:
    """
    VAT on amount_cents.

    inclusive: the VAT already embedded in the amount, amount * rate / (100% + rate)
    exclusive: the VAT added on top, amount * rate / 100%
    """
    if vat_rate_bps < 0:
        raise ValueError("vat_rate_bps must be >= 0")
    if not vat_rate_bps or not amount_cents:
        return 0

    amount = Decimal(amount_cents)
    rate = Decimal(vat_rate_bps)
    if inclusive:
        return round_cents(amount * rate / (BPS_DENOMINATOR + rate))
    return round_cents(amount * rate / BPS_DENOMINATOR)


@dataclass(frozen=True)
class LineAmounts:
    subtotal_cents: int
    vat_amount_cents: int
    line_total_cents: int

    @property
    def net_cents(self) -> int:
        """Line value excluding VAT; what the order header accumulates as subtotal."""
        return self.line_total_cents - self.vat_amount_cents


def price_line(
    *,
    unit_price_cents: int,
    quantity: int,
    discount_amount_cents: int,
    vat_rate_bps: int,
    inclusive: bool,
) -> LineAmounts:
    """
    Price one line: subtotal = unit_price * quantity - discount, then VAT.

    For inclusive pricing the line total is the subtotal itself (VAT is
    already inside it); for exclusive pricing VAT is added on top.
    """
    subtotal = unit_price_cents * quantity - discount_amount_cents
    vat = calculate_vat(subtotal, vat_rate_bps, inclusive)
    total = subtotal if inclusive else subtotal + vat
    return LineAmounts(subtotal_cents=subtotal, vat_amount_cents=vat, line_total_cents=total)
