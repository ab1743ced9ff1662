
# app/payments/fees.py
from __future__ import annotations

import math
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP

# Card pricing assumption: 2.9% + 30c per successful charge.
DEFAULT_FEE_RATE = Decimal("0.029")
DEFAULT_FIXED_CENTS = 30


def _as_decimal(value: int | float | Decimal) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, Decimal) and not value.is_finite():
        return None
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError, TypeError):
        return None


def calc_processing_fee_cents(
    share_cents: int | float,
    *,
    rate: int | float | Decimal = DEFAULT_FEE_RATE,
    fixed_cents: int = DEFAULT_FIXED_CENTS,
) -> int:
    """
    Gross-up fee so that:
      - the payer is charged share + fee
      - the processor takes rate * total + fixed out of the total
      - the full share is still transferable to the payee

    total >= (share + fixed) / (1 - rate), rounded up to the next whole cent.
    Non-positive or non-finite shares have no fee.
    """
    share = _as_decimal(share_cents)
    if share is None or share <= 0:
        return 0

    r = _as_decimal(rate)
    if r is None or r < 0 or r >= 1:
        raise ValueError(f"fee rate must be in [0, 1): {rate!r}")

    total = ((share + Decimal(int(fixed_cents))) / (Decimal(1) - r)).to_integral_value(rounding=ROUND_CEILING)
    fee = int(total - share.to_integral_value(rounding=ROUND_CEILING))
    return max(fee, 0)


def dollars_to_cents(amount: int | float | Decimal | None) -> int:
    """
    Shares are stored as decimal dollars. Round half-up to cents, clamp at 0.
    """
    if amount is None:
        return 0
    value = _as_decimal(amount)
    if value is None:
        return 0
    cents = (value * 100).to_integral_value(rounding=ROUND_HALF_UP)
    return max(0, int(cents))
