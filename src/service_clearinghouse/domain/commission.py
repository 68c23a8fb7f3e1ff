"""Platform commission arithmetic.

All money is ``Decimal``. Each derived field is rounded exactly once, half-up
to cents, so ``commission + net == gross`` holds for every two-decimal gross:

    commission = round(gross * rate, 2)
    net        = round(gross - commission, 2)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

DEFAULT_COMMISSION_RATE = Decimal("0.10")
CENTS = Decimal("0.01")


def to_money(value: Decimal | int | str | float) -> Decimal:
    """Quantize a value to cents, half-up. Floats go through ``str`` first."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionBreakdown:
    gross: Decimal
    commission: Decimal
    net: Decimal
    rate: Decimal


def calculate_commission(
    amount: Decimal | int | str,
    rate: Decimal = DEFAULT_COMMISSION_RATE,
) -> CommissionBreakdown:
    """Split a gross amount into the platform commission and the fulfiller's net.

    Raises:
        ValueError: if the amount is not positive or the rate is outside [0, 1).
    """
    gross = Decimal(amount)
    if gross <= 0:
        raise ValueError(f"Commission amount must be positive, got {gross}")
    if not Decimal(0) <= rate < Decimal(1):
        raise ValueError(f"Commission rate must be in [0, 1), got {rate}")

    commission = to_money(gross * rate)
    net = to_money(gross - commission)
    return CommissionBreakdown(gross=gross, commission=commission, net=net, rate=rate)
