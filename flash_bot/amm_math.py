"""Fixed-point helpers and constant-product (x*y=k) pool math.

Every quantity is carried as an exact ``Fraction`` internally and
surfaced as a ``Decimal`` truncated toward zero at 18 decimal places,
which is what on-chain integer arithmetic on wad-scaled values yields.
Floats are rejected outright.
"""

from __future__ import annotations

from decimal import Decimal
from fractions import Fraction
from typing import Union

from flash_bot.models import PriceImpact

SCALE = 18
_ONE = 10**SCALE

FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000

Number = Union[int, Decimal, Fraction, str]


def to_fraction(value: Number) -> Fraction:
    if isinstance(value, Fraction):
        return value
    if isinstance(value, float):
        raise TypeError("floating point amounts are not accepted; pass int, Decimal or str")
    return Fraction(value)


def to_fixed(value: Number) -> Decimal:
    """Truncates toward zero at the fixed scale."""
    frac = to_fraction(value)
    scaled = abs(frac.numerator) * _ONE // frac.denominator
    sign = "-" if frac < 0 and scaled else ""
    return Decimal(f"{sign}{scaled}E-{SCALE}")


def from_base_units(amount: int, decimals: int) -> Decimal:
    """Converts a raw token amount (e.g. wei) into token units."""
    return to_fixed(Fraction(int(amount), 10**decimals))


def to_base_units(amount: Number, decimals: int = SCALE) -> int:
    frac = to_fraction(amount) * 10**decimals
    return int(frac)


def amount_out_exact(amount_in: Number, reserve_in: Number, reserve_out: Number) -> Fraction:
    a_in = to_fraction(amount_in)
    r_in = to_fraction(reserve_in)
    r_out = to_fraction(reserve_out)
    if a_in < 0:
        raise ValueError("amount_in must be non-negative")
    if r_in <= 0 or r_out <= 0:
        raise ValueError("reserves must be positive")

    amount_in_with_fee = a_in * FEE_NUMERATOR
    numerator = amount_in_with_fee * r_out
    denominator = r_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator / denominator


def compute_amount_out(amount_in: Number, reserve_in: Number, reserve_out: Number) -> Decimal:
    """amountOut = amountIn*997*reserveOut / (reserveIn*1000 + amountIn*997)."""
    return to_fixed(amount_out_exact(amount_in, reserve_in, reserve_out))


def estimate_price_impact(trade_amount: Number, reserve_in: Number, reserve_out: Number) -> PriceImpact:
    """Execution price vs. pre-trade spot price, as a percentage of spot.

    The 0.3% pool fee is part of the execution price, so even a dust
    trade reports roughly 0.3% impact.
    """
    amount_in = to_fraction(trade_amount)
    if amount_in <= 0:
        raise ValueError("trade_amount must be positive")
    amount_out = amount_out_exact(amount_in, reserve_in, reserve_out)

    execution_price = amount_out / amount_in
    spot_price = to_fraction(reserve_out) / to_fraction(reserve_in)
    impact = (spot_price - execution_price) / spot_price * 100

    return PriceImpact(
        price_impact_pct=to_fixed(impact),
        execution_price=to_fixed(execution_price),
        expected_output=to_fixed(amount_out),
    )


def estimate_slippage(trade_amount: Number, liquidity: Number) -> Decimal:
    """Linear slippage estimate: trade size as a percentage of liquidity."""
    liq = to_fraction(liquidity)
    if liq <= 0:
        raise ValueError("liquidity must be positive")
    return to_fixed(to_fraction(trade_amount) / liq * 100)
