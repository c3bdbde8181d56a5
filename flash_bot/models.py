from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Union

WAD = 10**18


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Opportunity:
    """A liquidatable position found by the periodic scan.

    All monetary fields are fixed-point decimals at 18 places. The
    timestamp is stamped once at creation and is the only input to
    staleness checks.
    """

    account_id: str
    health_metric: Decimal
    debt_asset: str
    collateral_asset: str
    debt_amount: Decimal
    liquidation_bonus: Decimal = Decimal(0)
    timestamp_ms: int = field(default_factory=now_ms)

    @property
    def buy_price(self) -> Decimal:
        return Decimal(1)

    @property
    def sell_price(self) -> Decimal:
        # Repaying one unit of debt releases (1 + bonus) units of collateral value.
        return Decimal(1) + self.liquidation_bonus


@dataclass(frozen=True)
class PriceSpread:
    """A raw two-venue price gap: buy on one venue, sell on the other."""

    buy_venue: str
    sell_venue: str
    buy_price: Decimal
    sell_price: Decimal
    timestamp_ms: int = field(default_factory=now_ms)


Candidate = Union[Opportunity, PriceSpread]


@dataclass(frozen=True)
class ReservePair:
    reserve_in: Decimal
    reserve_out: Decimal


@dataclass(frozen=True)
class VenueReserves:
    """Reserves for both legs: the buy leg is traded first, then the sell leg."""

    buy: ReservePair
    sell: ReservePair


@dataclass(frozen=True)
class ProfitBreakdown:
    gross_profit: Decimal
    fee_amount: Decimal
    gas_cost: Decimal
    net_profit: Decimal
    profit_percentage: Decimal


@dataclass(frozen=True)
class PriceImpact:
    price_impact_pct: Decimal
    execution_price: Decimal
    expected_output: Decimal


@dataclass(frozen=True)
class ScoredOpportunity:
    candidate: Candidate
    breakdown: ProfitBreakdown
    score: float
    trade_amount: Decimal
    gas_price: int
    evaluated_at_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class AccountData:
    """The six-field solvency tuple returned by the lending pool."""

    total_collateral_base: int
    total_debt_base: int
    available_borrows_base: int
    current_liquidation_threshold: int
    ltv: int
    health_factor: int

    @property
    def health_metric(self) -> Decimal:
        return Decimal(f"{self.health_factor}E-18")

    @property
    def is_liquidatable(self) -> bool:
        return self.health_factor < WAD


@dataclass(frozen=True)
class UserReserve:
    asset: str
    symbol: str
    decimals: int
    collateral_balance: int
    stable_debt: int
    variable_debt: int
    usage_as_collateral_enabled: bool

    @property
    def total_debt(self) -> int:
        return self.stable_debt + self.variable_debt


@dataclass(frozen=True)
class Order:
    hash: str
    input_token: str
    input_amount: int
    output_token: str
    output_amount: int
    reactor: str
    encoded_order: str
