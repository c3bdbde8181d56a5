"""Deterministic profitability scoring for liquidations and price spreads.

Pure functions over immutable inputs: nothing here performs I/O or keeps
state between calls. Monetary results are 18-place fixed-point decimals
in units of the traded asset; gas is converted into the same unit
assuming the trade asset is the chain's native (or wrapped native) token.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from fractions import Fraction

from flash_bot.amm_math import (
    Number,
    compute_amount_out,
    estimate_price_impact,
    estimate_slippage,
    to_fixed,
    to_fraction,
)
from flash_bot.config import ProfitabilitySettings
from flash_bot.models import (
    Candidate,
    PriceImpact,
    ProfitBreakdown,
    ReservePair,
    ScoredOpportunity,
    VenueReserves,
    now_ms,
)

LOGGER = logging.getLogger(__name__)

GAS_LIMIT_ESTIMATE = 500_000
LIQUIDITY_UTILIZATION = Fraction(8, 10)
WEI_PER_GWEI = 10**9
_WEI_PER_NATIVE = 10**18


class ProfitabilityEngine:
    def __init__(self, settings: ProfitabilitySettings) -> None:
        self._settings = settings
        self._dex_fee = to_fraction(settings.dex_fee)
        self._flashloan_fee = to_fraction(settings.flashloan_fee)

    @property
    def settings(self) -> ProfitabilitySettings:
        return self._settings

    def gas_cost(self, gas_price: int, gas_limit: int = GAS_LIMIT_ESTIMATE) -> Decimal:
        """Gas price (wei) times the gas limit, in native units."""
        return to_fixed(self._gas_cost_exact(gas_price, gas_limit))

    @staticmethod
    def _gas_cost_exact(gas_price: int, gas_limit: int = GAS_LIMIT_ESTIMATE) -> Fraction:
        if gas_price < 0:
            raise ValueError("gas_price must be non-negative")
        return Fraction(int(gas_price) * gas_limit, _WEI_PER_NATIVE)

    def gas_price_within_limit(self, gas_price: int) -> bool:
        return gas_price <= self._settings.max_gas_price_gwei * WEI_PER_GWEI

    def _final_amount(
        self,
        candidate: Candidate,
        amount: Fraction,
        reserves: VenueReserves | None,
    ) -> Fraction:
        if reserves is not None:
            # Each leg truncates at the fixed scale, as the pools would.
            bought = compute_amount_out(amount, reserves.buy.reserve_in, reserves.buy.reserve_out)
            sold = compute_amount_out(bought, reserves.sell.reserve_in, reserves.sell.reserve_out)
            return to_fraction(sold)

        buy_price = to_fraction(candidate.buy_price)
        sell_price = to_fraction(candidate.sell_price)
        if buy_price <= 0 or sell_price <= 0:
            raise ValueError("price-ratio approximation needs positive buy and sell prices")
        keep = 1 - self._dex_fee
        buy_amount = amount * keep
        sell_amount = buy_amount * sell_price / buy_price
        return sell_amount * keep

    def _gross_and_fee(
        self,
        candidate: Candidate,
        trade_amount: Number,
        reserves: VenueReserves | None,
    ) -> tuple[Fraction, Fraction, Fraction]:
        amount = to_fraction(trade_amount)
        if amount <= 0:
            raise ValueError("trade_amount must be positive")
        final_amount = self._final_amount(candidate, amount, reserves)
        gross = final_amount - amount
        fee = amount * self._flashloan_fee
        return amount, gross, fee

    def calculate_profit(
        self,
        candidate: Candidate,
        trade_amount: Number,
        gas_price: int,
        reserves: VenueReserves | None = None,
    ) -> ProfitBreakdown:
        amount, gross, fee = self._gross_and_fee(candidate, trade_amount, reserves)
        gas = self._gas_cost_exact(gas_price)
        net = gross - fee - gas
        return ProfitBreakdown(
            gross_profit=to_fixed(gross),
            fee_amount=to_fixed(fee),
            gas_cost=to_fixed(gas),
            net_profit=to_fixed(net),
            profit_percentage=to_fixed(net / amount * 100),
        )

    def meets_threshold(self, breakdown: ProfitBreakdown) -> bool:
        return breakdown.net_profit > self._settings.min_profit_threshold

    def is_profitable(
        self,
        candidate: Candidate,
        gas_price: int,
        reserves: VenueReserves | None = None,
        trade_amount: Number | None = None,
    ) -> bool:
        amount = self._settings.max_trade_size if trade_amount is None else trade_amount
        breakdown = self.calculate_profit(candidate, amount, gas_price, reserves)
        LOGGER.debug(
            "profit gross=%s fee=%s gas=%s net=%s pct=%s",
            breakdown.gross_profit,
            breakdown.fee_amount,
            breakdown.gas_cost,
            breakdown.net_profit,
            breakdown.profit_percentage,
        )
        return self.meets_threshold(breakdown)

    def calculate_optimal_trade_size(self, available_liquidity: Number) -> Decimal:
        """Caps the trade at 80% of visible liquidity and at max_trade_size.

        A slippage-bounding heuristic, not an optimizer: it does not
        search for the size that maximizes net profit.
        """
        liquidity = to_fraction(available_liquidity)
        if liquidity < 0:
            raise ValueError("available_liquidity must be non-negative")
        return to_fixed(min(to_fraction(self._settings.max_trade_size), liquidity * LIQUIDITY_UTILIZATION))

    def estimate_price_impact(self, trade_amount: Number, reserve_in: Number, reserve_out: Number) -> PriceImpact:
        return estimate_price_impact(trade_amount, reserve_in, reserve_out)

    def estimate_slippage(self, trade_amount: Number, liquidity: Number) -> Decimal:
        return estimate_slippage(trade_amount, liquidity)

    def within_slippage(self, trade_amount: Number, pair: ReservePair) -> bool:
        impact = self.estimate_price_impact(trade_amount, pair.reserve_in, pair.reserve_out)
        return impact.price_impact_pct <= self._settings.slippage_tolerance_pct

    def calculate_break_even_gas_price(
        self,
        candidate: Candidate,
        trade_amount: Number,
        reserves: VenueReserves | None = None,
    ) -> int:
        """Gas price (wei) at which the pre-gas profit is fully consumed.

        Returns 0 when the trade loses money before gas.
        """
        _, gross, fee = self._gross_and_fee(candidate, trade_amount, reserves)
        pre_gas = gross - fee
        if pre_gas <= 0:
            return 0
        return int(pre_gas * _WEI_PER_NATIVE / GAS_LIMIT_ESTIMATE)

    def is_opportunity_valid(
        self,
        candidate: Candidate,
        max_age_ms: int | None = None,
        now: int | None = None,
    ) -> bool:
        """False once the candidate is max_age_ms old or older.

        Evaluation and execution are not atomic, so every consumer
        re-checks this immediately before acting.
        """
        limit = self._settings.max_opportunity_age_ms if max_age_ms is None else max_age_ms
        current = now_ms() if now is None else now
        return current - candidate.timestamp_ms < limit

    @staticmethod
    def score_breakdown(breakdown: ProfitBreakdown) -> float:
        # Ad-hoc ranking, not a probability.
        profit_score = min(float(breakdown.profit_percentage) * 10, 50.0)
        amount_score = min(float(breakdown.net_profit) * 10, 50.0)
        return profit_score + amount_score

    def get_profitability_score(
        self,
        candidate: Candidate,
        gas_price: int,
        reserves: VenueReserves | None = None,
        trade_amount: Number | None = None,
    ) -> float:
        amount = self._settings.max_trade_size if trade_amount is None else trade_amount
        return self.score_breakdown(self.calculate_profit(candidate, amount, gas_price, reserves))

    def evaluate(
        self,
        candidate: Candidate,
        gas_price: int,
        reserves: VenueReserves | None = None,
        trade_amount: Number | None = None,
    ) -> ScoredOpportunity:
        amount = to_fixed(self._settings.max_trade_size if trade_amount is None else trade_amount)
        breakdown = self.calculate_profit(candidate, amount, gas_price, reserves)
        return ScoredOpportunity(
            candidate=candidate,
            breakdown=breakdown,
            score=self.score_breakdown(breakdown),
            trade_amount=amount,
            gas_price=gas_price,
        )
