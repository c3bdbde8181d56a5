from __future__ import annotations

import logging
from decimal import Decimal
from fractions import Fraction
from typing import Any

import httpx

from flash_bot.amm_math import to_fixed, to_fraction
from flash_bot.config import OrderSourceSettings
from flash_bot.models import Order
from flash_bot.profitability import ProfitabilityEngine

LOGGER = logging.getLogger(__name__)

# Filling an order goes through a reactor contract and costs more than a flash-loan swap.
ORDER_FILL_GAS_LIMIT = 1_000_000
_NATIVE_DECIMALS = 18


class OrderSourceAdapter:
    """Polls an open-order API and decides whether filling an order pays.

    Profit is simulated by hedging the received input tokens into the
    owed output tokens through a price-quote API. Without an API key
    the adapter falls back to an optimistic fixed margin and assumes
    output amounts are 18-decimal, native-priced units.
    """

    def __init__(
        self,
        settings: OrderSourceSettings,
        engine: ProfitabilityEngine,
        chain_id: int,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._engine = engine
        self._chain_id = chain_id
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)

    @property
    def has_price_api(self) -> bool:
        return bool(self._settings.price_api_key)

    async def fetch_orders(self) -> list[Order]:
        try:
            response = await self._client.get(
                self._settings.order_api_url,
                params={"chainId": self._chain_id, "orderStatus": "open"},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("order fetch failed: %s", exc)
            return []

        raw_orders = payload.get("orders") if isinstance(payload, dict) else payload
        if not isinstance(raw_orders, list):
            return []

        orders: list[Order] = []
        for raw in raw_orders:
            order = self._parse_order(raw)
            if order is not None:
                orders.append(order)
        return orders

    @staticmethod
    def _leg(raw: Any) -> tuple[str, int] | None:
        if not isinstance(raw, dict):
            return None
        token = str(raw.get("token") or "").strip()
        amount = raw.get("amount", raw.get("startAmount"))
        if not token or amount is None:
            return None
        try:
            return token, int(amount)
        except (TypeError, ValueError):
            return None

    @classmethod
    def _parse_order(cls, raw: Any) -> Order | None:
        if not isinstance(raw, dict):
            return None
        order_hash = str(raw.get("orderHash") or raw.get("hash") or "").strip()
        if not order_hash:
            return None

        input_leg = cls._leg(raw.get("input"))
        output = raw.get("output")
        if output is None:
            outputs = raw.get("outputs")
            output = outputs[0] if isinstance(outputs, list) and outputs else None
        output_leg = cls._leg(output)
        if input_leg is None or output_leg is None:
            LOGGER.debug("skipping order %s with malformed legs", order_hash)
            return None

        return Order(
            hash=order_hash,
            input_token=input_leg[0],
            input_amount=input_leg[1],
            output_token=output_leg[0],
            output_amount=output_leg[1],
            reactor=str(raw.get("reactor") or ""),
            encoded_order=str(raw.get("encodedOrder") or ""),
        )

    async def quote(self, sell_token: str, buy_token: str, sell_amount: int) -> int | None:
        """Buy amount for selling `sell_amount` of `sell_token`, or None on failure."""
        try:
            response = await self._client.get(
                self._settings.price_api_url,
                params={"sellToken": sell_token, "buyToken": buy_token, "sellAmount": str(sell_amount)},
                headers={"0x-api-key": self._settings.price_api_key or ""},
            )
            response.raise_for_status()
            return int(response.json()["buyAmount"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("price quote %s->%s failed: %s", sell_token, buy_token, exc)
            return None

    def _is_native(self, token: str) -> bool:
        return token.lower() == self._settings.wrapped_native_token.lower()

    async def expected_profit(self, order: Order) -> Decimal | None:
        """Pre-gas profit in native units, or None when it cannot be priced."""
        if not self.has_price_api:
            surplus = Fraction(order.output_amount) * to_fraction(self._settings.optimistic_margin)
            return to_fixed(surplus / 10**_NATIVE_DECIMALS)

        hedge_out = await self.quote(order.input_token, order.output_token, order.input_amount)
        if hedge_out is None:
            return None
        surplus = hedge_out - order.output_amount
        if surplus <= 0:
            return Decimal(0)
        if not self._is_native(order.output_token):
            converted = await self.quote(order.output_token, self._settings.wrapped_native_token, surplus)
            if converted is None:
                return None
            surplus = converted
        return to_fixed(Fraction(surplus, 10**_NATIVE_DECIMALS))

    async def is_profitable(self, order: Order, gas_price: int) -> bool:
        profit = await self.expected_profit(order)
        if profit is None:
            return False
        net = profit - self._engine.gas_cost(gas_price, gas_limit=ORDER_FILL_GAS_LIMIT)
        LOGGER.debug("order %s profit=%s net=%s", order.hash, profit, net)
        return net > self._engine.settings.min_profit_threshold

    async def aclose(self) -> None:
        await self._client.aclose()
