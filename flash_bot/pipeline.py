"""Wires connection, aggregator and profitability engine into one loop.

Scanning is timer-driven at ``check_interval_ms``, never per event, so
that account reads are batched. Eviction runs on its own, slower timer.
Scored candidates are re-checked for staleness right before they are
published to ``outbox``; the execution layer must check again before
acting since nothing here is atomic with execution.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal

from flash_bot.aggregator import AccountAggregator
from flash_bot.config import AppSettings
from flash_bot.connection import ConnectionManager, ReconnectPolicy
from flash_bot.errors import QueryError, TransportError
from flash_bot.models import Candidate, Opportunity, Order, ScoredOpportunity, VenueReserves
from flash_bot.order_source import OrderSourceAdapter
from flash_bot.profitability import ProfitabilityEngine
from flash_bot.rpc import ABNORMAL_CLOSURE, ChainConnection

LOGGER = logging.getLogger(__name__)

OUTBOX_SIZE = 256

ReserveSource = Callable[[Candidate], Awaitable[VenueReserves | None]]


def _put_dropping_oldest(queue: asyncio.Queue, item: object) -> None:
    if queue.full():
        queue.get_nowait()
        LOGGER.warning("outbox full, dropped oldest entry")
    queue.put_nowait(item)


class OpportunityPipeline:
    def __init__(
        self,
        settings: AppSettings,
        manager: ConnectionManager | None = None,
        aggregator: AccountAggregator | None = None,
        engine: ProfitabilityEngine | None = None,
        order_source: OrderSourceAdapter | None = None,
        reserve_source: ReserveSource | None = None,
    ) -> None:
        self._settings = settings
        self._manager = manager or ConnectionManager(
            settings.network,
            policy=ReconnectPolicy.from_settings(settings.reconnect),
        )
        self._aggregator = aggregator or AccountAggregator(settings.aggregator, settings.network.chain_id)
        self._engine = engine or ProfitabilityEngine(settings.profitability)
        if order_source is None and settings.order_source.enabled:
            order_source = OrderSourceAdapter(settings.order_source, self._engine, settings.network.chain_id)
        self._order_source = order_source
        self._reserve_source = reserve_source
        self.outbox: asyncio.Queue[ScoredOpportunity] = asyncio.Queue(maxsize=OUTBOX_SIZE)
        self.order_outbox: asyncio.Queue[Order] = asyncio.Queue(maxsize=OUTBOX_SIZE)
        self._tasks: list[asyncio.Task[None]] = []
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    @property
    def aggregator(self) -> AccountAggregator:
        return self._aggregator

    @property
    def engine(self) -> ProfitabilityEngine:
        return self._engine

    async def start(self, timers: bool = True) -> None:
        self._unsubscribe = self._manager.on_reconnected(self._on_fresh_handle)
        try:
            handle = await self._manager.connect()
        except TransportError as exc:
            LOGGER.error("initial connect failed: %s", exc)
            self._manager.on_disconnect(ABNORMAL_CLOSURE)
        else:
            try:
                await self._aggregator.start_monitoring(handle)
            except TransportError as exc:
                LOGGER.error("initial subscribe failed: %s", exc)
                self._manager.on_disconnect(exc.code or ABNORMAL_CLOSURE)

        if not timers:
            return
        self._tasks = [
            asyncio.create_task(self._scan_loop()),
            asyncio.create_task(self._eviction_loop()),
        ]
        if self._order_source is not None:
            self._tasks.append(asyncio.create_task(self._order_loop()))

    async def _on_fresh_handle(self, handle: ChainConnection) -> None:
        LOGGER.info("refreshing subscriptions after reconnect")
        await self._aggregator.start_monitoring(handle)

    async def run(self) -> None:
        """Runs until the connection manager gives up, then raises ExhaustedRetries."""
        try:
            await self.start()
            await self._manager.wait_fatal()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._aggregator.stop_monitoring()
        await self._manager.close()
        if self._order_source is not None:
            await self._order_source.aclose()

    async def _current_gas_price(self) -> int | None:
        handle = self._manager.handle
        if handle is None or not handle.is_valid:
            return None
        try:
            return await handle.gas_price()
        except (QueryError, TransportError) as exc:
            LOGGER.warning("gas price unavailable: %s", exc)
            return None

    def _trade_amount(self, candidate: Candidate) -> Decimal:
        max_size = self._settings.profitability.max_trade_size
        if isinstance(candidate, Opportunity):
            return min(candidate.debt_amount, max_size)
        return max_size

    async def score(self, candidates: list[Candidate], gas_price: int) -> list[ScoredOpportunity]:
        """Scores candidates best-first and publishes the profitable, still-fresh ones."""
        if not self._engine.gas_price_within_limit(gas_price):
            LOGGER.info("gas price %d wei above ceiling, skipping %d candidates", gas_price, len(candidates))
            return []

        scored: list[ScoredOpportunity] = []
        for candidate in candidates:
            if not self._engine.is_opportunity_valid(candidate):
                continue
            trade_amount = self._trade_amount(candidate)
            if trade_amount <= 0:
                continue

            reserves = None
            if self._reserve_source is not None:
                reserves = await self._reserve_source(candidate)
                if reserves is not None and not self._engine.within_slippage(trade_amount, reserves.buy):
                    LOGGER.debug("price impact above tolerance for %s", candidate)
                    continue

            try:
                result = self._engine.evaluate(candidate, gas_price, reserves=reserves, trade_amount=trade_amount)
            except ValueError as exc:
                LOGGER.warning("cannot score %s: %s", candidate, exc)
                continue
            if self._engine.meets_threshold(result.breakdown):
                scored.append(result)

        scored.sort(key=lambda item: item.score, reverse=True)
        published: list[ScoredOpportunity] = []
        for item in scored:
            if not self._engine.is_opportunity_valid(item.candidate):
                continue
            _put_dropping_oldest(self.outbox, item)
            published.append(item)
        if published:
            LOGGER.info("published %d opportunities (best score %.2f)", len(published), published[0].score)
        return published

    async def run_cycle(self) -> list[ScoredOpportunity]:
        opportunities = await self._aggregator.scan_for_opportunities()
        if not opportunities:
            return []
        gas_price = await self._current_gas_price()
        if gas_price is None:
            return []
        return await self.score(list(opportunities), gas_price)

    async def run_order_cycle(self) -> list[Order]:
        if self._order_source is None:
            return []
        orders = await self._order_source.fetch_orders()
        if not orders:
            return []
        gas_price = await self._current_gas_price()
        if gas_price is None or not self._engine.gas_price_within_limit(gas_price):
            return []
        fillable: list[Order] = []
        for order in orders:
            if await self._order_source.is_profitable(order, gas_price):
                _put_dropping_oldest(self.order_outbox, order)
                fillable.append(order)
        return fillable

    async def _every(self, interval_seconds: float, step: Callable[[], Awaitable[object]], name: str) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("%s cycle failed", name)
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, interval_seconds - elapsed))

    async def _scan_loop(self) -> None:
        await self._every(self._settings.profitability.check_interval_ms / 1000, self.run_cycle, "scan")

    async def _order_loop(self) -> None:
        await self._every(self._settings.profitability.check_interval_ms / 1000, self.run_order_cycle, "order")

    async def _eviction_loop(self) -> None:
        interval = self._settings.aggregator.eviction_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self._aggregator.evict()
