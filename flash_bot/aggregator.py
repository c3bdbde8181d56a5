"""Tracks candidate accounts from pool events and scans them for insolvency.

One subscription per event signature, each consumed by its own task with
its own decode error boundary; all of them fan in to a single
``MonitoredAccountSet``. Scanning works off a snapshot of that set, so
event inserts and evictions may interleave with a scan freely.

Accounts dropped by eviction are not reconsidered until they show up in
a new event, even if they are insolvent. That is the price of the
memory bound and relies on scans running often enough.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Sequence

from flash_bot.account_set import MonitoredAccountSet
from flash_bot.amm_math import to_fixed, to_fraction
from flash_bot.config import AggregatorSettings
from flash_bot.errors import DecodeError, QueryError, TransportError
from flash_bot.lending_pool import (
    NULL_ACCOUNT,
    EventSpec,
    LendingPoolReader,
    build_event_specs,
    decode_account_topic,
    resolve_reserves_lookup,
)
from flash_bot.models import Opportunity, UserReserve
from flash_bot.rpc import ChainConnection, LogSubscription

LOGGER = logging.getLogger(__name__)

ReaderFactory = Callable[[ChainConnection, str, str], LendingPoolReader]


@dataclass(frozen=True)
class BestAssets:
    debt: UserReserve
    collateral: UserReserve


def _normalized(amount: int, decimals: int) -> Fraction:
    return Fraction(amount, 10**decimals)


def select_best_assets(reserves: Sequence[UserReserve]) -> BestAssets | None:
    """Largest stable+variable debt, and largest collateral-enabled balance.

    Amounts are compared in token units so reserves with different
    decimals rank fairly. Returns None when either side is empty.
    """
    debts = [r for r in reserves if r.total_debt > 0]
    collaterals = [r for r in reserves if r.usage_as_collateral_enabled and r.collateral_balance > 0]
    if not debts or not collaterals:
        return None
    debt = max(debts, key=lambda r: _normalized(r.total_debt, r.decimals))
    collateral = max(collaterals, key=lambda r: _normalized(r.collateral_balance, r.decimals))
    return BestAssets(debt=debt, collateral=collateral)


class AccountAggregator:
    def __init__(
        self,
        settings: AggregatorSettings,
        chain_id: int,
        accounts: MonitoredAccountSet | None = None,
        reader_factory: ReaderFactory = LendingPoolReader,
    ) -> None:
        self._settings = settings
        self._events = build_event_specs(settings.event_topics)
        self._lookup_address = resolve_reserves_lookup(chain_id, settings.reserves_lookup_address)
        self._close_factor = to_fraction(settings.close_factor)
        self._accounts = accounts if accounts is not None else MonitoredAccountSet(settings.high_water, settings.low_water)
        self._reader_factory = reader_factory
        self._reader: LendingPoolReader | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def accounts(self) -> MonitoredAccountSet:
        return self._accounts

    @property
    def events(self) -> list[EventSpec]:
        return list(self._events)

    async def start_monitoring(self, connection: ChainConnection) -> None:
        """Subscribes to every configured event on the pool through a fresh handle.

        Safe to call again after a reconnect; the previous subscriptions
        and reader are dropped first.
        """
        await self.stop_monitoring()
        self._reader = self._reader_factory(connection, self._settings.pool_address, self._lookup_address)
        for spec in self._events:
            subscription = await connection.subscribe_logs(self._settings.pool_address, spec.topic_hash, label=spec.name)
            task = asyncio.create_task(self._consume(subscription, spec))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        LOGGER.info(
            "monitoring %d event types on %s (%d accounts tracked)",
            len(self._events),
            self._settings.pool_address,
            len(self._accounts),
        )

    async def stop_monitoring(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._reader = None

    async def _consume(self, subscription: LogSubscription, spec: EventSpec) -> None:
        async for log in subscription:
            self.handle_log(log, spec)
        LOGGER.debug("%s subscription ended", spec.name)

    def handle_log(self, log: Any, spec: EventSpec) -> str | None:
        try:
            account = decode_account_topic(log, spec)
        except DecodeError as exc:
            LOGGER.warning("dropping %s event: %s", spec.name, exc)
            return None
        if account == NULL_ACCOUNT:
            return None
        if self._accounts.add(account):
            LOGGER.debug("new account from %s: %s", spec.name, account)
        return account

    def evict(self) -> list[str]:
        return self._accounts.compact()

    async def scan_for_opportunities(self) -> list[Opportunity]:
        reader = self._reader
        if reader is None:
            return []
        # The hourly timer may lag a burst of events; never scan past the high-water mark.
        if len(self._accounts) > self._accounts.high_water:
            self.evict()

        opportunities: list[Opportunity] = []
        for account in self._accounts.snapshot():
            if account not in self._accounts:
                continue
            try:
                opportunity = await self._evaluate_account(reader, account)
            except (QueryError, DecodeError) as exc:
                LOGGER.warning("skipping %s this cycle: %s", account, exc)
                continue
            except TransportError as exc:
                LOGGER.warning("scan aborted, transport lost: %s", exc)
                break
            if opportunity is not None:
                opportunities.append(opportunity)
        return opportunities

    async def _evaluate_account(self, reader: LendingPoolReader, account: str) -> Opportunity | None:
        data = await reader.get_user_account_data(account)
        if not data.is_liquidatable:
            return None
        LOGGER.info("liquidatable account %s health=%s", account, data.health_metric)

        best = select_best_assets(await reader.get_user_reserves(account))
        if best is None:
            LOGGER.info("no reserve data for %s, skipping", account)
            return None
        collateral_config = await reader.get_reserve_config(best.collateral.asset)

        debt_amount = _normalized(best.debt.total_debt, best.debt.decimals) * self._close_factor
        return Opportunity(
            account_id=account,
            health_metric=data.health_metric,
            debt_asset=best.debt.asset,
            collateral_asset=best.collateral.asset,
            debt_amount=to_fixed(debt_amount),
            liquidation_bonus=collateral_config.liquidation_bonus,
        )
