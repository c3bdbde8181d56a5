from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Tuple

from dotenv import load_dotenv

from flash_bot.errors import ConfigError
from flash_bot.lending_pool import DEFAULT_EVENT_TOPICS

AAVE_V3_ETHEREUM_POOL = "0x87870Bca3F3fD6335C3F4ce8392D69350B4fA4E2"
WETH_ETHEREUM = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} is not a number: {raw!r}", setting_name=name) from exc


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} is not an integer: {raw!r}", setting_name=name) from exc


def _as_decimal(name: str, default: str) -> Decimal:
    """Reads a decimal option from its string form so no float rounding leaks in."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return Decimal(default)
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ConfigError(f"{name} is not a decimal: {raw!r}", setting_name=name) from exc


def _as_event_topics(value: str | None) -> Tuple[Tuple[str, int], ...]:
    """Parses `Sig(a,b)=2;Other(c)=1` into (signature, topic index) pairs."""
    if value is None or not value.strip():
        return DEFAULT_EVENT_TOPICS
    pairs: list[tuple[str, int]] = []
    for chunk in value.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "=" not in chunk:
            raise ConfigError(f"event topic entry needs '=': {chunk!r}", setting_name="AGGREGATOR_EVENT_TOPICS")
        signature, index = chunk.rsplit("=", 1)
        try:
            topic_index = int(index)
        except ValueError as exc:
            raise ConfigError(
                f"indexed topic position is not an integer: {index!r}",
                setting_name="AGGREGATOR_EVENT_TOPICS",
            ) from exc
        if topic_index not in (1, 2, 3):
            raise ConfigError(
                f"indexed topic position must be 1..3, got {topic_index}",
                setting_name="AGGREGATOR_EVENT_TOPICS",
            )
        pairs.append((signature.strip(), topic_index))
    return tuple(pairs)


@dataclass(frozen=True)
class NetworkSettings:
    chain_id: int = 1
    wss_url: str = ""
    rpc_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class ReconnectSettings:
    base_delay_ms: int = 5000
    multiplier: int = 2
    cap_delay_ms: int = 60000
    max_attempts: int = 10


@dataclass(frozen=True)
class AggregatorSettings:
    pool_address: str = AAVE_V3_ETHEREUM_POOL
    reserves_lookup_address: str | None = None
    event_topics: Tuple[Tuple[str, int], ...] = DEFAULT_EVENT_TOPICS
    high_water: int = 1000
    low_water: int = 500
    eviction_interval_seconds: float = 3600.0
    close_factor: Decimal = Decimal("0.5")


@dataclass(frozen=True)
class ProfitabilitySettings:
    min_profit_threshold: Decimal = Decimal("0.01")
    max_gas_price_gwei: int = 100
    slippage_tolerance_pct: Decimal = Decimal("0.5")
    max_trade_size: Decimal = Decimal("10")
    check_interval_ms: int = 1000
    flashloan_fee: Decimal = Decimal("0")
    dex_fee: Decimal = Decimal("0.003")
    max_opportunity_age_ms: int = 5000


@dataclass(frozen=True)
class OrderSourceSettings:
    enabled: bool = False
    order_api_url: str = "https://api.uniswap.org/v2/orders"
    price_api_url: str = "https://api.0x.org/swap/v1/price"
    price_api_key: str | None = None
    wrapped_native_token: str = WETH_ETHEREUM
    optimistic_margin: Decimal = Decimal("0.005")
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AppSettings:
    network: NetworkSettings
    reconnect: ReconnectSettings = field(default_factory=ReconnectSettings)
    aggregator: AggregatorSettings = field(default_factory=AggregatorSettings)
    profitability: ProfitabilitySettings = field(default_factory=ProfitabilitySettings)
    order_source: OrderSourceSettings = field(default_factory=OrderSourceSettings)
    log_level: str = "INFO"


def _resolve_wss_url(chain_id: int) -> str:
    # Priority: WSS_URL_<chainId> > WSS_URL
    url = (os.getenv(f"WSS_URL_{chain_id}") or os.getenv("WSS_URL") or "").strip()
    if not url:
        raise ConfigError(
            f"no websocket endpoint configured (set WSS_URL_{chain_id} or WSS_URL)",
            setting_name="WSS_URL",
        )
    if not url.startswith(("ws://", "wss://")):
        raise ConfigError(f"websocket endpoint must use ws:// or wss://, got {url!r}", setting_name="WSS_URL")
    return url


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    chain_id = _as_int("CHAIN_ID", 1)
    network = NetworkSettings(
        chain_id=chain_id,
        wss_url=_resolve_wss_url(chain_id),
        rpc_timeout_seconds=_as_float("RPC_TIMEOUT_SECONDS", 5.0),
    )

    reconnect = ReconnectSettings(
        base_delay_ms=_as_int("RECONNECT_BASE_DELAY_MS", 5000),
        multiplier=_as_int("RECONNECT_MULTIPLIER", 2),
        cap_delay_ms=_as_int("RECONNECT_CAP_DELAY_MS", 60000),
        max_attempts=_as_int("RECONNECT_MAX_ATTEMPTS", 10),
    )

    high_water = _as_int("MONITOR_HIGH_WATER", 1000)
    low_water = _as_int("MONITOR_LOW_WATER", 500)
    if not 0 < low_water <= high_water:
        raise ConfigError(
            f"MONITOR_LOW_WATER ({low_water}) must be positive and not above MONITOR_HIGH_WATER ({high_water})",
            setting_name="MONITOR_LOW_WATER",
        )

    aggregator = AggregatorSettings(
        pool_address=(os.getenv("AAVE_POOL") or AAVE_V3_ETHEREUM_POOL).strip(),
        reserves_lookup_address=(os.getenv("RESERVES_LOOKUP_ADDRESS") or "").strip() or None,
        event_topics=_as_event_topics(os.getenv("AGGREGATOR_EVENT_TOPICS")),
        high_water=high_water,
        low_water=low_water,
        eviction_interval_seconds=_as_float("EVICTION_INTERVAL_SECONDS", 3600.0),
        close_factor=_as_decimal("CLOSE_FACTOR", "0.5"),
    )

    profitability = ProfitabilitySettings(
        min_profit_threshold=_as_decimal("MIN_PROFIT_THRESHOLD", "0.01"),
        max_gas_price_gwei=_as_int("MAX_GAS_PRICE", 100),
        slippage_tolerance_pct=_as_decimal("SLIPPAGE_TOLERANCE", "0.5"),
        max_trade_size=_as_decimal("MAX_TRADE_SIZE", "10"),
        check_interval_ms=_as_int("CHECK_INTERVAL", 1000),
        flashloan_fee=_as_decimal("FLASHLOAN_FEE", "0"),
        dex_fee=_as_decimal("DEX_FEE", "0.003"),
        max_opportunity_age_ms=_as_int("OPPORTUNITY_MAX_AGE_MS", 5000),
    )

    order_source = OrderSourceSettings(
        enabled=_as_bool(os.getenv("ENABLE_ORDER_SOURCE"), False),
        order_api_url=(os.getenv("ORDER_API_URL") or OrderSourceSettings.order_api_url).strip(),
        price_api_url=(os.getenv("PRICE_API_URL") or OrderSourceSettings.price_api_url).strip(),
        price_api_key=(os.getenv("ZEROX_API_KEY") or "").strip() or None,
        wrapped_native_token=(os.getenv("WRAPPED_NATIVE_TOKEN") or WETH_ETHEREUM).strip(),
        optimistic_margin=_as_decimal("OPTIMISTIC_MARGIN", "0.005"),
        timeout_seconds=_as_float("ORDER_API_TIMEOUT_SECONDS", 10.0),
    )

    return AppSettings(
        network=network,
        reconnect=reconnect,
        aggregator=aggregator,
        profitability=profitability,
        order_source=order_source,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
