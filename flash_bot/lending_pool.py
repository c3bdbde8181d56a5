"""Wire contract with the lending pool and its reserves-lookup contract.

Covers the event-subscription table (which indexed topic carries the
account for each event), the per-chain reserves-lookup addresses, and
ABI coding for the handful of read calls the aggregator makes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import event_signature_to_log_topic, function_signature_to_4byte_selector, to_checksum_address

from flash_bot.errors import DecodeError
from flash_bot.models import AccountData, UserReserve
from flash_bot.rpc import ChainConnection

LOGGER = logging.getLogger(__name__)

NULL_ACCOUNT = "0x0000000000000000000000000000000000000000"

# (event signature, indexed topic position carrying the account)
DEFAULT_EVENT_TOPICS: tuple[tuple[str, int], ...] = (
    ("Borrow(address,address,address,uint256,uint8,uint256,uint16)", 2),
    ("Supply(address,address,address,uint256,uint16)", 1),
    ("Repay(address,address,address,uint256,bool)", 1),
    ("Withdraw(address,address,address,uint256)", 1),
)

# Aave V3 PoolDataProvider by chain id.
FALLBACK_RESERVES_LOOKUP = "0x69FA688f1Dc47d4B5d8029D5a35FB7a548310654"
RESERVES_LOOKUP_BY_CHAIN: dict[int, str] = {
    1: "0x7B4EBb9C2E1643666576F5E791788739BC4B31a3",
    10: FALLBACK_RESERVES_LOOKUP,
    137: FALLBACK_RESERVES_LOOKUP,
    250: FALLBACK_RESERVES_LOOKUP,
    8453: "0x2d8A3C5677189723C4cB8873CfC9C8976FDF38Ac",
    42161: FALLBACK_RESERVES_LOOKUP,
    43114: FALLBACK_RESERVES_LOOKUP,
}

_GET_USER_ACCOUNT_DATA = function_signature_to_4byte_selector("getUserAccountData(address)")
_GET_ALL_RESERVES_TOKENS = function_signature_to_4byte_selector("getAllReservesTokens()")
_GET_USER_RESERVE_DATA = function_signature_to_4byte_selector("getUserReserveData(address,address)")
_GET_RESERVE_CONFIGURATION_DATA = function_signature_to_4byte_selector("getReserveConfigurationData(address)")

_ACCOUNT_DATA_TYPES = ["uint256"] * 6
_USER_RESERVE_TYPES = ["uint256"] * 7 + ["uint40", "bool"]
_RESERVE_CONFIG_TYPES = ["uint256"] * 5 + ["bool"] * 5

_BONUS_BASE = 10_000


@dataclass(frozen=True)
class EventSpec:
    signature: str
    topic_hash: str
    account_topic: int

    @property
    def name(self) -> str:
        return self.signature.split("(", 1)[0]


@dataclass(frozen=True)
class ReserveConfig:
    decimals: int
    liquidation_bonus_bps: int
    usage_as_collateral_enabled: bool

    @property
    def liquidation_bonus(self) -> Decimal:
        # 10500 means collateral is seized at a 5% bonus.
        if self.liquidation_bonus_bps <= _BONUS_BASE:
            return Decimal(0)
        return Decimal(self.liquidation_bonus_bps - _BONUS_BASE) / Decimal(_BONUS_BASE)


def build_event_specs(table: Sequence[tuple[str, int]]) -> list[EventSpec]:
    return [
        EventSpec(
            signature=signature,
            topic_hash="0x" + event_signature_to_log_topic(signature).hex(),
            account_topic=topic_index,
        )
        for signature, topic_index in table
    ]


def resolve_reserves_lookup(chain_id: int, override: str | None = None) -> str:
    if override:
        return override
    address = RESERVES_LOOKUP_BY_CHAIN.get(chain_id)
    if address is None:
        LOGGER.warning("no reserves lookup for chain %d, using fallback %s", chain_id, FALLBACK_RESERVES_LOOKUP)
        return FALLBACK_RESERVES_LOOKUP
    return address


def decode_account_topic(log: Any, spec: EventSpec) -> str:
    """Extracts the checksummed account address from a raw log's topics."""
    if not isinstance(log, dict):
        raise DecodeError(f"{spec.name}: log payload is {type(log).__name__}")
    topics = log.get("topics")
    if not isinstance(topics, list) or len(topics) <= spec.account_topic:
        raise DecodeError(f"{spec.name}: expected topic {spec.account_topic}, got {topics!r}")
    topic = topics[spec.account_topic]
    if not isinstance(topic, str) or not topic.startswith("0x") or len(topic) != 66:
        raise DecodeError(f"{spec.name}: malformed topic {topic!r}")
    try:
        raw = bytes.fromhex(topic[2:])
    except ValueError as exc:
        raise DecodeError(f"{spec.name}: malformed topic {topic!r}") from exc
    if any(raw[:12]):
        raise DecodeError(f"{spec.name}: topic {topic} is not an address")
    return to_checksum_address("0x" + raw[12:].hex())


def _decode(types: list[str], data: bytes, what: str) -> tuple[Any, ...]:
    try:
        return decode(types, data)
    except DecodingError as exc:
        raise DecodeError(f"{what}: {exc}") from exc


class LendingPoolReader:
    """Read calls against the pool and its reserves-lookup contract.

    Bound to one connection handle; build a new reader after a reconnect.
    Reserve metadata is cached for the reader's lifetime.
    """

    def __init__(self, connection: ChainConnection, pool_address: str, lookup_address: str) -> None:
        self._connection = connection
        self._pool = to_checksum_address(pool_address)
        self._lookup = to_checksum_address(lookup_address)
        self._reserves: list[tuple[str, str]] | None = None
        self._configs: dict[str, ReserveConfig] = {}

    @property
    def connection(self) -> ChainConnection:
        return self._connection

    async def get_user_account_data(self, account: str) -> AccountData:
        data = _GET_USER_ACCOUNT_DATA + encode(["address"], [to_checksum_address(account)])
        raw = await self._connection.call(self._pool, data)
        return AccountData(*_decode(_ACCOUNT_DATA_TYPES, raw, "getUserAccountData"))

    async def list_reserves(self) -> list[tuple[str, str]]:
        if self._reserves is None:
            raw = await self._connection.call(self._lookup, _GET_ALL_RESERVES_TOKENS)
            (entries,) = _decode(["(string,address)[]"], raw, "getAllReservesTokens")
            self._reserves = [(symbol, to_checksum_address(address)) for symbol, address in entries]
        return self._reserves

    async def get_reserve_config(self, asset: str) -> ReserveConfig:
        config = self._configs.get(asset)
        if config is None:
            data = _GET_RESERVE_CONFIGURATION_DATA + encode(["address"], [asset])
            raw = await self._connection.call(self._lookup, data)
            fields = _decode(_RESERVE_CONFIG_TYPES, raw, "getReserveConfigurationData")
            config = ReserveConfig(
                decimals=int(fields[0]),
                liquidation_bonus_bps=int(fields[3]),
                usage_as_collateral_enabled=bool(fields[5]),
            )
            self._configs[asset] = config
        return config

    async def get_user_reserves(self, account: str) -> list[UserReserve]:
        user = to_checksum_address(account)
        reserves: list[UserReserve] = []
        for symbol, asset in await self.list_reserves():
            data = _GET_USER_RESERVE_DATA + encode(["address", "address"], [asset, user])
            raw = await self._connection.call(self._lookup, data)
            fields = _decode(_USER_RESERVE_TYPES, raw, "getUserReserveData")
            config = await self.get_reserve_config(asset)
            reserves.append(
                UserReserve(
                    asset=asset,
                    symbol=symbol,
                    decimals=config.decimals,
                    collateral_balance=int(fields[0]),
                    stable_debt=int(fields[1]),
                    variable_debt=int(fields[2]),
                    usage_as_collateral_enabled=bool(fields[8]),
                )
            )
        return reserves
