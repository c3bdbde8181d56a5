"""Tests for lending-pool event decoding and ABI read calls."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from flash_bot.errors import DecodeError
from flash_bot.lending_pool import (
    DEFAULT_EVENT_TOPICS,
    FALLBACK_RESERVES_LOOKUP,
    RESERVES_LOOKUP_BY_CHAIN,
    LendingPoolReader,
    ReserveConfig,
    build_event_specs,
    decode_account_topic,
    resolve_reserves_lookup,
)

POOL = "0x87870Bca3F3fD6335C3F4ce8392D69350B4fA4E2"
LOOKUP = "0x7B4EBb9C2E1643666576F5E791788739BC4B31a3"
USER = "0x1111111111111111111111111111111111111111"
WETH = "0x2222222222222222222222222222222222222222"
USDC = "0x3333333333333333333333333333333333333333"


def _topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def _specs() -> dict:
    return {spec.name: spec for spec in build_event_specs(DEFAULT_EVENT_TOPICS)}


# ---------------------------------------------------------------------------
# Event table
# ---------------------------------------------------------------------------


class TestEventSpecs:
    def test_account_topic_positions(self) -> None:
        specs = _specs()
        assert specs["Borrow"].account_topic == 2
        assert specs["Supply"].account_topic == 1
        assert specs["Repay"].account_topic == 1
        assert specs["Withdraw"].account_topic == 1

    def test_topic_hashes_are_distinct_words(self) -> None:
        hashes = [spec.topic_hash for spec in build_event_specs(DEFAULT_EVENT_TOPICS)]
        assert len(set(hashes)) == len(hashes)
        assert all(h.startswith("0x") and len(h) == 66 for h in hashes)


class TestDecodeAccountTopic:
    def test_reads_configured_topic(self) -> None:
        spec = _specs()["Borrow"]
        log = {"topics": ["0xsig", _topic(WETH), _topic(USER), _topic(USDC)]}
        assert decode_account_topic(log, spec) == USER

    def test_returns_checksum_address(self) -> None:
        spec = _specs()["Supply"]
        log = {"topics": ["0xsig", _topic("0xab5801a7d398351b8be11c439e05c5b3259aec9b")]}
        assert decode_account_topic(log, spec) == "0xAb5801a7D398351b8bE11C439e05C5B3259aeC9B"

    def test_missing_topic(self) -> None:
        with pytest.raises(DecodeError):
            decode_account_topic({"topics": ["0xsig", _topic(USER)]}, _specs()["Borrow"])

    def test_non_address_word(self) -> None:
        word = "0x" + "ff" * 32
        with pytest.raises(DecodeError):
            decode_account_topic({"topics": ["0xsig", word]}, _specs()["Supply"])

    @pytest.mark.parametrize("log", [None, "raw", {"topics": None}, {"topics": ["0xsig", "0x12"]}, {"topics": ["0xsig", "0x" + "zz" * 32]}])
    def test_malformed_payloads(self, log: object) -> None:
        with pytest.raises(DecodeError):
            decode_account_topic(log, _specs()["Supply"])


# ---------------------------------------------------------------------------
# Reserves lookup and config
# ---------------------------------------------------------------------------


class TestReservesLookup:
    def test_known_chain(self) -> None:
        assert resolve_reserves_lookup(1) == RESERVES_LOOKUP_BY_CHAIN[1]

    def test_override_wins(self) -> None:
        assert resolve_reserves_lookup(1, USDC) == USDC

    def test_unknown_chain_falls_back(self) -> None:
        assert resolve_reserves_lookup(999_999) == FALLBACK_RESERVES_LOOKUP

    def test_liquidation_bonus_from_basis_points(self) -> None:
        assert ReserveConfig(18, 10500, True).liquidation_bonus == Decimal("0.05")
        assert ReserveConfig(18, 0, False).liquidation_bonus == Decimal(0)


# ---------------------------------------------------------------------------
# LendingPoolReader
# ---------------------------------------------------------------------------

_ACCOUNT_DATA = function_signature_to_4byte_selector("getUserAccountData(address)")
_ALL_RESERVES = function_signature_to_4byte_selector("getAllReservesTokens()")
_USER_RESERVE = function_signature_to_4byte_selector("getUserReserveData(address,address)")
_RESERVE_CONFIG = function_signature_to_4byte_selector("getReserveConfigurationData(address)")


class FakeChain:
    """Answers eth_call by selector with ABI-encoded fixtures."""

    def __init__(self, health_factor: int = 95 * 10**16) -> None:
        self.health_factor = health_factor
        self.calls: list[tuple[str, bytes]] = []

    async def call(self, to: str, data: bytes) -> bytes:
        self.calls.append((to, data[:4]))
        selector = data[:4]
        if selector == _ACCOUNT_DATA:
            return encode(["uint256"] * 6, [10**9, 5 * 10**8, 0, 8250, 8000, self.health_factor])
        if selector == _ALL_RESERVES:
            return encode(["(string,address)[]"], [[("WETH", WETH), ("USDC", USDC)]])
        if selector == _RESERVE_CONFIG:
            weth = data[-20:] == bytes.fromhex(WETH[2:])
            decimals, bonus = (18, 10500) if weth else (6, 10450)
            return encode(["uint256"] * 5 + ["bool"] * 5, [decimals, 8000, 8250, bonus, 1000, True, True, False, True, False])
        if selector == _USER_RESERVE:
            weth = data[4:36][-20:] == bytes.fromhex(WETH[2:])
            if weth:
                values = [2 * 10**18, 0, 0, 0, 0, 0, 0, 0, True]
            else:
                values = [0, 100 * 10**6, 400 * 10**6, 0, 0, 0, 0, 0, False]
            return encode(["uint256"] * 7 + ["uint40", "bool"], values)
        raise AssertionError(f"unexpected selector {selector.hex()}")


class TestLendingPoolReader:
    def test_user_account_data(self) -> None:
        chain = FakeChain()
        reader = LendingPoolReader(chain, POOL, LOOKUP)
        data = asyncio.run(reader.get_user_account_data(USER))
        assert data.health_metric == Decimal("0.95")
        assert data.is_liquidatable is True
        assert chain.calls[0][0] == to_checksum_address(POOL)

    def test_health_factor_at_one_is_safe(self) -> None:
        reader = LendingPoolReader(FakeChain(health_factor=10**18), POOL, LOOKUP)
        assert asyncio.run(reader.get_user_account_data(USER)).is_liquidatable is False

    def test_user_reserves_use_reserve_decimals(self) -> None:
        chain = FakeChain()
        reader = LendingPoolReader(chain, POOL, LOOKUP)
        reserves = asyncio.run(reader.get_user_reserves(USER))

        by_symbol = {r.symbol: r for r in reserves}
        assert by_symbol["WETH"].decimals == 18
        assert by_symbol["WETH"].collateral_balance == 2 * 10**18
        assert by_symbol["WETH"].usage_as_collateral_enabled is True
        assert by_symbol["USDC"].decimals == 6
        assert by_symbol["USDC"].total_debt == 500 * 10**6

    def test_reserve_metadata_cached(self) -> None:
        chain = FakeChain()
        reader = LendingPoolReader(chain, POOL, LOOKUP)

        async def scenario() -> None:
            await reader.get_user_reserves(USER)
            await reader.get_user_reserves(USER)

        asyncio.run(scenario())
        selectors = [selector for _, selector in chain.calls]
        assert selectors.count(_ALL_RESERVES) == 1
        assert selectors.count(_RESERVE_CONFIG) == 2
        assert selectors.count(_USER_RESERVE) == 4

    def test_garbage_return_data_is_decode_error(self) -> None:
        class GarbageChain:
            async def call(self, to: str, data: bytes) -> bytes:
                return b"\x01\x02"

        reader = LendingPoolReader(GarbageChain(), POOL, LOOKUP)
        with pytest.raises(DecodeError):
            asyncio.run(reader.get_user_account_data(USER))
