from __future__ import annotations

import struct
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from solders.pubkey import Pubkey

from conftest import SOL_MINT, USDC_MINT
from phoenix_mm.price_feed import PYTH_MAGIC, PriceFeedError, PriceFeedReader, parse_price_data
from phoenix_mm.rpc import AccountSnapshot
from phoenix_mm.token_accounts import (
    ACCOUNT_SIZE,
    TOKEN_PROGRAM_ID,
    BalanceProvider,
    TokenAccountNotFoundError,
    TokenInvalidAccountOwnerError,
    TokenInvalidAccountSizeError,
    associated_token_address,
    balance_delta,
    unpack_token_account,
)
from phoenix_mm.types import BalancePair

OWNER = str(Pubkey.new_unique())
SPL_TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
SPL_ASSOCIATED_TOKEN_PROGRAM = "ATokenGPvbdGVxr1b1hvZbsiqX5RpCzLk6NT6bKHsjHe"


def _token_data(mint: str, amount: int, *, state: int = 1) -> bytes:
    buf = bytearray(ACCOUNT_SIZE)
    buf[0:32] = bytes(Pubkey.from_string(mint))
    buf[32:64] = bytes(Pubkey.from_string(OWNER))
    struct.pack_into("<Q", buf, 64, amount)
    buf[108] = state
    return bytes(buf)


def _snapshot(address: str, data: bytes, owner: str = SPL_TOKEN_PROGRAM) -> AccountSnapshot:
    return AccountSnapshot(address=address, owner=owner, lamports=2_039_280, data=data)


def _price_data(price: int, exponent: int, *, status: int = 1, magic: int = PYTH_MAGIC) -> bytes:
    buf = bytearray(240)
    struct.pack_into("<III", buf, 0, magic, 2, 3)
    struct.pack_into("<i", buf, 20, exponent)
    struct.pack_into("<qQIIQ", buf, 208, price, 1_000, status, 0, 123)
    return bytes(buf)


# ---------------------------------------------------------------------------
# Token accounts
# ---------------------------------------------------------------------------


def test_unpack_token_account():
    account = unpack_token_account("ata", _snapshot("ata", _token_data(SOL_MINT, 1_500_000_000)))
    assert account.mint == SOL_MINT
    assert account.owner == OWNER
    assert account.amount == 1_500_000_000
    assert account.is_initialized
    assert not account.is_frozen


def test_missing_account_raises_not_found():
    with pytest.raises(TokenAccountNotFoundError):
        unpack_token_account("ata", None)


def test_wrong_owner_raises():
    snapshot = _snapshot("ata", _token_data(SOL_MINT, 1), owner=str(Pubkey.new_unique()))
    with pytest.raises(TokenInvalidAccountOwnerError):
        unpack_token_account("ata", snapshot)


def test_short_account_raises_size_error():
    with pytest.raises(TokenInvalidAccountSizeError):
        unpack_token_account("ata", _snapshot("ata", bytes(100)))


def test_extension_data_requires_account_marker():
    data = _token_data(SOL_MINT, 1) + bytes([1]) + bytes(10)
    with pytest.raises(TokenInvalidAccountSizeError):
        unpack_token_account("ata", _snapshot("ata", data))


def test_associated_token_address_is_deterministic():
    first = associated_token_address(OWNER, USDC_MINT)
    assert first == associated_token_address(Pubkey.from_string(OWNER), USDC_MINT)
    assert first != associated_token_address(OWNER, SOL_MINT)


def test_token_program_ids_are_canonical():
    assert str(TOKEN_PROGRAM_ID) == SPL_TOKEN_PROGRAM


def test_associated_token_address_matches_program_derivation():
    expected, _ = Pubkey.find_program_address(
        [
            bytes(Pubkey.from_string(OWNER)),
            bytes(Pubkey.from_string(SPL_TOKEN_PROGRAM)),
            bytes(Pubkey.from_string(USDC_MINT)),
        ],
        Pubkey.from_string(SPL_ASSOCIATED_TOKEN_PROGRAM),
    )
    assert associated_token_address(OWNER, USDC_MINT) == str(expected)


@pytest.mark.asyncio
async def test_balance_provider_reads_fresh_ui_amounts():
    accounts = {
        "quote-ata": _snapshot("quote-ata", _token_data(USDC_MINT, 20_500_000)),
        "base-ata": _snapshot("base-ata", _token_data(SOL_MINT, 1_250_000_000)),
    }
    rpc = SimpleNamespace(get_account=AsyncMock(side_effect=lambda addr: accounts[addr]))
    provider = BalanceProvider(rpc, base_decimals=9, quote_decimals=6)

    first = await provider.get_balances("quote-ata", "base-ata")
    second = await provider.get_balances("quote-ata", "base-ata")

    assert first == BalancePair(base=Decimal("1.25"), quote=Decimal("20.5"))
    assert second == first
    assert rpc.get_account.await_count == 4


def test_balance_delta():
    delta = balance_delta(
        BalancePair(base=Decimal("1"), quote=Decimal("20")),
        BalancePair(base=Decimal("1.5"), quote=Decimal("12")),
    )
    assert delta == BalancePair(base=Decimal("0.5"), quote=Decimal("-8"))


# ---------------------------------------------------------------------------
# Price feed
# ---------------------------------------------------------------------------


def test_parse_price_applies_exponent():
    aggregate = parse_price_data(_price_data(15_012_345_678, -8))
    assert aggregate.price == Decimal("150.12345678")
    assert aggregate.confidence == Decimal("0.00001")
    assert aggregate.is_trading
    assert aggregate.publish_slot == 123


@pytest.mark.parametrize(
    "data",
    [bytes(10), _price_data(1, -8, magic=0xDEADBEEF)],
    ids=["short", "bad-magic"],
)
def test_parse_price_rejects_invalid_accounts(data):
    with pytest.raises(PriceFeedError):
        parse_price_data(data)


@pytest.mark.asyncio
async def test_price_reader_returns_last_aggregate_when_not_trading():
    feeds = {
        "sol": _snapshot("sol", _price_data(14_900_000_000, -8, status=0)),
        "usdc": _snapshot("usdc", _price_data(100_000_000, -8)),
    }
    rpc = SimpleNamespace(get_account=AsyncMock(side_effect=lambda addr: feeds[addr]))

    base, quote = await PriceFeedReader(rpc).get_pair("sol", "usdc")

    assert base == Decimal("149")
    assert quote == Decimal("1")


@pytest.mark.asyncio
async def test_price_reader_missing_account():
    rpc = SimpleNamespace(get_account=AsyncMock(return_value=None))
    with pytest.raises(PriceFeedError):
        await PriceFeedReader(rpc).get_price("missing")
