from __future__ import annotations

import hashlib
import struct
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from solders.pubkey import Pubkey

from conftest import SOL_USDC_MARKET, market_account_data
from phoenix_mm.config_env import PriceImprovementBehavior
from phoenix_mm.phoenix_market import PhoenixMarket
from phoenix_mm.strategy_program import (
    STRATEGY_PROGRAM_ID,
    StrategyQuotePublisher,
    anchor_discriminator,
    encode_initialize,
    encode_update_quotes,
    strategy_address,
    update_quotes_ix,
)
from phoenix_mm.types import MakerAccounts, QuoteParams

PARAMS = QuoteParams(
    quote_edge_bps=5,
    quote_size_in_quote_atoms=10_000_000,
    price_improvement=PriceImprovementBehavior.DIME,
    margin=2,
    post_only=True,
)
ACCOUNTS = MakerAccounts(base=str(Pubkey.new_unique()), quote=str(Pubkey.new_unique()))
FEEDS = (
    "H6ARHf6YXhGYeQfUzQNGk6rDNnLBQKrenN712K4AQJEG",
    "Gnt27xtC473ZT2Mw5u8wZ68Z3gULkSTb5DuxJy7eJotD",
)


def _market() -> PhoenixMarket:
    return PhoenixMarket.from_account_data(SOL_USDC_MARKET, market_account_data([], []))


def test_anchor_discriminator():
    assert anchor_discriminator("initialize") == hashlib.sha256(b"global:initialize").digest()[:8]


def test_encode_initialize():
    data = encode_initialize(PARAMS)
    assert data[:8] == anchor_discriminator("initialize")
    assert struct.unpack("<QQB?", data[8:]) == (5, 10_000_000, 2, True)


def test_encode_update_quotes_uses_provided_price():
    data = encode_update_quotes(PARAMS)
    assert data[:8] == anchor_discriminator("update_quotes")
    seed, edge, size, behavior, post_only, use_provided_price, margin = struct.unpack("<QQQB??Q", data[8:])
    assert (seed, edge, size, behavior) == (0, 5, 10_000_000, 2)
    assert post_only is True
    assert use_provided_price is True
    assert margin == 2


def test_strategy_address_is_per_signer_and_market():
    signer = Pubkey.new_unique()
    first, _ = strategy_address(signer, SOL_USDC_MARKET)
    assert first == strategy_address(signer, Pubkey.from_string(SOL_USDC_MARKET))[0]
    assert first != strategy_address(Pubkey.new_unique(), SOL_USDC_MARKET)[0]


def test_update_quotes_passes_price_feeds_last():
    signer = Pubkey.new_unique()
    ix = update_quotes_ix(signer, _market(), ACCOUNTS, PARAMS, FEEDS)

    assert ix.program_id == STRATEGY_PROGRAM_ID
    assert [str(meta.pubkey) for meta in ix.accounts[-2:]] == list(FEEDS)
    assert ix.accounts[0].pubkey == strategy_address(signer, SOL_USDC_MARKET)[0]
    assert [meta.pubkey for meta in ix.accounts if meta.is_signer] == [signer]


@pytest.mark.asyncio
async def test_publisher_sends_one_transaction_per_update():
    rpc = SimpleNamespace(signer_pubkey=Pubkey.new_unique(), send_and_confirm=AsyncMock(return_value="quote-sig"))
    venue = SimpleNamespace(market=_market())
    publisher = StrategyQuotePublisher(rpc, venue, ACCOUNTS, PARAMS, FEEDS)

    assert await publisher.update_quotes() == "quote-sig"
    (instructions,) = rpc.send_and_confirm.await_args.args
    assert len(instructions) == 1
    assert instructions[0].program_id == STRATEGY_PROGRAM_ID
