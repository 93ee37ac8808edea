from __future__ import annotations

import struct
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from conftest import (
    BASE_LOT_SIZE,
    LOTS_PER_SOL,
    SOL_MINT,
    SOL_USDC_MARKET,
    TICK_SIZE,
    USDC_MINT,
    market_account_data,
    price_ticks,
)
from phoenix_mm.phoenix_market import (
    MAX_SAFE_INTEGER,
    PHOENIX_PROGRAM_ID,
    Ladder,
    LadderLevel,
    MarketDecodeError,
    PhoenixInstruction,
    PhoenixMarket,
    SelfTradeBehavior,
    decode_header,
    encode_ioc_packet,
    expected_out_from_ladder,
)
from phoenix_mm.rpc import ClockSnapshot
from phoenix_mm.types import Side

CLOCK = ClockSnapshot(slot=100, unix_timestamp=1_700_000_000)


@pytest.fixture
def market() -> PhoenixMarket:
    bids = [
        (price_ticks("148"), 2 * LOTS_PER_SOL, 0),
        (price_ticks("149"), LOTS_PER_SOL, 0),
        # expired: must not show up in the ladder
        (price_ticks("149.5"), 10 * LOTS_PER_SOL, 5),
    ]
    asks = [
        (price_ticks("150"), LOTS_PER_SOL, 0),
        (price_ticks("151"), 2 * LOTS_PER_SOL, 0),
    ]
    return PhoenixMarket.from_account_data(SOL_USDC_MARKET, market_account_data(bids, asks, taker_fee_bps=10))


def test_decode_header_reads_token_params():
    header = decode_header(market_account_data([], []))
    assert header.base.decimals == 9
    assert header.base.mint == SOL_MINT
    assert header.quote.decimals == 6
    assert header.quote.mint == USDC_MINT
    assert header.base_lot_size == BASE_LOT_SIZE
    assert header.tick_size_in_quote_atoms_per_base_unit == TICK_SIZE
    assert header.market_sequence_number == 42


def test_decode_header_rejects_short_data():
    with pytest.raises(MarketDecodeError):
        decode_header(bytes(100))


def test_market_rejects_truncated_book():
    data = market_account_data([], [])
    with pytest.raises(MarketDecodeError):
        PhoenixMarket.from_account_data(SOL_USDC_MARKET, data[:-10])


def test_corrupt_tree_cycle_is_detected():
    data = bytearray(market_account_data([(price_ticks("150"), 1, 0)], []))
    bids_offset = 576 + 256 + 48
    # node 1 points left at itself
    struct.pack_into("<I", data, bids_offset + 32, 1)
    with pytest.raises(MarketDecodeError):
        PhoenixMarket.from_account_data(SOL_USDC_MARKET, bytes(data))


def test_unit_conversions(market):
    assert market.taker_fee_bps == 10
    assert market.ticks_to_price(price_ticks("150")) == Decimal("150")
    assert market.price_to_ticks(Decimal("150.25")) == 150_250
    assert market.base_lots_to_units(1_500) == Decimal("1.5")
    assert market.base_units_to_lots(Decimal("0.25")) == 250
    assert market.quote_units_to_lots(Decimal("12.5")) == 12_500_000


def test_max_float_price_stays_below_safe_tick_limit(market):
    assert market.price_to_ticks(market.max_float_price()) <= MAX_SAFE_INTEGER // 2 + 1


def test_ladder_orders_best_first_and_skips_expired(market):
    ladder = market.ladder(CLOCK)
    assert [lvl.price for lvl in ladder.bids] == [Decimal("149"), Decimal("148")]
    assert [lvl.size for lvl in ladder.bids] == [Decimal("1"), Decimal("2")]
    assert [lvl.price for lvl in ladder.asks] == [Decimal("150"), Decimal("151")]


def test_expected_out_walks_book_with_fee(market):
    # 150.15 USDC / 1.001 = 150 USDC of asks -> exactly the first level
    assert market.expected_out(Side.BID, Decimal("150.15"), CLOCK) == Decimal("1")
    # 1 SOL @ 149 + 0.5 SOL @ 148, less 10 bps
    assert market.expected_out(Side.ASK, Decimal("1.5"), CLOCK) == Decimal("222.777")


def test_expected_out_from_ladder_partial_level():
    ladder = Ladder(
        bids=[],
        asks=[LadderLevel(Decimal("100"), Decimal("1")), LadderLevel(Decimal("200"), Decimal("5"))],
    )
    assert expected_out_from_ladder(ladder, Side.BID, Decimal("200")) == Decimal("1.5")


def test_expected_out_exhausts_thin_book():
    ladder = Ladder(bids=[LadderLevel(Decimal("10"), Decimal("1"))], asks=[])
    assert expected_out_from_ladder(ladder, Side.ASK, Decimal("5")) == Decimal("10")
    assert expected_out_from_ladder(ladder, Side.BID, Decimal("5")) == Decimal("0")


def test_expected_out_non_positive_input():
    ladder = Ladder(bids=[LadderLevel(Decimal("10"), Decimal("1"))], asks=[])
    assert expected_out_from_ladder(ladder, Side.ASK, Decimal("0")) == Decimal("0")
    assert expected_out_from_ladder(ladder, Side.ASK, Decimal("-1")) == Decimal("0")


def test_ioc_packet_layout():
    packet = encode_ioc_packet(
        side=Side.ASK,
        price_in_ticks=7,
        num_base_lots=1,
        num_quote_lots=2,
        min_base_lots_to_fill=3,
        min_quote_lots_to_fill=4,
        self_trade_behavior=SelfTradeBehavior.CANCEL_PROVIDE,
        client_order_id=69714,
    )
    assert packet[:2] == bytes([2, 1])
    assert packet[2:11] == b"\x01" + struct.pack("<Q", 7)
    assert struct.unpack_from("<QQQQ", packet, 11) == (1, 2, 3, 4)
    assert packet[43] == 1
    assert packet[44] == 0
    assert int.from_bytes(packet[45:61], "little") == 69714
    assert len(packet) == 64


def test_immediate_or_cancel_instruction(market):
    trader = Pubkey.new_unique()
    base_ata = str(Pubkey.new_unique())
    quote_ata = str(Pubkey.new_unique())
    ix = market.immediate_or_cancel_ix(
        trader,
        base_ata,
        quote_ata,
        side=Side.BID,
        price=Decimal("151"),
        base_size=Decimal("1"),
        quote_size=Decimal("0"),
        min_base_to_fill=Decimal("0.999"),
        min_quote_to_fill=Decimal("0"),
        client_order_id=1,
    )
    assert ix.program_id == PHOENIX_PROGRAM_ID
    assert ix.data[0] == PhoenixInstruction.SWAP
    assert ix.data[1:3] == bytes([2, 0])
    signers = [meta.pubkey for meta in ix.accounts if meta.is_signer]
    assert signers == [trader]
    assert str(ix.accounts[4].pubkey) == base_ata
    assert str(ix.accounts[5].pubkey) == quote_ata


def test_withdraw_all_funds_instruction(market):
    ix = market.withdraw_funds_ix(Pubkey.new_unique(), str(Pubkey.new_unique()), str(Pubkey.new_unique()))
    assert bytes(ix.data) == bytes([PhoenixInstruction.WITHDRAW_FUNDS, 0, 0])
