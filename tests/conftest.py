from __future__ import annotations

import os
import struct
import sys
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SRC_PATH = os.path.join(PROJECT_ROOT, "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

# Keep tests deterministic: do not load developer-local MM_* values.
os.environ["ENV"] = "env.test"
for key in list(os.environ.keys()):
    if key.startswith("MM_"):
        os.environ.pop(key, None)

from phoenix_mm.types import (  # noqa: E402
    InventoryTarget,
    MakerAccounts,
    MarketMetadata,
    QuoteParams,
    RunConfig,
)

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOL_USDC_MARKET = "4DoNfFBfF7UokCC2FQzriy7yHK6DY6NVdYpuekQ5pRgg"


@pytest.fixture(autouse=True)
def _restore_environment() -> None:
    """Prevent environment mutations from leaking across tests."""
    snapshot = os.environ.copy()
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(snapshot)


@pytest.fixture
def make_run_config():
    """Build a SOL/USDC RunConfig (targets 1 SOL / 20 USDC) with overrides."""

    def _make(**overrides) -> RunConfig:
        values = dict(
            metadata=MarketMetadata(
                market=SOL_USDC_MARKET,
                base_mint=SOL_MINT,
                quote_mint=USDC_MINT,
                base_price_feed="H6ARHf6YXhGYeQfUzQNGk6rDNnLBQKrenN712K4AQJEG",
                quote_price_feed="Gnt27xtC473ZT2Mw5u8wZ68Z3gULkSTb5DuxJy7eJotD",
            ),
            target=InventoryTarget(base=Decimal("1"), quote=Decimal("20")),
            quote_params=QuoteParams(quote_edge_bps=5, quote_size_in_quote_atoms=10_000_000),
            maker_accounts=MakerAccounts(base="base-ata", quote="quote-ata"),
            iterations=10,
            interval_s=20.0,
            dry_run=False,
        )
        values.update(overrides)
        return RunConfig(**values)

    return _make


# SOL/USDC: 0.001 SOL lots, 1-atom quote lots, 0.001 USDC ticks.
BASE_LOT_SIZE = 1_000_000
TICK_SIZE = 1_000
LOTS_PER_SOL = 1_000


def _market_header(bids_size: int, asks_size: int, num_seats: int) -> bytes:
    buf = bytearray(576)
    struct.pack_into("<QQQQQ", buf, 0, 0, 1, bids_size, asks_size, num_seats)
    struct.pack_into("<II", buf, 40, 9, 255)
    buf[48:80] = bytes(Pubkey.from_string(SOL_MINT))
    struct.pack_into("<Q", buf, 112, BASE_LOT_SIZE)
    struct.pack_into("<II", buf, 120, 6, 254)
    buf[128:160] = bytes(Pubkey.from_string(USDC_MINT))
    struct.pack_into("<QQ", buf, 192, 1, TICK_SIZE)
    struct.pack_into("<Q", buf, 272, 42)
    struct.pack_into("<I", buf, 312, 1)
    return bytes(buf)


def _order_tree(orders, capacity: int) -> bytes:
    """Orders as a right-leaning chain, which in-order walks front to back."""
    buf = bytearray(32 + capacity * 64)
    struct.pack_into("<I", buf, 0, 1 if orders else 0)
    for i, (ticks, lots, last_valid_slot) in enumerate(orders):
        right = i + 2 if i + 1 < len(orders) else 0
        struct.pack_into("<IIII", buf, 32 + i * 64, 0, right, i, 0)
        struct.pack_into("<QQQQQQ", buf, 32 + i * 64 + 16, ticks, i + 1, 1, lots, last_valid_slot, 0)
    return bytes(buf)


def market_account_data(bids, asks, *, taker_fee_bps: int = 0, capacity: int = 4) -> bytes:
    fifo = bytes(256) + struct.pack("<QQQQQQ", LOTS_PER_SOL, 1, 9, taker_fee_bps, 0, 0)
    traders = bytes(32 + 144)
    return (
        _market_header(capacity, capacity, 1)
        + fifo
        + _order_tree(bids, capacity)
        + _order_tree(asks, capacity)
        + traders
    )


def price_ticks(price: str) -> int:
    return int(Decimal(price) * 1_000_000 / TICK_SIZE)
