"""
Phoenix order-book program binding

Decodes the market account (header + FIFO book) into plain dataclasses,
walks the resting book to estimate taker output, and builds the handful of
instructions the market maker needs: immediate-or-cancel swap, cancel-all,
withdraw, seat request and seat claim.

Matching and pricing stay on-chain; ``expected_out`` is a read-only
estimate over the decoded snapshot.
"""
from __future__ import annotations

import struct
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import TOKEN_PROGRAM_ID

from .rpc import ClockSnapshot
from .types import Side

PHOENIX_PROGRAM_ID = Pubkey.from_string("PhoeNiXZ8ByJGLkxNfZRnkUfjvmuYqLR89jjFHGqdXY")
SEAT_MANAGER_PROGRAM_ID = Pubkey.from_string("PSMxQbAoDWDbvd9ezQJgARyq6R9L5kJAasaLDVcZwf1")

# Data size of a Phoenix market account, used to enumerate markets.
MARKET_ACCOUNT_SIZE = 1723488

# JS Number.MAX_SAFE_INTEGER; tick prices above half of it lose precision
# when the order is built from a float price.
MAX_SAFE_INTEGER = 2**53 - 1

_HEADER_SIZE = 576
_FIFO_PADDING = 256
_FIFO_SCALARS = "<QQQQQQ"
_TREE_HEADER_SIZE = 32
_REGISTER_FORMAT = "<IIII"
_REGISTER_SIZE = 16
_ORDER_NODE_SIZE = _REGISTER_SIZE + 16 + 32
_TRADER_NODE_SIZE = _REGISTER_SIZE + 32 + 96


class PhoenixInstruction(IntEnum):
    SWAP = 0
    CANCEL_ALL_ORDERS = 6
    WITHDRAW_FUNDS = 12
    REQUEST_SEAT = 14


class SeatManagerInstruction(IntEnum):
    CLAIM_SEAT = 1


class SelfTradeBehavior(IntEnum):
    ABORT = 0
    CANCEL_PROVIDE = 1
    DECREMENT_TAKE = 2


_ORDER_PACKET_IOC = 2


class MarketDecodeError(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenParams:
    decimals: int
    vault_bump: int
    mint: str
    vault: str


@dataclass(frozen=True)
class MarketHeader:
    status: int
    bids_size: int
    asks_size: int
    num_seats: int
    base: TokenParams
    base_lot_size: int
    quote: TokenParams
    quote_lot_size: int
    tick_size_in_quote_atoms_per_base_unit: int
    authority: str
    fee_recipient: str
    market_sequence_number: int
    successor: str
    raw_base_units_per_base_unit: int

    @property
    def quote_lots_per_base_unit_per_tick(self) -> Decimal:
        return Decimal(self.tick_size_in_quote_atoms_per_base_unit) / Decimal(self.quote_lot_size)


@dataclass(frozen=True)
class RestingOrder:
    price_in_ticks: int
    order_sequence_number: int
    trader_index: int
    num_base_lots: int
    last_valid_slot: int
    last_valid_unix_timestamp: int

    def is_expired(self, clock: ClockSnapshot) -> bool:
        if self.last_valid_slot and self.last_valid_slot < clock.slot:
            return True
        if self.last_valid_unix_timestamp and self.last_valid_unix_timestamp < clock.unix_timestamp:
            return True
        return False


@dataclass(frozen=True)
class LadderLevel:
    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class Ladder:
    """Aggregated book in UI units: best price first on both sides."""

    bids: List[LadderLevel]
    asks: List[LadderLevel]


def _token_params(data: bytes, offset: int) -> TokenParams:
    decimals, vault_bump = struct.unpack_from("<II", data, offset)
    mint = Pubkey.from_bytes(data[offset + 8:offset + 40])
    vault = Pubkey.from_bytes(data[offset + 40:offset + 72])
    return TokenParams(decimals=decimals, vault_bump=vault_bump, mint=str(mint), vault=str(vault))


def _pubkey_at(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset:offset + 32]))


def decode_header(data: bytes) -> MarketHeader:
    if len(data) < _HEADER_SIZE:
        raise MarketDecodeError(f"Market account too short for header: {len(data)} bytes")
    _discriminant, status, bids_size, asks_size, num_seats = struct.unpack_from("<QQQQQ", data, 0)
    base = _token_params(data, 40)
    (base_lot_size,) = struct.unpack_from("<Q", data, 112)
    quote = _token_params(data, 120)
    quote_lot_size, tick_size = struct.unpack_from("<QQ", data, 192)
    (sequence_number,) = struct.unpack_from("<Q", data, 272)
    (raw_base_units,) = struct.unpack_from("<I", data, 312)
    return MarketHeader(
        status=status,
        bids_size=bids_size,
        asks_size=asks_size,
        num_seats=num_seats,
        base=base,
        base_lot_size=base_lot_size,
        quote=quote,
        quote_lot_size=quote_lot_size,
        tick_size_in_quote_atoms_per_base_unit=tick_size,
        authority=_pubkey_at(data, 208),
        fee_recipient=_pubkey_at(data, 240),
        market_sequence_number=sequence_number,
        successor=_pubkey_at(data, 280),
        raw_base_units_per_base_unit=max(1, raw_base_units),
    )


def _iter_tree(data: bytes, offset: int, capacity: int, node_size: int) -> Iterator[int]:
    """Yield node offsets of a red-black tree in key order."""
    (root,) = struct.unpack_from("<I", data, offset)
    nodes_start = offset + _TREE_HEADER_SIZE

    def registers(addr: int) -> Tuple[int, int, int, int]:
        return struct.unpack_from(_REGISTER_FORMAT, data, nodes_start + (addr - 1) * node_size)

    stack: List[int] = []
    node = root
    visited = 0
    while stack or node:
        while node:
            if node > capacity or visited > capacity or len(stack) >= capacity:
                raise MarketDecodeError("Order tree is corrupt")
            stack.append(node)
            node = registers(node)[0]
        node = stack.pop()
        visited += 1
        yield nodes_start + (node - 1) * node_size
        node = registers(node)[1]


def _decode_orders(data: bytes, offset: int, capacity: int) -> List[RestingOrder]:
    orders = []
    for node_offset in _iter_tree(data, offset, capacity, _ORDER_NODE_SIZE):
        price, seq, trader, lots, slot, ts = struct.unpack_from(
            "<QQQQQQ", data, node_offset + _REGISTER_SIZE
        )
        orders.append(
            RestingOrder(
                price_in_ticks=price,
                order_sequence_number=seq,
                trader_index=trader,
                num_base_lots=lots,
                last_valid_slot=slot,
                last_valid_unix_timestamp=ts,
            )
        )
    return orders


def _tree_size(capacity: int, node_size: int) -> int:
    return _TREE_HEADER_SIZE + capacity * node_size


# ---------------------------------------------------------------------------
# Market snapshot
# ---------------------------------------------------------------------------

class PhoenixMarket:
    """In-memory snapshot of one Phoenix market account."""

    def __init__(
        self,
        address: str,
        header: MarketHeader,
        *,
        taker_fee_bps: int,
        bids: List[RestingOrder],
        asks: List[RestingOrder],
    ) -> None:
        self.address = address
        self.header = header
        self.taker_fee_bps = taker_fee_bps
        self.bids = bids
        self.asks = asks

    @classmethod
    def from_account_data(cls, address: str, data: bytes) -> "PhoenixMarket":
        header = decode_header(data)
        offset = _HEADER_SIZE + _FIFO_PADDING
        (
            _base_lots_per_base_unit,
            _tick_size_in_quote_lots,
            _order_sequence_number,
            taker_fee_bps,
            _collected_fees,
            _unclaimed_fees,
        ) = struct.unpack_from(_FIFO_SCALARS, data, offset)
        offset += struct.calcsize(_FIFO_SCALARS)

        bids_offset = offset
        asks_offset = bids_offset + _tree_size(header.bids_size, _ORDER_NODE_SIZE)
        traders_offset = asks_offset + _tree_size(header.asks_size, _ORDER_NODE_SIZE)
        if len(data) < traders_offset + _tree_size(header.num_seats, _TRADER_NODE_SIZE):
            raise MarketDecodeError(
                f"Market account {address} has {len(data)} bytes; too short for its size params"
            )
        return cls(
            address,
            header,
            taker_fee_bps=taker_fee_bps,
            bids=_decode_orders(data, bids_offset, header.bids_size),
            asks=_decode_orders(data, asks_offset, header.asks_size),
        )

    # --- unit conversions -------------------------------------------------

    @property
    def base_decimals(self) -> int:
        return self.header.base.decimals

    @property
    def quote_decimals(self) -> int:
        return self.header.quote.decimals

    def ticks_to_price(self, ticks: int) -> Decimal:
        h = self.header
        return (
            Decimal(ticks)
            * Decimal(h.tick_size_in_quote_atoms_per_base_unit)
            / (Decimal(10) ** h.quote.decimals * Decimal(h.raw_base_units_per_base_unit))
        )

    def price_to_ticks(self, price: Decimal) -> int:
        h = self.header
        ticks = (
            Decimal(price)
            * Decimal(10) ** h.quote.decimals
            * Decimal(h.raw_base_units_per_base_unit)
            / Decimal(h.tick_size_in_quote_atoms_per_base_unit)
        )
        return int(ticks.to_integral_value())

    def base_lots_to_units(self, lots: int) -> Decimal:
        return Decimal(lots) * Decimal(self.header.base_lot_size) / Decimal(10) ** self.base_decimals

    def base_units_to_lots(self, units: Decimal) -> int:
        return int(Decimal(units) * Decimal(10) ** self.base_decimals / Decimal(self.header.base_lot_size))

    def quote_units_to_lots(self, units: Decimal) -> int:
        return int(Decimal(units) * Decimal(10) ** self.quote_decimals / Decimal(self.header.quote_lot_size))

    def max_float_price(self) -> Decimal:
        """Largest bid price whose tick value stays below MAX_SAFE_INTEGER / 2."""
        h = self.header
        return (
            Decimal(MAX_SAFE_INTEGER)
            / 2
            / (Decimal(10) ** h.quote.decimals * Decimal(h.raw_base_units_per_base_unit))
            * (h.quote_lots_per_base_unit_per_tick * Decimal(h.quote_lot_size))
        )

    # --- book -------------------------------------------------------------

    def ladder(self, clock: ClockSnapshot) -> Ladder:
        def levels(orders: List[RestingOrder], descending: bool) -> List[LadderLevel]:
            by_price: Dict[int, int] = defaultdict(int)
            for order in orders:
                if order.num_base_lots and not order.is_expired(clock):
                    by_price[order.price_in_ticks] += order.num_base_lots
            return [
                LadderLevel(price=self.ticks_to_price(ticks), size=self.base_lots_to_units(lots))
                for ticks, lots in sorted(by_price.items(), reverse=descending)
            ]

        return Ladder(bids=levels(self.bids, True), asks=levels(self.asks, False))

    def expected_out(self, side: Side, in_amount: Decimal, clock: ClockSnapshot) -> Decimal:
        """Output (UI units) of a taker order spending *in_amount*.

        BID spends quote and receives base; ASK spends base and receives quote.
        """
        return expected_out_from_ladder(self.ladder(clock), side, in_amount, self.taker_fee_bps)

    # --- instructions -----------------------------------------------------

    def _trade_accounts(self, trader: Pubkey, base_account: str, quote_account: str) -> List[AccountMeta]:
        return [
            AccountMeta(PHOENIX_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(log_authority(), is_signer=False, is_writable=False),
            AccountMeta(Pubkey.from_string(self.address), is_signer=False, is_writable=True),
            AccountMeta(trader, is_signer=True, is_writable=False),
            AccountMeta(Pubkey.from_string(base_account), is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(quote_account), is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(self.header.base.vault), is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(self.header.quote.vault), is_signer=False, is_writable=True),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ]

    def immediate_or_cancel_ix(
        self,
        trader: Pubkey,
        base_account: str,
        quote_account: str,
        *,
        side: Side,
        price: Decimal,
        base_size: Decimal,
        quote_size: Decimal,
        min_base_to_fill: Decimal,
        min_quote_to_fill: Decimal,
        client_order_id: int,
        self_trade_behavior: SelfTradeBehavior = SelfTradeBehavior.CANCEL_PROVIDE,
    ) -> Instruction:
        packet = encode_ioc_packet(
            side=side,
            price_in_ticks=self.price_to_ticks(price),
            num_base_lots=self.base_units_to_lots(base_size),
            num_quote_lots=self.quote_units_to_lots(quote_size),
            min_base_lots_to_fill=self.base_units_to_lots(min_base_to_fill),
            min_quote_lots_to_fill=self.quote_units_to_lots(min_quote_to_fill),
            self_trade_behavior=self_trade_behavior,
            client_order_id=client_order_id,
        )
        return Instruction(
            PHOENIX_PROGRAM_ID,
            bytes([PhoenixInstruction.SWAP]) + packet,
            self._trade_accounts(trader, base_account, quote_account),
        )

    def cancel_all_orders_ix(self, trader: Pubkey, base_account: str, quote_account: str) -> Instruction:
        return Instruction(
            PHOENIX_PROGRAM_ID,
            bytes([PhoenixInstruction.CANCEL_ALL_ORDERS]),
            self._trade_accounts(trader, base_account, quote_account),
        )

    def withdraw_funds_ix(self, trader: Pubkey, base_account: str, quote_account: str) -> Instruction:
        # quote_lots_to_withdraw = None, base_lots_to_withdraw = None -> withdraw everything
        data = bytes([PhoenixInstruction.WITHDRAW_FUNDS]) + _option_u64(None) + _option_u64(None)
        return Instruction(
            PHOENIX_PROGRAM_ID,
            data,
            self._trade_accounts(trader, base_account, quote_account),
        )

    def request_seat_ix(self, trader: Pubkey) -> Instruction:
        market = Pubkey.from_string(self.address)
        return Instruction(
            PHOENIX_PROGRAM_ID,
            bytes([PhoenixInstruction.REQUEST_SEAT]),
            [
                AccountMeta(PHOENIX_PROGRAM_ID, is_signer=False, is_writable=False),
                AccountMeta(log_authority(), is_signer=False, is_writable=False),
                AccountMeta(market, is_signer=False, is_writable=True),
                AccountMeta(trader, is_signer=True, is_writable=True),
                AccountMeta(seat_address(market, trader), is_signer=False, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )

    def claim_seat_ix(self, trader: Pubkey) -> Instruction:
        market = Pubkey.from_string(self.address)
        seat_manager, _ = Pubkey.find_program_address([bytes(market)], SEAT_MANAGER_PROGRAM_ID)
        deposit_collector, _ = Pubkey.find_program_address(
            [bytes(market), b"deposit"], SEAT_MANAGER_PROGRAM_ID
        )
        return Instruction(
            SEAT_MANAGER_PROGRAM_ID,
            bytes([SeatManagerInstruction.CLAIM_SEAT]),
            [
                AccountMeta(PHOENIX_PROGRAM_ID, is_signer=False, is_writable=False),
                AccountMeta(log_authority(), is_signer=False, is_writable=False),
                AccountMeta(market, is_signer=False, is_writable=True),
                AccountMeta(seat_manager, is_signer=False, is_writable=True),
                AccountMeta(deposit_collector, is_signer=False, is_writable=True),
                AccountMeta(trader, is_signer=True, is_writable=False),
                AccountMeta(trader, is_signer=True, is_writable=True),
                AccountMeta(seat_address(market, trader), is_signer=False, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )


def expected_out_from_ladder(
    ladder: Ladder,
    side: Side,
    in_amount: Decimal,
    taker_fee_bps: int = 0,
) -> Decimal:
    remaining = Decimal(in_amount)
    if remaining <= 0:
        return Decimal("0")
    fee = Decimal(taker_fee_bps) / Decimal(10_000)
    out = Decimal("0")

    if side is Side.BID:
        # Fee is charged on top of the quote matched.
        remaining = remaining / (1 + fee)
        for level in ladder.asks:
            if level.price <= 0:
                continue
            cost = level.price * level.size
            if remaining >= cost:
                out += level.size
                remaining -= cost
            else:
                out += remaining / level.price
                break
        return out

    for level in ladder.bids:
        fill = min(remaining, level.size)
        out += fill * level.price
        remaining -= fill
        if remaining <= 0:
            break
    return out * (1 - fee)


# ---------------------------------------------------------------------------
# Encoding helpers and PDAs
# ---------------------------------------------------------------------------

def _option_u64(value: Optional[int]) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + struct.pack("<Q", value)


def encode_ioc_packet(
    *,
    side: Side,
    price_in_ticks: Optional[int],
    num_base_lots: int,
    num_quote_lots: int,
    min_base_lots_to_fill: int,
    min_quote_lots_to_fill: int,
    self_trade_behavior: SelfTradeBehavior,
    client_order_id: int,
    match_limit: Optional[int] = None,
    use_only_deposited_funds: bool = False,
) -> bytes:
    client_id = client_order_id & ((1 << 128) - 1)
    return b"".join(
        [
            bytes([_ORDER_PACKET_IOC, side.wire_value]),
            _option_u64(price_in_ticks),
            struct.pack("<QQQQ", num_base_lots, num_quote_lots, min_base_lots_to_fill, min_quote_lots_to_fill),
            bytes([int(self_trade_behavior)]),
            _option_u64(match_limit),
            client_id.to_bytes(16, "little"),
            bytes([1 if use_only_deposited_funds else 0]),
            _option_u64(None),  # last_valid_slot
            _option_u64(None),  # last_valid_unix_timestamp_in_seconds
        ]
    )


def log_authority() -> Pubkey:
    address, _ = Pubkey.find_program_address([b"log"], PHOENIX_PROGRAM_ID)
    return address


def seat_address(market: Pubkey, trader: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address([b"seat", bytes(market), bytes(trader)], PHOENIX_PROGRAM_ID)
    return address
