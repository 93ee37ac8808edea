"""On-chain quoting strategy program binding.

The program owns the quote-refresh logic; this module only serializes its
two Anchor instructions and derives the per-market strategy account.
"""
from __future__ import annotations

import hashlib
import struct
from typing import Protocol, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import TOKEN_PROGRAM_ID

from .phoenix_market import PHOENIX_PROGRAM_ID, PhoenixMarket, log_authority, seat_address
from .types import MakerAccounts, QuoteParams

STRATEGY_PROGRAM_ID = Pubkey.from_string("Exz7z8HpBjS7trD6ZbdWABdQyhK5ZvGkuV4UYoUiSTQQ")

_STRATEGY_SEED = b"phoenix"


def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def strategy_address(signer: Pubkey, market: str | Pubkey) -> Tuple[Pubkey, int]:
    market_key = market if isinstance(market, Pubkey) else Pubkey.from_string(market)
    return Pubkey.find_program_address(
        [_STRATEGY_SEED, bytes(signer), bytes(market_key)],
        STRATEGY_PROGRAM_ID,
    )


def encode_initialize(params: QuoteParams) -> bytes:
    return anchor_discriminator("initialize") + struct.pack(
        "<QQB?",
        params.quote_edge_bps,
        params.quote_size_in_quote_atoms,
        params.price_improvement.wire_value,
        params.post_only,
    )


def encode_update_quotes(
    params: QuoteParams,
    *,
    client_order_id_seed: int = 0,
    use_provided_price: bool = True,
) -> bytes:
    return anchor_discriminator("update_quotes") + struct.pack(
        "<QQQB??Q",
        client_order_id_seed,
        params.quote_edge_bps,
        params.quote_size_in_quote_atoms,
        params.price_improvement.wire_value,
        params.post_only,
        use_provided_price,
        params.margin,
    )


def initialize_ix(signer: Pubkey, market: str, params: QuoteParams) -> Instruction:
    strategy, _ = strategy_address(signer, market)
    return Instruction(
        STRATEGY_PROGRAM_ID,
        encode_initialize(params),
        [
            AccountMeta(strategy, is_signer=False, is_writable=True),
            AccountMeta(signer, is_signer=True, is_writable=True),
            AccountMeta(Pubkey.from_string(market), is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def update_quotes_ix(
    signer: Pubkey,
    market: PhoenixMarket,
    maker_accounts: MakerAccounts,
    params: QuoteParams,
    price_feeds: Tuple[str, str],
) -> Instruction:
    """Replace the signer's resting quotes on *market*.

    The two price-feed accounts (base, quote) are passed as remaining
    accounts; the program reads fair value from them.
    """
    market_key = Pubkey.from_string(market.address)
    strategy, _ = strategy_address(signer, market_key)
    accounts = [
        AccountMeta(strategy, is_signer=False, is_writable=True),
        AccountMeta(signer, is_signer=True, is_writable=False),
        AccountMeta(PHOENIX_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(log_authority(), is_signer=False, is_writable=False),
        AccountMeta(market_key, is_signer=False, is_writable=True),
        AccountMeta(seat_address(market_key, signer), is_signer=False, is_writable=False),
        AccountMeta(Pubkey.from_string(maker_accounts.quote), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(maker_accounts.base), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(market.header.quote.vault), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(market.header.base.vault), is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    for feed in price_feeds:
        accounts.append(AccountMeta(Pubkey.from_string(feed), is_signer=False, is_writable=False))
    return Instruction(STRATEGY_PROGRAM_ID, encode_update_quotes(params), accounts)


class QuoteSubmitter(Protocol):
    @property
    def signer_pubkey(self) -> Pubkey: ...

    async def send_and_confirm(self, instructions: Sequence[Instruction]) -> str: ...


class MarketSource(Protocol):
    @property
    def market(self) -> PhoenixMarket: ...


class StrategyQuotePublisher:
    """Sends one ``update_quotes`` transaction per call."""

    def __init__(
        self,
        rpc: QuoteSubmitter,
        venue: MarketSource,
        maker_accounts: MakerAccounts,
        params: QuoteParams,
        price_feeds: Tuple[str, str],
    ) -> None:
        self._rpc = rpc
        self._venue = venue
        self._accounts = maker_accounts
        self._params = params
        self._price_feeds = price_feeds

    async def update_quotes(self) -> str:
        ix = update_quotes_ix(
            self._rpc.signer_pubkey,
            self._venue.market,
            self._accounts,
            self._params,
            self._price_feeds,
        )
        return await self._rpc.send_and_confirm([ix])
