"""
Balance snapshot provider

Reads the maker's base/quote SPL token accounts and converts raw amounts to
UI units.  Every call hits the ledger again: a cached balance would feed
stale inventory into the rebalance decision.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Optional, Protocol

from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from .rpc import AccountSnapshot
from .types import BalancePair
from .utils import to_ui_amount

logger = logging.getLogger(__name__)

# mint(32) owner(32) amount(u64) delegate_option(u32) delegate(32) state(u8)
# is_native_option(u32) is_native(u64) delegated_amount(u64)
# close_authority_option(u32) close_authority(32)
ACCOUNT_SIZE = 165
_ACCOUNT_TYPE_MARKER = 2
_AMOUNT_OFFSET = 64
_STATE_OFFSET = 108


class TokenAccountError(RuntimeError):
    """Base class for token account decoding errors."""


class TokenAccountNotFoundError(TokenAccountError):
    pass


class TokenInvalidAccountOwnerError(TokenAccountError):
    pass


class TokenInvalidAccountSizeError(TokenAccountError):
    pass


@dataclass(frozen=True)
class TokenAccount:
    address: str
    mint: str
    owner: str
    amount: int
    is_initialized: bool
    is_frozen: bool


def unpack_token_account(
    address: str,
    info: Optional[AccountSnapshot],
    program_id: Pubkey = TOKEN_PROGRAM_ID,
) -> TokenAccount:
    if info is None:
        raise TokenAccountNotFoundError(f"Token account {address} not found")
    if info.owner != str(program_id):
        raise TokenInvalidAccountOwnerError(
            f"Token account {address} is owned by {info.owner}, expected {program_id}"
        )
    data = info.data
    if len(data) < ACCOUNT_SIZE:
        raise TokenInvalidAccountSizeError(
            f"Token account {address} has {len(data)} bytes, expected >= {ACCOUNT_SIZE}"
        )
    if len(data) > ACCOUNT_SIZE and data[ACCOUNT_SIZE] != _ACCOUNT_TYPE_MARKER:
        raise TokenInvalidAccountSizeError(
            f"Token account {address} carries extension data without an account marker"
        )

    mint = Pubkey.from_bytes(data[0:32])
    owner = Pubkey.from_bytes(data[32:64])
    (amount,) = struct.unpack_from("<Q", data, _AMOUNT_OFFSET)
    state = data[_STATE_OFFSET]
    return TokenAccount(
        address=address,
        mint=str(mint),
        owner=str(owner),
        amount=amount,
        is_initialized=state != 0,
        is_frozen=state == 2,
    )


def associated_token_address(owner: str | Pubkey, mint: str | Pubkey) -> str:
    owner_key = owner if isinstance(owner, Pubkey) else Pubkey.from_string(owner)
    mint_key = mint if isinstance(mint, Pubkey) else Pubkey.from_string(mint)
    return str(get_associated_token_address(owner_key, mint_key))


class AccountReader(Protocol):
    async def get_account(self, address: str) -> Optional[AccountSnapshot]: ...


class BalanceProvider:
    """Reads base/quote holdings in UI units."""

    def __init__(self, rpc: AccountReader, base_decimals: int, quote_decimals: int) -> None:
        self._rpc = rpc
        self._base_decimals = base_decimals
        self._quote_decimals = quote_decimals

    async def get_token_amount(self, address: str) -> int:
        info = await self._rpc.get_account(address)
        return unpack_token_account(address, info).amount

    async def get_balances(self, quote_account: str, base_account: str) -> BalancePair:
        quote_atoms = await self.get_token_amount(quote_account)
        base_atoms = await self.get_token_amount(base_account)
        balances = BalancePair(
            base=to_ui_amount(base_atoms, self._base_decimals),
            quote=to_ui_amount(quote_atoms, self._quote_decimals),
        )
        logger.info("BaseBalance: %s QuoteBalance: %s", balances.base, balances.quote)
        return balances


def balance_delta(start: BalancePair, end: BalancePair) -> BalancePair:
    return BalancePair(base=end.base - start.base, quote=end.quote - start.quote)

