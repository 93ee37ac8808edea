"""
Order-book venue adapter

Wraps one Phoenix market: expected taker output over the latest snapshot,
immediate-or-cancel corrective orders, and the cancel-all + withdraw pair
used for cleanup and recovery.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .phoenix_market import PhoenixMarket
from .rpc import AccountSnapshot, ClockSnapshot, SimulationReport, VenueError
from .types import MakerAccounts, Side
from .utils import CLIENT_ORDER_ID_BASE_TAG, client_order_id, solscan_url, to_atoms

logger = logging.getLogger(__name__)

# Min-fill guard: accept up to this fraction less than the requested output.
MIN_FILL_DISCOUNT = Decimal("0.001")


class WithdrawError(VenueError):
    """Orders were cancelled but the withdraw call failed; funds stay on the market."""


class LedgerClient(Protocol):
    @property
    def signer_pubkey(self) -> Pubkey: ...

    async def get_account(self, address: str) -> Optional[AccountSnapshot]: ...

    async def get_clock(self) -> ClockSnapshot: ...

    async def send_and_confirm(self, instructions: Sequence[Instruction]) -> str: ...

    async def simulate(self, instructions: Sequence[Instruction]) -> SimulationReport: ...


class OrderBookVenue:
    """Order-book side of the rebalance decision."""

    def __init__(
        self,
        rpc: LedgerClient,
        market: PhoenixMarket,
        maker_accounts: MakerAccounts,
        *,
        settle_delay_s: float = 5.0,
        client_order_tag: int = CLIENT_ORDER_ID_BASE_TAG,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._rpc = rpc
        self._market = market
        self._accounts = maker_accounts
        self._settle_delay_s = settle_delay_s
        self._client_order_tag = client_order_tag
        self._sleep = sleep
        self._clock: Optional[ClockSnapshot] = None

    @classmethod
    async def load(
        cls,
        rpc: LedgerClient,
        market_address: str,
        maker_accounts: MakerAccounts,
        **kwargs,
    ) -> "OrderBookVenue":
        market = await fetch_market(rpc, market_address)
        return cls(rpc, market, maker_accounts, **kwargs)

    @property
    def market(self) -> PhoenixMarket:
        return self._market

    @property
    def base_decimals(self) -> int:
        return self._market.base_decimals

    @property
    def quote_decimals(self) -> int:
        return self._market.quote_decimals

    @property
    def clock(self) -> Optional[ClockSnapshot]:
        return self._clock

    # ------------------------------------------------------------------
    # Expected output
    # ------------------------------------------------------------------

    async def refresh_clock(self) -> ClockSnapshot:
        self._clock = await self._rpc.get_clock()
        return self._clock

    async def refresh_market(self) -> PhoenixMarket:
        self._market = await fetch_market(self._rpc, self._market.address)
        return self._market

    def expected_output(self, side: Side, in_amount: Decimal, clock: ClockSnapshot) -> Decimal:
        """Output in UI units of spending *in_amount* against the snapshot.

        The clock must be fresh: expired resting orders are filtered by it.
        """
        return self._market.expected_out(side, in_amount, clock)

    async def expected_output_atoms(self, side: Side, in_amount: Decimal) -> Decimal:
        """Refresh book and clock, then return the output in atomic units."""
        await self.refresh_market()
        clock = await self.refresh_clock()
        out_ui = self.expected_output(side, in_amount, clock)
        decimals = self.base_decimals if side is Side.BID else self.quote_decimals
        return to_atoms(out_ui, decimals)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def build_immediate_or_cancel(
        self,
        side: Side,
        base_size: Decimal,
        quote_size: Decimal,
    ) -> Instruction:
        trader = self._rpc.signer_pubkey
        is_bid = side is Side.BID
        base_size = Decimal(base_size) if is_bid else Decimal("0")
        quote_size = Decimal(quote_size) if not is_bid else Decimal("0")
        return self._market.immediate_or_cancel_ix(
            trader,
            self._accounts.base,
            self._accounts.quote,
            side=side,
            price=self._market.max_float_price() if is_bid else Decimal("0"),
            base_size=base_size,
            quote_size=quote_size,
            min_base_to_fill=base_size * (1 - MIN_FILL_DISCOUNT),
            min_quote_to_fill=quote_size * (1 - MIN_FILL_DISCOUNT),
            client_order_id=client_order_id(str(trader), self._client_order_tag),
        )

    async def submit_immediate_or_cancel(
        self,
        side: Side,
        base_size: Decimal,
        quote_size: Decimal,
        *,
        simulate_only: bool = False,
    ) -> Optional[str]:
        """Send one IOC order; return its signature, or None when simulated.

        A BID buys *base_size* base units, an ASK sells base for *quote_size*
        quote units.  The other size is ignored.
        """
        ix = self.build_immediate_or_cancel(side, base_size, quote_size)
        if simulate_only:
            report = await self._rpc.simulate([ix])
            logger.info(
                "Simulated %s IOC: ok=%s err=%s units=%s",
                side.value,
                report.ok,
                report.error,
                report.units_consumed,
            )
            for line in report.logs:
                logger.debug("  %s", line)
            return None

        signature = await self._rpc.send_and_confirm([ix])
        logger.info("Order-book %s IOC: %s", side.value, solscan_url(signature))
        return signature

    async def cancel_all_and_withdraw(self) -> None:
        """Cancel every resting order then withdraw all free funds.

        Two separate transactions.  A failed withdraw raises WithdrawError
        with the orders already cancelled.
        """
        trader = self._rpc.signer_pubkey
        cancel_ix = self._market.cancel_all_orders_ix(trader, self._accounts.base, self._accounts.quote)
        signature = await self._rpc.send_and_confirm([cancel_ix])
        logger.info("Cancelled all orders: %s", solscan_url(signature))

        withdraw_ix = self._market.withdraw_funds_ix(trader, self._accounts.base, self._accounts.quote)
        try:
            signature = await self._rpc.send_and_confirm([withdraw_ix])
        except VenueError as exc:
            raise WithdrawError(f"Withdraw failed after cancel-all: {exc}") from exc
        logger.info("Withdrew funds: %s", solscan_url(signature))

        await self._sleep(self._settle_delay_s)


async def fetch_market(rpc: LedgerClient, market_address: str) -> PhoenixMarket:
    info = await rpc.get_account(market_address)
    if info is None:
        raise VenueError(f"Market account {market_address} not found")
    return PhoenixMarket.from_account_data(market_address, info.data)
