"""
Rebalance decision engine

One check per call:

1. read balances
2. base short  -> BID, spend the quote surplus for base
   quote short -> ASK, spend the base surplus for quote
   otherwise   -> no-op
3. compare the order-book expectation with an aggregator quote for the
   same pair and amount; strictly better aggregator output wins, ties stay
   on the order book
4. execute (or only simulate/log in dry-run), then let the ledger settle
   and return fresh balances

An aggregator swap that fails is re-quoted and retried once.  If that
retry fails too, or the re-quote is no longer better, the order book
takes the trade for this cycle.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol

from .aggregator_venue import AggregatorExecutionError, Route, SwapResult
from .trade_journal import TradeJournal
from .types import (
    BalancePair,
    InventoryTarget,
    RebalanceOutcome,
    RebalanceVenue,
    RunConfig,
    RunState,
    Side,
)
from .utils import to_ui_amount

logger = logging.getLogger(__name__)


class BalanceSource(Protocol):
    async def get_balances(self, quote_account: str, base_account: str) -> BalancePair: ...


class OrderBookPort(Protocol):
    @property
    def base_decimals(self) -> int: ...

    @property
    def quote_decimals(self) -> int: ...

    async def expected_output_atoms(self, side: Side, in_amount: Decimal) -> Decimal: ...

    async def submit_immediate_or_cancel(
        self,
        side: Side,
        base_size: Decimal,
        quote_size: Decimal,
        *,
        simulate_only: bool = False,
    ) -> Optional[str]: ...


class AggregatorPort(Protocol):
    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        input_amount: Decimal,
        slippage_bps: int,
    ) -> Optional[Route]: ...

    async def execute(self, route: Route) -> SwapResult: ...


def select_side(balances: BalancePair, target: InventoryTarget) -> Optional[Side]:
    """Side of the corrective trade, or None when both assets are in range.

    Base is checked first; a BID is chosen whenever base is short, whatever
    the quote balance.
    """
    if balances.base < target.base_floor:
        return Side.BID
    if balances.quote < target.quote_floor:
        return Side.ASK
    return None


def surplus_to_spend(side: Side, balances: BalancePair, target: InventoryTarget) -> Decimal:
    if side is Side.BID:
        return balances.quote - target.quote
    return balances.base - target.base


class RebalanceEngine:
    """Checks inventory drift and routes the corrective trade."""

    def __init__(
        self,
        config: RunConfig,
        balances: BalanceSource,
        order_book: OrderBookPort,
        aggregator: AggregatorPort,
        *,
        journal: Optional[TradeJournal] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._balances = balances
        self._order_book = order_book
        self._aggregator = aggregator
        self._journal = journal
        self._sleep = sleep

    @property
    def dry_run(self) -> bool:
        return self._config.dry_run

    async def read_balances(self) -> BalancePair:
        accounts = self._config.maker_accounts
        return await self._balances.get_balances(accounts.quote, accounts.base)

    def _mints(self, side: Side) -> tuple[str, str]:
        meta = self._config.metadata
        if side is Side.BID:
            return meta.quote_mint, meta.base_mint
        return meta.base_mint, meta.quote_mint

    async def _aggregator_quote(self, side: Side, in_amount: Decimal) -> Optional[Route]:
        input_mint, output_mint = self._mints(side)
        return await self._aggregator.quote(input_mint, output_mint, in_amount, self._config.slippage_bps)

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    async def check(self, state: Optional[RunState] = None) -> RebalanceOutcome:
        """Run one drift check and act on it.

        Returns the post-rebalance balances when live, a zero pair in dry-run.
        """
        target = self._config.target
        balances = await self.read_balances()
        side = select_side(balances, target)
        if state is not None:
            state.current_side = side

        if side is None:
            logger.info("rebalance not required")
            return self._no_action(balances)

        floor = target.base_floor if side is Side.BID else target.quote_floor
        logger.info(
            "rebalancing: %s balance is lower than %s",
            "base" if side is Side.BID else "quote",
            floor,
        )
        in_amount = surplus_to_spend(side, balances, target)
        if in_amount <= 0:
            logger.warning(
                "Cannot rebalance %s: no %s surplus to spend (%s)",
                side.value,
                "quote" if side is Side.BID else "base",
                in_amount,
            )
            return self._no_action(balances, side=side, in_amount=in_amount)

        order_book_out = await self._order_book.expected_output_atoms(side, in_amount)
        logger.info("Order-book expected out: %s atoms for %s in", order_book_out, in_amount)
        route = await self._aggregator_quote(side, in_amount)
        aggregator_out = Decimal(route.out_amount_atoms) if route is not None else None

        venue = RebalanceVenue.ORDER_BOOK
        signature: Optional[str] = None
        if route is not None and aggregator_out > order_book_out:
            venue = RebalanceVenue.AGGREGATOR
            logger.info(
                "Aggregator yields higher out by %s atoms",
                aggregator_out - order_book_out,
            )
            if self.dry_run:
                logger.info("Dry run: aggregator swap not executed")
            else:
                try:
                    signature = await self._swap_with_retry(side, in_amount, route)
                except AggregatorExecutionError as exc:
                    logger.error("Aggregator failed, falling back to order book: %s", exc)
                    venue = RebalanceVenue.ORDER_BOOK
                    order_book_out = await self._order_book.expected_output_atoms(side, in_amount)
        elif aggregator_out is not None:
            logger.info(
                "Order book yields higher or equal out by %s atoms",
                order_book_out - aggregator_out,
            )
        else:
            logger.info("No aggregator route; using order book")

        if venue is RebalanceVenue.ORDER_BOOK:
            signature = await self._order_book_trade(side, order_book_out)

        outcome_balances = await self._settle()
        outcome = RebalanceOutcome(
            venue=venue,
            side=side,
            in_amount=in_amount,
            order_book_out_atoms=order_book_out,
            aggregator_out_atoms=aggregator_out,
            balances=outcome_balances,
            simulated=self.dry_run,
            signature=signature,
        )
        self._record(outcome)
        return outcome

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _swap_with_retry(self, side: Side, in_amount: Decimal, route: Route) -> Optional[str]:
        result = await self._aggregator.execute(route)
        if result.ok:
            return result.signature

        logger.warning("Aggregator swap failed (%s); re-quoting once", result.error)
        order_book_out = await self._order_book.expected_output_atoms(side, in_amount)
        retry_route = await self._aggregator_quote(side, in_amount)
        if retry_route is None or Decimal(retry_route.out_amount_atoms) <= order_book_out:
            raise AggregatorExecutionError("Aggregator re-quote is no longer better than the order book")

        result = await self._aggregator.execute(retry_route)
        if result.ok:
            return result.signature
        raise AggregatorExecutionError(f"Aggregator swap failed after retry: {result.error}")

    async def _order_book_trade(self, side: Side, out_atoms: Decimal) -> Optional[str]:
        if out_atoms <= 0:
            logger.warning("Order book has no liquidity for a %s rebalance", side.value)
            return None
        if side is Side.BID:
            base_size = to_ui_amount(out_atoms, self._order_book.base_decimals)
            quote_size = Decimal("0")
        else:
            base_size = Decimal("0")
            quote_size = to_ui_amount(out_atoms, self._order_book.quote_decimals)
        return await self._order_book.submit_immediate_or_cancel(
            side,
            base_size,
            quote_size,
            simulate_only=self.dry_run,
        )

    async def _settle(self) -> BalancePair:
        if self.dry_run:
            return BalancePair.zero()
        await self._sleep(self._config.settle_delay_s)
        return await self.read_balances()

    def _no_action(
        self,
        balances: BalancePair,
        *,
        side: Optional[Side] = None,
        in_amount: Decimal = Decimal("0"),
    ) -> RebalanceOutcome:
        return RebalanceOutcome(
            venue=RebalanceVenue.NONE,
            side=side,
            in_amount=in_amount,
            balances=BalancePair.zero() if self.dry_run else balances,
            simulated=self.dry_run,
        )

    def _record(self, outcome: RebalanceOutcome) -> None:
        if self._journal is None:
            return
        self._journal.record_rebalance(
            venue=outcome.venue.value,
            side=outcome.side.value if outcome.side else None,
            in_amount=outcome.in_amount,
            order_book_out_atoms=outcome.order_book_out_atoms,
            aggregator_out_atoms=outcome.aggregator_out_atoms,
            simulated=outcome.simulated,
            signature=outcome.signature,
        )
