"""
Quote refresh loop

Top-level scheduler of a run:

BOOTSTRAPPING -> REBALANCING -> QUOTING -> DRAINING -> TERMINATED

A failed quote update does not abort the run: orders are cancelled, funds
withdrawn and inventory re-checked once, then quoting resumes at the next
iteration.  Cleanup at bootstrap and at the end is best effort.
"""
from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Tuple

from .rebalance_engine import RebalanceEngine
from .rpc import VenueError
from .token_accounts import TokenAccountError, balance_delta
from .trade_journal import TradeJournal
from .types import BalancePair, LoopPhase, ProfitReport, RunConfig, RunState
from .utils import solscan_url

logger = logging.getLogger(__name__)


class QuotePublisher(Protocol):
    async def update_quotes(self) -> str: ...


class Drainer(Protocol):
    async def cancel_all_and_withdraw(self) -> None: ...


class PriceSource(Protocol):
    async def get_pair(self, base_feed: str, quote_feed: str) -> Tuple[Decimal, Decimal]: ...


def compute_profit(
    start: BalancePair,
    end: BalancePair,
    base_price: Decimal,
    quote_price: Decimal,
) -> ProfitReport:
    """Mark the inventory change of a run to the reference prices."""
    delta = balance_delta(start, end)
    profit = delta.base * base_price + delta.quote * quote_price
    return ProfitReport(
        start=start,
        end=end,
        base_price=base_price,
        quote_price=quote_price,
        profit=profit,
    )


def remaining_sleep(interval_s: float, elapsed_s: float) -> float:
    return max(0.0, interval_s - elapsed_s)


class QuoteRefreshLoop:
    """Runs one configured market-making session."""

    def __init__(
        self,
        config: RunConfig,
        engine: RebalanceEngine,
        order_book: Drainer,
        publisher: QuotePublisher,
        prices: PriceSource,
        price_feeds: Tuple[str, str],
        *,
        journal: Optional[TradeJournal] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._engine = engine
        self._order_book = order_book
        self._publisher = publisher
        self._prices = prices
        self._price_feeds = price_feeds
        self._journal = journal
        self._sleep = sleep
        self._monotonic = monotonic
        self.state = RunState()

    async def run(self) -> Optional[ProfitReport]:
        cfg = self._config
        state = self.state = RunState()

        if cfg.dry_run:
            return await self._dry_run()

        if cfg.initial_cancel_and_withdraw:
            await self._drain_best_effort("bootstrap")

        if cfg.iterations > 0:
            state.transition(LoopPhase.REBALANCING)
            outcome = await self._engine.check(state)
            state.start_balances = outcome.balances

            state.transition(LoopPhase.QUOTING)
            for i in range(cfg.iterations):
                await self._quote_once(i)

        state.transition(LoopPhase.DRAINING)
        report = await self._finish()
        state.transition(LoopPhase.TERMINATED)
        return report

    async def _dry_run(self) -> None:
        """One decision-engine check, nothing submitted."""
        state = self.state
        if self._config.initial_cancel_and_withdraw:
            logger.info("Dry run: skipping initial cancel and withdraw")
        if self._config.iterations > 0:
            state.transition(LoopPhase.REBALANCING)
            outcome = await self._engine.check(state)
            logger.info("Dry run complete: %s", outcome.venue.value)
        state.transition(LoopPhase.TERMINATED)
        return None

    # ------------------------------------------------------------------
    # Quoting
    # ------------------------------------------------------------------

    async def _quote_once(self, i: int) -> None:
        state = self.state
        state.iteration = i
        started = self._monotonic()
        signature: Optional[str] = None
        error: Optional[str] = None
        try:
            signature = await self._publisher.update_quotes()
            logger.info("%d %s", i, solscan_url(signature))
        except VenueError as exc:
            error = str(exc)
            state.quote_failures += 1
            state.last_error = error
            logger.error("Quote update %d failed: %s", i, exc)

        if self._journal is not None:
            self._journal.record_quote_update(
                iteration=i,
                signature=signature,
                elapsed_s=self._monotonic() - started,
                ok=error is None,
                error=error,
            )

        if error is None:
            every = self._config.balance_log_every
            if every > 0 and i % every == every - 1:
                await self._log_balances()
        else:
            await self._recover(i, error)

        elapsed = self._monotonic() - started
        await self._sleep(remaining_sleep(self._config.interval_s, elapsed))

    async def _log_balances(self) -> None:
        # A failed read only costs this log line.
        try:
            await self._engine.read_balances()
        except (TokenAccountError, VenueError) as exc:
            logger.warning("Periodic balance read failed, skipping: %s", exc)

    async def _recover(self, i: int, trigger: str) -> None:
        state = self.state
        state.recoveries += 1
        state.transition(LoopPhase.DRAINING)
        drained = await self._drain_best_effort("recovery")

        state.transition(LoopPhase.REBALANCING)
        rebalanced = True
        try:
            await self._engine.check(state)
        except RuntimeError as exc:
            rebalanced = False
            logger.error("Rebalance during recovery failed: %s", exc)

        if self._journal is not None:
            self._journal.record_recovery(
                iteration=i,
                trigger=trigger,
                drained=drained,
                rebalanced=rebalanced,
            )
        state.transition(LoopPhase.QUOTING)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _drain_best_effort(self, reason: str) -> bool:
        try:
            await self._order_book.cancel_all_and_withdraw()
        except RuntimeError as exc:
            logger.error("Cancel and withdraw (%s) failed: %s", reason, exc)
            if self._journal is not None:
                self._journal.record_error(component=f"drain:{reason}", exc=exc)
            return False
        return True

    async def _finish(self) -> Optional[ProfitReport]:
        await self._drain_best_effort("final")

        logger.info("Balances After MM: ")
        end = await self._engine.read_balances()
        start = self.state.start_balances
        if start is None:
            return None

        base_price, quote_price = await self._prices.get_pair(*self._price_feeds)
        report = compute_profit(start, end, base_price, quote_price)
        logger.info("Profit Made: %s USD", report.profit)
        return report
