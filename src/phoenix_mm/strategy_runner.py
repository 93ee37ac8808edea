from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from solders.keypair import Keypair

from .aggregator_venue import JupiterVenue
from .config import ConfigurationError, MarketMakerSettings, build_run_config
from .keypair import load_keypair
from .market_metadata import MarketConfigClient, load_market_metadata, resolve_price_feeds
from .orderbook_venue import OrderBookVenue
from .phoenix_market import MarketDecodeError
from .price_feed import PriceFeedReader
from .quote_loop import QuoteRefreshLoop
from .rebalance_engine import RebalanceEngine
from .rpc import LedgerRpc, VenueError
from .strategy_program import StrategyQuotePublisher
from .token_accounts import BalanceProvider, associated_token_address
from .trade_journal import TradeJournal
from .types import MakerAccounts, MarketMetadata, RunConfig

logger = logging.getLogger(__name__)


@dataclass
class RuntimeContext:
    settings: MarketMakerSettings
    rpc: LedgerRpc
    metadata: MarketMetadata
    maker_accounts: MakerAccounts
    venue: OrderBookVenue
    balances: BalanceProvider
    aggregator: Optional[JupiterVenue] = None
    config: Optional[RunConfig] = None
    engine: Optional[RebalanceEngine] = None
    loop: Optional[QuoteRefreshLoop] = None
    journal: Optional[TradeJournal] = None
    price_feeds: Optional[Tuple[str, str]] = None

    async def close(self) -> None:
        if self.aggregator is not None:
            await self.aggregator.close()
        if self.journal is not None:
            self.journal.close()
        await self.rpc.close()


def configure_logging(settings: MarketMakerSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _log_startup(settings: MarketMakerSettings, signer: Keypair, config: RunConfig) -> None:
    logger.info(
        "Market maker starting: market=%s signer=%s iterations=%d interval=%ss dry_run=%s",
        config.metadata.market,
        signer.pubkey(),
        config.iterations,
        config.interval_s,
        config.dry_run,
    )
    logger.info(
        "  Targets: base=%s (+/-%s) quote=%s (+/-%s)",
        config.target.base,
        config.target.base_tolerance,
        config.target.quote,
        config.target.quote_tolerance,
    )
    logger.info(
        "  Quotes: edge=%dbps size=%d atoms behavior=%s margin=%d post_only=%s",
        config.quote_params.quote_edge_bps,
        config.quote_params.quote_size_in_quote_atoms,
        config.quote_params.price_improvement.value,
        config.quote_params.margin,
        config.quote_params.post_only,
    )


def load_signer(settings: MarketMakerSettings) -> Keypair:
    if not settings.is_configured:
        raise ConfigurationError("Missing credentials (MM_KEYPAIR, MM_RPC_URL)")
    return load_keypair(settings.keypair.get_secret_value())


def load_metadata(settings: MarketMakerSettings) -> MarketMetadata:
    client = MarketConfigClient(
        config_url=settings.market_config_url,
        cluster=settings.cluster,
        timeout_s=settings.http_timeout_s,
    )
    return load_market_metadata(
        client,
        settings.market_address,
        base_price_feed=settings.base_price_feed,
        quote_price_feed=settings.quote_price_feed,
    )


async def open_market(settings: MarketMakerSettings) -> RuntimeContext:
    """Connect, resolve the market and the signer's token accounts."""
    signer = load_signer(settings)
    metadata = load_metadata(settings)
    maker_accounts = MakerAccounts(
        base=associated_token_address(signer.pubkey(), metadata.base_mint),
        quote=associated_token_address(signer.pubkey(), metadata.quote_mint),
    )
    rpc = LedgerRpc.connect(settings.rpc_url, signer)
    try:
        venue = await OrderBookVenue.load(
            rpc,
            metadata.market,
            maker_accounts,
            settle_delay_s=settings.settle_delay_s,
        )
    except (VenueError, MarketDecodeError) as exc:
        await rpc.close()
        raise ConfigurationError(f"Cannot load market {metadata.market}: {exc}") from exc
    balances = BalanceProvider(rpc, venue.base_decimals, venue.quote_decimals)
    return RuntimeContext(
        settings=settings,
        rpc=rpc,
        metadata=metadata,
        maker_accounts=maker_accounts,
        venue=venue,
        balances=balances,
    )


async def build_runtime(
    settings: MarketMakerSettings,
    *,
    dry_run: Optional[bool] = None,
) -> RuntimeContext:
    ctx = await open_market(settings)
    try:
        ctx.price_feeds = resolve_price_feeds(ctx.metadata)
        ctx.config = build_run_config(
            settings,
            ctx.metadata,
            ctx.maker_accounts,
            quote_decimals=ctx.venue.quote_decimals,
            dry_run=dry_run,
        )
    except ConfigurationError:
        await ctx.close()
        raise

    if settings.journal_enabled:
        ctx.journal = TradeJournal(ctx.metadata.market, Path(settings.journal_dir))
    ctx.aggregator = JupiterVenue(
        ctx.rpc,
        api_url=settings.jupiter_api_url,
        http_timeout_s=settings.http_timeout_s,
    )
    ctx.engine = RebalanceEngine(
        ctx.config,
        ctx.balances,
        ctx.venue,
        ctx.aggregator,
        journal=ctx.journal,
    )
    publisher = StrategyQuotePublisher(
        ctx.rpc,
        ctx.venue,
        ctx.maker_accounts,
        ctx.config.quote_params,
        ctx.price_feeds,
    )
    ctx.loop = QuoteRefreshLoop(
        ctx.config,
        ctx.engine,
        ctx.venue,
        publisher,
        PriceFeedReader(ctx.rpc),
        ctx.price_feeds,
        journal=ctx.journal,
    )
    return ctx


async def run_strategy(settings: MarketMakerSettings, *, dry_run: Optional[bool] = None) -> int:
    """Run one session. Returns a process exit code."""
    try:
        ctx = await build_runtime(settings, dry_run=dry_run)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    _log_startup(settings, ctx.rpc.signer, ctx.config)
    if ctx.journal is not None:
        ctx.journal.record_run_start(
            config=settings.sanitized_dump(),
            market_static={
                "base_mint": ctx.metadata.base_mint,
                "quote_mint": ctx.metadata.quote_mint,
                "base_decimals": ctx.venue.base_decimals,
                "quote_decimals": ctx.venue.quote_decimals,
                "taker_fee_bps": ctx.venue.market.taker_fee_bps,
            },
            dry_run=ctx.config.dry_run,
        )

    reason = "completed"
    try:
        report = await ctx.loop.run()
    except Exception as exc:
        reason = "error"
        if ctx.journal is not None:
            ctx.journal.record_error(component="quote_loop", exc=exc)
        raise
    finally:
        if ctx.journal is not None:
            state = ctx.loop.state
            ctx.journal.record_run_end(
                reason=reason,
                stats={
                    "phase": state.phase.value,
                    "last_iteration": state.iteration,
                    "recoveries": state.recoveries,
                    "quote_failures": state.quote_failures,
                },
            )
        await ctx.close()

    if report is not None:
        logger.info(
            "Run complete: start=%s end=%s profit=%s",
            report.start,
            report.end,
            report.profit,
        )
    return 0
