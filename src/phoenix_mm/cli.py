from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from solders.keypair import Keypair

from .config import ConfigurationError, MarketMakerSettings, build_quote_params
from .market_metadata import MarketConfigClient, scan_market_addresses
from .rpc import LedgerRpc
from .setup_steps import run_setup
from .strategy_runner import configure_logging, open_market, run_strategy
from .trade_journal import TradeJournal

logger = logging.getLogger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Phoenix quote-refresh market maker")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Rebalance once, then refresh quotes on a fixed cadence")
    mode = run_p.add_mutually_exclusive_group()
    mode.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Only report the rebalance decision; submit nothing.",
    )
    mode.add_argument(
        "--live",
        dest="dry_run",
        action="store_false",
        help="Submit transactions (overrides MM_BALANCE_CHECK).",
    )
    run_p.add_argument("--iterations", type=int, default=None, help="Number of quote updates.")
    run_p.add_argument("--interval-s", type=float, default=None, help="Seconds between quote updates.")
    run_p.add_argument(
        "--initial-cancel",
        action="store_true",
        default=None,
        help="Cancel all orders and withdraw funds before starting.",
    )

    setup_p = sub.add_parser("setup", help="Initialize the strategy account and claim a seat")
    setup_p.add_argument("--json", action="store_true", help="Emit JSON output")

    bal_p = sub.add_parser("balances", help="Show the maker's base/quote balances")
    bal_p.add_argument("--json", action="store_true", help="Emit JSON output")

    markets_p = sub.add_parser("markets", help="List Phoenix markets")
    markets_p.add_argument(
        "--scan",
        action="store_true",
        help="Enumerate market accounts on-chain instead of reading the master config.",
    )
    markets_p.add_argument("--json", action="store_true", help="Emit JSON output")
    return parser


def _settings_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if getattr(args, "iterations", None) is not None:
        overrides["iterations"] = args.iterations
    if getattr(args, "interval_s", None) is not None:
        overrides["interval_s"] = args.interval_s
    if getattr(args, "initial_cancel", None):
        overrides["initial_cancel_and_withdraw"] = True
    return overrides


async def _setup(settings: MarketMakerSettings, as_json: bool) -> int:
    ctx = await open_market(settings)
    try:
        params = build_quote_params(settings, ctx.venue.quote_decimals)
        results = await run_setup(ctx.rpc, ctx.venue.market, params)
        if settings.journal_enabled:
            ctx.journal = TradeJournal(ctx.metadata.market, Path(settings.journal_dir))
            for r in results:
                ctx.journal.record_setup_step(
                    step=r.step,
                    status=r.status.value,
                    signature=r.signature,
                    detail=r.detail,
                )
    finally:
        await ctx.close()

    if as_json:
        _print_json([asdict(r) for r in results])
    else:
        for r in results:
            print(f"{r.step}: {r.status.value} {r.signature or ''} {r.detail}".rstrip())
    return 1 if any(r.is_fatal for r in results) else 0


async def _balances(settings: MarketMakerSettings, as_json: bool) -> int:
    ctx = await open_market(settings)
    try:
        balances = await ctx.balances.get_balances(ctx.maker_accounts.quote, ctx.maker_accounts.base)
    finally:
        await ctx.close()

    if as_json:
        _print_json({"base": balances.base, "quote": balances.quote})
    else:
        print(f"base={balances.base} quote={balances.quote}")
    return 0


async def _markets(settings: MarketMakerSettings, scan: bool, as_json: bool) -> int:
    rows: List[Dict[str, Any]]
    if scan:
        # Read-only scan; a throwaway signer satisfies the transport.
        rpc = LedgerRpc.connect(settings.rpc_url, Keypair())
        try:
            rows = [{"market": address} for address in await scan_market_addresses(rpc)]
        finally:
            await rpc.close()
    else:
        client = MarketConfigClient(
            config_url=settings.market_config_url,
            cluster=settings.cluster,
            timeout_s=settings.http_timeout_s,
        )
        rows = [
            {"market": m.get("market"), "baseMint": m.get("baseMint"), "quoteMint": m.get("quoteMint")}
            for m in client.fetch_markets()
        ]

    if as_json:
        _print_json(rows)
    else:
        for row in rows:
            print("  ".join(str(v) for v in row.values()))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    try:
        settings = MarketMakerSettings(**_settings_overrides(args))
    except ValidationError as exc:
        print(f"error: invalid configuration: {exc}")
        return 1
    configure_logging(settings)

    try:
        if args.command == "run":
            return asyncio.run(run_strategy(settings, dry_run=args.dry_run))
        if args.command == "setup":
            return asyncio.run(_setup(settings, args.json))
        if args.command == "balances":
            return asyncio.run(_balances(settings, args.json))
        if args.command == "markets":
            return asyncio.run(_markets(settings, args.scan, args.json))
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
