"""
Market metadata lookup for Phoenix markets.

Resolves a market address to its base/quote mints from the Phoenix master
config and attaches the Pyth price accounts used as the fair-value feed.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests

from .config import ConfigurationError
from .config_env import SolanaCluster
from .phoenix_market import MARKET_ACCOUNT_SIZE, PHOENIX_PROGRAM_ID
from .types import MarketMetadata

logger = logging.getLogger(__name__)

# market address -> (base Pyth price account, quote Pyth price account)
MARKETS_TO_PYTH: Dict[str, Tuple[str, str]] = {
    # SOL/USDC
    "4DoNfFBfF7UokCC2FQzriy7yHK6DY6NVdYpuekQ5pRgg": (
        "H6ARHf6YXhGYeQfUzQNGk6rDNnLBQKrenN712K4AQJEG",
        "Gnt27xtC473ZT2Mw5u8wZ68Z3gULkSTb5DuxJy7eJotD",
    ),
}


class ProgramScanner(Protocol):
    async def get_program_account_addresses(self, program_id: Any, data_size: int) -> List[str]: ...


@dataclass
class MarketConfigClient:
    """Reads the Phoenix master config from a URL or a local JSON file."""

    config_url: str
    cluster: SolanaCluster = SolanaCluster.MAINNET
    timeout_s: float = 10.0

    def fetch_config(self) -> Dict[str, Any]:
        if not self.config_url.startswith(("http://", "https://")):
            with Path(self.config_url).open("r", encoding="utf-8") as fh:
                return json.load(fh)
        resp = requests.get(
            self.config_url,
            headers={"User-Agent": "phoenix-mm/0.1"},
            timeout=self.timeout_s,
        )
        resp.raise_for_status()
        payload = resp.json()
        if not isinstance(payload, dict):
            raise ConfigurationError(f"Unexpected master config payload (not a dict): {type(payload).__name__}")
        return payload

    def fetch_markets(self) -> List[Dict[str, Any]]:
        payload = self.fetch_config()
        cluster_cfg = payload.get(self.cluster.value)
        if not isinstance(cluster_cfg, dict):
            raise ConfigurationError(f"Master config has no section for cluster {self.cluster.value}")
        markets = cluster_cfg.get("markets")
        if not isinstance(markets, list):
            raise ConfigurationError(f"Unexpected `markets` in master config: {markets!r}")
        return markets


def metadata_from_entry(
    entry: Dict[str, Any],
    *,
    base_price_feed: str = "",
    quote_price_feed: str = "",
) -> MarketMetadata:
    market = str(entry.get("market") or "").strip()
    base_mint = str(entry.get("baseMint") or "").strip()
    quote_mint = str(entry.get("quoteMint") or "").strip()
    if not (market and base_mint and quote_mint):
        raise ConfigurationError(f"Incomplete market entry in master config: {entry!r}")

    feeds = MARKETS_TO_PYTH.get(market)
    base_feed = base_price_feed or (feeds[0] if feeds else None)
    quote_feed = quote_price_feed or (feeds[1] if feeds else None)
    return MarketMetadata(
        market=market,
        base_mint=base_mint,
        quote_mint=quote_mint,
        base_price_feed=base_feed or None,
        quote_price_feed=quote_feed or None,
    )


def load_market_metadata(
    client: MarketConfigClient,
    market_address: str,
    *,
    base_price_feed: str = "",
    quote_price_feed: str = "",
) -> MarketMetadata:
    """Look up *market_address* in the master config.

    Raises ConfigurationError when the config cannot be read or does not
    list the market.
    """
    try:
        markets = client.fetch_markets()
    except (requests.RequestException, OSError, ValueError) as exc:
        raise ConfigurationError(f"Failed to load market config from {client.config_url}: {exc}") from exc

    entry = find_market_entry(markets, market_address)
    if entry is None:
        raise ConfigurationError(
            f"Market {market_address} not found in {client.cluster.value} master config"
        )
    metadata = metadata_from_entry(
        entry,
        base_price_feed=base_price_feed,
        quote_price_feed=quote_price_feed,
    )
    if not metadata.has_price_feeds:
        logger.warning("No price feeds known for market %s", market_address)
    return metadata


async def scan_market_addresses(rpc: ProgramScanner) -> List[str]:
    """Enumerate Phoenix market accounts by their exact data size."""
    addresses = await rpc.get_program_account_addresses(PHOENIX_PROGRAM_ID, MARKET_ACCOUNT_SIZE)
    logger.info("Found %d Phoenix markets", len(addresses))
    return sorted(addresses)


def resolve_price_feeds(metadata: MarketMetadata) -> Tuple[str, str]:
    if not metadata.has_price_feeds:
        raise ConfigurationError(
            f"Market {metadata.market} has no price feeds; set MM_BASE_PRICE_FEED and MM_QUOTE_PRICE_FEED"
        )
    return metadata.base_price_feed, metadata.quote_price_feed  # type: ignore[return-value]


def find_market_entry(markets: List[Dict[str, Any]], market_address: str) -> Optional[Dict[str, Any]]:
    for entry in markets:
        if isinstance(entry, dict) and entry.get("market") == market_address:
            return entry
    return None
