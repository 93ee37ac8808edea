"""
Market Maker Configuration

Loads MM_ prefixed environment variables using pydantic-settings.
Defaults to a dry run (``MM_BALANCE_CHECK=true``); set it to false explicitly
to submit real transactions.
"""
from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_env import ENV_FILE, PriceImprovementBehavior, SolanaCluster
from .types import (
    InventoryTarget,
    MakerAccounts,
    MarketMetadata,
    QuoteParams,
    RunConfig,
)

# Phoenix SOL/USDC
DEFAULT_MARKET = "4DoNfFBfF7UokCC2FQzriy7yHK6DY6NVdYpuekQ5pRgg"
DEFAULT_MARKET_CONFIG_URL = (
    "https://raw.githubusercontent.com/Ellipsis-Labs/phoenix-sdk/master/"
    "master_config.json"
)

_REDACTED = "***redacted***"


class ConfigurationError(RuntimeError):
    """Raised when the process cannot start with the supplied configuration."""


class MarketMakerSettings(BaseSettings):
    """Configuration for the quote-refresh market maker."""

    model_config = SettingsConfigDict(
        env_prefix="MM_",
        env_file=ENV_FILE,
        extra="ignore",
    )

    # --- Credentials ---
    keypair: SecretStr = Field(
        default=SecretStr(""),
        description="Signer secret key (base58 string or JSON byte array)",
    )

    # --- Network ---
    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC endpoint",
    )
    cluster: SolanaCluster = Field(
        default=SolanaCluster.MAINNET,
        description="Cluster name used to select markets from the master config",
    )
    market_config_url: str = Field(
        default=DEFAULT_MARKET_CONFIG_URL,
        description="URL or local path of the Phoenix master market config",
    )
    jupiter_api_url: str = Field(
        default="https://quote-api.jup.ag/v6",
        description="Jupiter swap API base URL",
    )
    http_timeout_s: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for aggregator HTTP calls",
    )

    # --- Market ---
    market_address: str = Field(
        default=DEFAULT_MARKET,
        description="Phoenix market address to quote on",
    )
    base_price_feed: str = Field(
        default="",
        description="Pyth price account for the base asset (overrides the built-in mapping)",
    )
    quote_price_feed: str = Field(
        default="",
        description="Pyth price account for the quote asset (overrides the built-in mapping)",
    )

    # --- Inventory targets ---
    base_target: Decimal = Field(
        default=Decimal("1"),
        ge=0,
        description="Base amount (UI units) kept in the wallet, e.g. 1 SOL",
    )
    quote_target: Decimal = Field(
        default=Decimal("20"),
        ge=0,
        description="Quote amount (UI units) kept in the wallet, e.g. 20 USDC",
    )
    base_tolerance: Decimal = Field(
        default=Decimal("0.1"),
        ge=0,
        description="Rebalance when base balance drops below target minus this margin",
    )
    quote_tolerance: Decimal = Field(
        default=Decimal("1"),
        ge=0,
        description="Rebalance when quote balance drops below target minus this margin",
    )

    # --- Quoting ---
    quote_edge_bps: int = Field(
        default=5,
        ge=0,
        description="Edge from fair price at which quotes are placed",
    )
    quote_size_in_quote_atoms: int = Field(
        default=0,
        ge=0,
        description=(
            "Per-side order size in quote atoms. "
            "0 = half of quote_target converted to atoms."
        ),
    )
    price_improvement: PriceImprovementBehavior = Field(
        default=PriceImprovementBehavior.AGGRESSIVE,
        description="Price improvement behaviour (aggressive, join, dime, ignore)",
    )
    margin: int = Field(
        default=2,
        ge=0,
        description="Minimum quote edge accepted in bps (aggressive mode only)",
    )
    post_only: bool = Field(default=False, description="Place quotes post-only")

    # --- Loop ---
    iterations: int = Field(
        default=1,
        ge=0,
        description="Number of quote-update transactions to send",
    )
    interval_s: float = Field(
        default=20.0,
        ge=0,
        description="Seconds between quote-update transactions",
    )
    initial_cancel_and_withdraw: bool = Field(
        default=False,
        description="Cancel all orders and withdraw funds before starting",
    )
    balance_check: bool = Field(
        default=True,
        description=(
            "Dry run: compute and log the rebalance decision, simulate the "
            "order-book trade, submit nothing."
        ),
    )
    slippage_bps: int = Field(
        default=100,
        ge=0,
        le=10_000,
        description="Slippage budget for aggregator swaps",
    )
    settle_delay_s: float = Field(
        default=5.0,
        ge=0,
        description="Wait after state-changing calls before re-reading balances",
    )

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    journal_enabled: bool = Field(
        default=True,
        description="Write run events to a JSONL trade journal",
    )
    journal_dir: str = Field(
        default="data/mm_journal",
        description="Directory for trade journal files",
    )

    # --- Helpers ---

    @property
    def is_configured(self) -> bool:
        return bool(self.keypair.get_secret_value().strip() and self.rpc_url)

    def sanitized_dump(self) -> Dict[str, Any]:
        """Return a config snapshot safe to log or persist."""
        data = self.model_dump(mode="json")
        data["keypair"] = _REDACTED
        return data

    @field_validator("cluster", "price_improvement", mode="before")
    @classmethod
    def _normalise_enum(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("market_address", "base_price_feed", "quote_price_feed", mode="before")
    @classmethod
    def _strip_address(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


def build_quote_params(
    settings: MarketMakerSettings,
    quote_decimals: int,
) -> QuoteParams:
    size_atoms = settings.quote_size_in_quote_atoms
    if size_atoms <= 0:
        size_atoms = int(
            (settings.quote_target * (Decimal(10) ** quote_decimals) / 2).to_integral_value(
                rounding=ROUND_DOWN
            )
        )
    if size_atoms <= 0:
        raise ConfigurationError(
            "Quote size resolves to 0 atoms; set MM_QUOTE_SIZE_IN_QUOTE_ATOMS "
            "or a positive MM_QUOTE_TARGET"
        )
    return QuoteParams(
        quote_edge_bps=settings.quote_edge_bps,
        quote_size_in_quote_atoms=size_atoms,
        price_improvement=settings.price_improvement,
        margin=settings.margin,
        post_only=settings.post_only,
    )


def build_run_config(
    settings: MarketMakerSettings,
    metadata: MarketMetadata,
    maker_accounts: MakerAccounts,
    *,
    quote_decimals: int,
    dry_run: Optional[bool] = None,
) -> RunConfig:
    """Freeze the settings into the immutable configuration of one run."""
    return RunConfig(
        metadata=metadata,
        target=InventoryTarget(
            base=settings.base_target,
            quote=settings.quote_target,
            base_tolerance=settings.base_tolerance,
            quote_tolerance=settings.quote_tolerance,
        ),
        quote_params=build_quote_params(settings, quote_decimals),
        maker_accounts=maker_accounts,
        iterations=settings.iterations,
        interval_s=settings.interval_s,
        initial_cancel_and_withdraw=settings.initial_cancel_and_withdraw,
        dry_run=settings.balance_check if dry_run is None else dry_run,
        slippage_bps=settings.slippage_bps,
        settle_delay_s=settings.settle_delay_s,
    )
