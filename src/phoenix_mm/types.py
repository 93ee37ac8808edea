from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from .config_env import PriceImprovementBehavior


class Side(str, Enum):
    """Side of a corrective trade on the order book."""

    BID = "bid"
    ASK = "ask"

    @property
    def wire_value(self) -> int:
        return 0 if self is Side.BID else 1


class LoopPhase(str, Enum):
    BOOTSTRAPPING = "bootstrapping"
    REBALANCING = "rebalancing"
    QUOTING = "quoting"
    DRAINING = "draining"
    TERMINATED = "terminated"


class RebalanceVenue(str, Enum):
    NONE = "none"
    ORDER_BOOK = "order_book"
    AGGREGATOR = "aggregator"


@dataclass(frozen=True)
class MarketMetadata:
    market: str
    base_mint: str
    quote_mint: str
    base_price_feed: Optional[str] = None
    quote_price_feed: Optional[str] = None

    @property
    def has_price_feeds(self) -> bool:
        return bool(self.base_price_feed and self.quote_price_feed)


@dataclass(frozen=True)
class InventoryTarget:
    """Base/quote amounts (UI units) the strategy keeps in its wallet."""

    base: Decimal
    quote: Decimal
    base_tolerance: Decimal = Decimal("0.1")
    quote_tolerance: Decimal = Decimal("1")

    @property
    def base_floor(self) -> Decimal:
        return self.base - self.base_tolerance

    @property
    def quote_floor(self) -> Decimal:
        return self.quote - self.quote_tolerance


@dataclass(frozen=True)
class QuoteParams:
    quote_edge_bps: int
    quote_size_in_quote_atoms: int
    price_improvement: PriceImprovementBehavior = PriceImprovementBehavior.AGGRESSIVE
    margin: int = 2
    post_only: bool = False


@dataclass(frozen=True)
class BalancePair:
    base: Decimal
    quote: Decimal

    @classmethod
    def zero(cls) -> "BalancePair":
        return cls(base=Decimal("0"), quote=Decimal("0"))

    @property
    def is_zero(self) -> bool:
        return self.base == 0 and self.quote == 0


@dataclass(frozen=True)
class MakerAccounts:
    """Signer's associated token accounts for the market's mints."""

    base: str
    quote: str


@dataclass(frozen=True)
class RunConfig:
    """Immutable per-run configuration handed to the loop at start."""

    metadata: MarketMetadata
    target: InventoryTarget
    quote_params: QuoteParams
    maker_accounts: MakerAccounts
    iterations: int
    interval_s: float
    initial_cancel_and_withdraw: bool = False
    dry_run: bool = False
    slippage_bps: int = 100
    settle_delay_s: float = 5.0
    balance_log_every: int = 10


@dataclass
class RunState:
    """Process-lifetime state owned by the quote loop."""

    phase: LoopPhase = LoopPhase.BOOTSTRAPPING
    current_side: Optional[Side] = None
    iteration: int = 0
    start_balances: Optional[BalancePair] = None
    recoveries: int = 0
    quote_failures: int = 0
    last_error: Optional[str] = None
    history: list[LoopPhase] = field(default_factory=list)

    def transition(self, phase: LoopPhase) -> None:
        self.history.append(self.phase)
        self.phase = phase


@dataclass(frozen=True)
class RebalanceOutcome:
    venue: RebalanceVenue
    side: Optional[Side] = None
    in_amount: Decimal = Decimal("0")
    order_book_out_atoms: Decimal = Decimal("0")
    aggregator_out_atoms: Optional[Decimal] = None
    balances: BalancePair = field(default_factory=BalancePair.zero)
    simulated: bool = False
    signature: Optional[str] = None

    @property
    def acted(self) -> bool:
        return self.venue is not RebalanceVenue.NONE


@dataclass(frozen=True)
class ProfitReport:
    start: BalancePair
    end: BalancePair
    base_price: Decimal
    quote_price: Decimal
    profit: Decimal
