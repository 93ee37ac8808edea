"""Environment resolution and enums for market maker configuration."""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

# ---------------------------------------------------------------------------
# Env file resolution
# ---------------------------------------------------------------------------

def _find_project_root() -> Path:
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return current.parents[2]


PROJECT_ROOT = _find_project_root()


def _resolve_env_file() -> Path:
    env_file = os.getenv("ENV", ".env")
    candidates = []
    if env_file:
        if not env_file.startswith("."):
            candidates.append(f".{env_file}")
        candidates.append(env_file)
    else:
        candidates.append(".env")

    for candidate in candidates:
        path = Path(candidate)
        if not path.is_absolute():
            path = PROJECT_ROOT / candidate
        if path.exists():
            return path

    return PROJECT_ROOT / ".env"


ENV_FILE = _resolve_env_file()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SolanaCluster(str, Enum):
    MAINNET = "mainnet-beta"
    DEVNET = "devnet"


class PriceImprovementBehavior(str, Enum):
    """How the strategy program positions quotes relative to the book.

    AGGRESSIVE: improve on the best price while keeping ``margin`` bps of edge.
    JOIN: join the best price level.
    DIME: improve the best price by one tick.
    IGNORE: quote at fair price +/- edge regardless of the book.
    """

    AGGRESSIVE = "aggressive"
    JOIN = "join"
    DIME = "dime"
    IGNORE = "ignore"

    @property
    def wire_value(self) -> int:
        return _PRICE_IMPROVEMENT_WIRE[self]


_PRICE_IMPROVEMENT_WIRE = {
    PriceImprovementBehavior.AGGRESSIVE: 0,
    PriceImprovementBehavior.JOIN: 1,
    PriceImprovementBehavior.DIME: 2,
    PriceImprovementBehavior.IGNORE: 3,
}
