"""
One-time market setup

Three independent, idempotent steps run before quoting on a market for the
first time:

1. initialize the strategy account
2. request a trading seat
3. claim the seat through the seat manager

Each step returns a SetupStepResult.  Failures that mean "already done" are
classified EXPECTED; anything else is FATAL and the caller stops.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .phoenix_market import PhoenixMarket, seat_address
from .rpc import AccountSnapshot, VenueError
from .strategy_program import initialize_ix, strategy_address
from .types import QuoteParams
from .utils import solscan_url

logger = logging.getLogger(__name__)

# Substrings of ledger errors meaning the account or approval already exists.
_ALREADY_DONE_MARKERS = (
    "already in use",
    "already initialized",
    "already approved",
    "custom program error: 0x0",
)

_SEAT_STATUS_OFFSET = 72
_SEAT_APPROVED = 1


class SetupStatus(str, Enum):
    OK = "ok"
    EXPECTED = "expected"
    FATAL = "fatal"


@dataclass(frozen=True)
class SetupStepResult:
    step: str
    status: SetupStatus
    signature: Optional[str] = None
    detail: str = ""

    @property
    def is_fatal(self) -> bool:
        return self.status is SetupStatus.FATAL


class SetupLedger(Protocol):
    @property
    def signer_pubkey(self) -> Pubkey: ...

    async def get_account(self, address: str) -> Optional[AccountSnapshot]: ...

    async def send_and_confirm(self, instructions: Sequence[Instruction]) -> str: ...


def seat_is_approved(data: bytes) -> bool:
    # discriminant u64, market, trader, approval_status u64
    if len(data) < _SEAT_STATUS_OFFSET + 8:
        return False
    (status,) = struct.unpack_from("<Q", data, _SEAT_STATUS_OFFSET)
    return status == _SEAT_APPROVED


def classify_setup_error(exc: Exception) -> SetupStatus:
    message = str(exc).lower()
    if any(marker in message for marker in _ALREADY_DONE_MARKERS):
        return SetupStatus.EXPECTED
    return SetupStatus.FATAL


async def _run_step(
    name: str,
    rpc: SetupLedger,
    build: Callable[[], Instruction],
    exists: Callable[[], Awaitable[bool]],
) -> SetupStepResult:
    if await exists():
        logger.info("Setup %s: already done, skipping", name)
        return SetupStepResult(step=name, status=SetupStatus.EXPECTED, detail="already exists")
    try:
        signature = await rpc.send_and_confirm([build()])
    except VenueError as exc:
        status = classify_setup_error(exc)
        if status is SetupStatus.EXPECTED:
            logger.info("Setup %s: already done (%s)", name, exc)
        else:
            logger.error("Setup %s failed: %s", name, exc)
        return SetupStepResult(step=name, status=status, detail=str(exc))
    logger.info("Setup %s: %s", name, solscan_url(signature))
    return SetupStepResult(step=name, status=SetupStatus.OK, signature=signature)


async def initialize_strategy(rpc: SetupLedger, market: PhoenixMarket, params: QuoteParams) -> SetupStepResult:
    signer = rpc.signer_pubkey
    strategy, _ = strategy_address(signer, market.address)

    async def exists() -> bool:
        return await rpc.get_account(str(strategy)) is not None

    return await _run_step(
        "initialize_strategy",
        rpc,
        lambda: initialize_ix(signer, market.address, params),
        exists,
    )


async def request_seat(rpc: SetupLedger, market: PhoenixMarket) -> SetupStepResult:
    signer = rpc.signer_pubkey
    seat = seat_address(Pubkey.from_string(market.address), signer)

    async def exists() -> bool:
        return await rpc.get_account(str(seat)) is not None

    return await _run_step("request_seat", rpc, lambda: market.request_seat_ix(signer), exists)


async def claim_seat(rpc: SetupLedger, market: PhoenixMarket) -> SetupStepResult:
    signer = rpc.signer_pubkey
    seat = seat_address(Pubkey.from_string(market.address), signer)

    async def exists() -> bool:
        info = await rpc.get_account(str(seat))
        return info is not None and seat_is_approved(info.data)

    return await _run_step("claim_seat", rpc, lambda: market.claim_seat_ix(signer), exists)


async def run_setup(rpc: SetupLedger, market: PhoenixMarket, params: QuoteParams) -> List[SetupStepResult]:
    """Run all setup steps, stopping at the first FATAL result."""
    results: List[SetupStepResult] = []
    for step in (
        lambda: initialize_strategy(rpc, market, params),
        lambda: request_seat(rpc, market),
        lambda: claim_seat(rpc, market),
    ):
        result = await step()
        results.append(result)
        if result.is_fatal:
            break
    return results
