"""
Swap-aggregator venue adapter (Jupiter v6 HTTP API)

Flow:
1. GET /quote - best route for a pair and input amount
2. POST /swap - serialized versioned transaction for that route
3. sign locally and submit through the ledger RPC

Quotes are best effort: every quoting failure is reported as ``None`` so the
caller can fall back to the order book.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .rpc import VenueError
from .utils import solscan_url, to_atoms

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://quote-api.jup.ag/v6"
TOKEN_LIST_URL = "https://token.jup.ag/all"

_REQUIRED_QUOTE_FIELDS = ("inAmount", "outAmount", "routePlan")


class AggregatorExecutionError(VenueError):
    """The aggregator swap failed after its single retry."""


@dataclass(frozen=True)
class Token:
    address: str
    symbol: str
    decimals: int


KNOWN_TOKENS: Tuple[Token, ...] = (
    Token(address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", symbol="USDC", decimals=6),
    Token(address="So11111111111111111111111111111111111111112", symbol="SOL", decimals=9),
)


@dataclass(frozen=True)
class Route:
    input_token: Token
    output_token: Token
    in_amount_atoms: int
    out_amount_atoms: int
    slippage_bps: int
    quote_response: Dict[str, Any] = field(repr=False, compare=False, default_factory=dict)

    @property
    def label(self) -> str:
        plan = self.quote_response.get("routePlan") or []
        if plan:
            return str((plan[0].get("swapInfo") or {}).get("label", "?"))
        return "?"


@dataclass(frozen=True)
class SwapResult:
    ok: bool
    signature: Optional[str] = None
    error: Optional[str] = None


class SwapSubmitter(Protocol):
    @property
    def signer_pubkey(self) -> Pubkey: ...

    async def send_versioned(self, tx: VersionedTransaction) -> str: ...


class JupiterVenue:
    """Quotes and executes swaps through Jupiter."""

    def __init__(
        self,
        rpc: SwapSubmitter,
        *,
        api_url: str = DEFAULT_API_URL,
        http_timeout_s: float = 10.0,
        token_list_url: str = TOKEN_LIST_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._rpc = rpc
        self._api_url = api_url.rstrip("/")
        self._http_timeout_s = http_timeout_s
        self._token_list_url = token_list_url
        self._client = client
        self._token_list: Optional[List[Token]] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._http_timeout_s)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def _load_token_list(self) -> List[Token]:
        if self._token_list is not None:
            return self._token_list
        client = await self._get_client()
        resp = await client.get(self._token_list_url)
        resp.raise_for_status()
        tokens = []
        for item in resp.json():
            try:
                tokens.append(
                    Token(address=item["address"], symbol=item.get("symbol", "?"), decimals=int(item["decimals"]))
                )
            except (KeyError, TypeError, ValueError):
                continue
        self._token_list = tokens
        return tokens

    async def resolve_token(self, mint: str) -> Optional[Token]:
        for token in KNOWN_TOKENS:
            if token.address == mint:
                return token
        try:
            tokens = await self._load_token_list()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Token list unavailable (%s): %s", self._token_list_url, exc)
            return None
        for token in tokens:
            if token.address == mint:
                return token
        return None

    # ------------------------------------------------------------------
    # Quote / execute
    # ------------------------------------------------------------------

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        input_amount: Decimal,
        slippage_bps: int,
    ) -> Optional[Route]:
        """Best route for *input_amount* (UI units), or None if unroutable."""
        input_token = await self.resolve_token(input_mint)
        output_token = await self.resolve_token(output_mint)
        if input_token is None or output_token is None:
            logger.warning("Aggregator: unknown token in pair %s -> %s", input_mint, output_mint)
            return None

        amount_atoms = int(
            to_atoms(input_amount, input_token.decimals).to_integral_value(rounding=ROUND_HALF_UP)
        )
        if amount_atoms <= 0:
            return None

        logger.info(
            "Getting routes for %s %s -> %s...",
            input_amount,
            input_token.symbol,
            output_token.symbol,
        )
        params = {
            "inputMint": input_token.address,
            "outputMint": output_token.address,
            "amount": str(amount_atoms),
            "slippageBps": str(slippage_bps),
        }
        client = await self._get_client()
        try:
            resp = await client.get(f"{self._api_url}/quote", params=params)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Aggregator quote failed: %s", exc)
            return None

        if not isinstance(data, dict) or any(k not in data for k in _REQUIRED_QUOTE_FIELDS):
            logger.warning("Aggregator quote has unexpected shape")
            return None
        if not data["routePlan"]:
            return None

        try:
            in_atoms = int(data["inAmount"])
            out_atoms = int(data["outAmount"])
        except (TypeError, ValueError) as exc:
            logger.warning("Aggregator quote has malformed amounts: %s", exc)
            return None

        route = Route(
            input_token=input_token,
            output_token=output_token,
            in_amount_atoms=in_atoms,
            out_amount_atoms=out_atoms,
            slippage_bps=slippage_bps,
            quote_response=data,
        )
        logger.info("Aggregator route %s: out=%d atoms", route.label, route.out_amount_atoms)
        return route

    async def execute(self, route: Route) -> SwapResult:
        payload = {
            "quoteResponse": route.quote_response,
            "userPublicKey": str(self._rpc.signer_pubkey),
            "wrapAndUnwrapSol": False,
        }
        client = await self._get_client()
        try:
            resp = await client.post(f"{self._api_url}/swap", json=payload)
            resp.raise_for_status()
            tx_b64 = resp.json()["swapTransaction"]
            tx = VersionedTransaction.from_bytes(base64.b64decode(tx_b64))
        except Exception as exc:
            logger.error("Aggregator swap build failed: %s", exc)
            return SwapResult(ok=False, error=str(exc))

        try:
            signature = await self._rpc.send_versioned(tx)
        except VenueError as exc:
            logger.error("Aggregator swap failed: %s", exc)
            return SwapResult(ok=False, signature=getattr(exc, "signature", None), error=str(exc))

        logger.info(
            "Aggregator swap: %s inputAmount=%d outputAmount=%d",
            solscan_url(signature),
            route.in_amount_atoms,
            route.out_amount_atoms,
        )
        return SwapResult(ok=True, signature=signature)
