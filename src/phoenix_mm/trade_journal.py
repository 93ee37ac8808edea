"""
Trade Journal

Records every quote-loop event (run start, rebalance decisions, quote
updates, recoveries, setup steps, run end) to a JSONL file.

Each line is a self-contained JSON object with a ``type`` field.  Signer key
material never reaches the journal: configs are recorded through
``MarketMakerSettings.sanitized_dump``.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import time
import traceback
import uuid
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_DEFAULT_JOURNAL_DIR = Path("data/mm_journal")

# Event types that require immediate os.fsync for durability.
_CRITICAL_EVENT_TYPES = frozenset({"rebalance", "recovery", "run_end", "error"})


class _DecimalEncoder(json.JSONEncoder):
    """Encode Decimal as string to preserve precision in JSON."""

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


class TradeJournal:
    """Append-only JSONL writer for quote-loop events."""

    def __init__(
        self,
        market: str,
        journal_dir: Optional[Path] = None,
        *,
        run_id: Optional[str] = None,
        schema_version: int = 1,
    ) -> None:
        self._market = market
        self._dir = journal_dir or _DEFAULT_JOURNAL_DIR
        self._dir.mkdir(parents=True, exist_ok=True)
        self._run_id = run_id or uuid.uuid4().hex
        self._schema_version = schema_version
        self._seq = 0

        ts = time.strftime("%Y%m%d_%H%M%S")
        self._path = self._dir / f"mm_{market[:8]}_{ts}.jsonl"
        self._fh = open(self._path, "a")  # noqa: SIM115
        self._update_latest_symlink()
        logger.info("Trade journal: %s (run_id=%s)", self._path, self._run_id)

    # ------------------------------------------------------------------
    # Core writer
    # ------------------------------------------------------------------

    def _write(self, event_type: str, data: Dict[str, Any]) -> None:
        self._seq += 1
        record = {
            "ts": time.time(),
            "seq": self._seq,
            "run_id": self._run_id,
            "schema_version": self._schema_version,
            "type": event_type,
            "market": self._market,
            **data,
        }
        self._fh.write(json.dumps(record, cls=_DecimalEncoder) + "\n")
        self._fh.flush()
        if event_type in _CRITICAL_EVENT_TYPES:
            self._do_fsync()

    def _do_fsync(self) -> None:
        try:
            os.fsync(self._fh.fileno())
        except (OSError, ValueError):
            pass

    def _update_latest_symlink(self) -> None:
        """Maintain a 'latest' symlink pointing to the current journal file."""
        link_path = self._dir / f"mm_{self._market[:8]}_latest.jsonl"
        try:
            if link_path.is_symlink() or link_path.exists():
                link_path.unlink()
            link_path.symlink_to(self._path.name)
        except OSError as exc:
            logger.debug("Failed to update latest symlink: %s", exc)

    # ------------------------------------------------------------------
    # Event methods
    # ------------------------------------------------------------------

    def record_run_start(
        self,
        *,
        config: Dict[str, Any],
        market_static: Dict[str, Any],
        dry_run: bool,
    ) -> None:
        self._write("run_start", {
            "config": config,
            "market_static": market_static,
            "dry_run": dry_run,
        })

    def record_run_end(
        self,
        *,
        reason: str = "completed",
        stats: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._write("run_end", {
            "reason": reason,
            "stats": stats or {},
        })

    def record_rebalance(
        self,
        *,
        venue: str,
        side: Optional[str],
        in_amount: Decimal,
        order_book_out_atoms: Decimal,
        aggregator_out_atoms: Optional[Decimal],
        simulated: bool,
        signature: Optional[str] = None,
    ) -> None:
        self._write("rebalance", {
            "venue": venue,
            "side": side,
            "in_amount": in_amount,
            "order_book_out_atoms": order_book_out_atoms,
            "aggregator_out_atoms": aggregator_out_atoms,
            "simulated": simulated,
            "signature": signature,
        })

    def record_quote_update(
        self,
        *,
        iteration: int,
        signature: Optional[str],
        elapsed_s: float,
        ok: bool,
        error: Optional[str] = None,
    ) -> None:
        self._write("quote_update", {
            "iteration": iteration,
            "signature": signature,
            "elapsed_s": elapsed_s,
            "ok": ok,
            "error": error,
        })

    def record_recovery(
        self,
        *,
        iteration: int,
        trigger: str,
        drained: bool,
        rebalanced: bool,
    ) -> None:
        self._write("recovery", {
            "iteration": iteration,
            "trigger": trigger,
            "drained": drained,
            "rebalanced": rebalanced,
        })

    def record_setup_step(
        self,
        *,
        step: str,
        status: str,
        signature: Optional[str] = None,
        detail: str = "",
    ) -> None:
        self._write("setup_step", {
            "step": step,
            "status": status,
            "signature": signature,
            "detail": detail,
        })

    def record_error(
        self,
        *,
        component: str,
        exc: BaseException,
    ) -> None:
        self._write("error", {
            "component": component,
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "stack_trace_hash": self.make_stack_trace_hash(exc),
        })

    @staticmethod
    def make_stack_trace_hash(exc: BaseException) -> str:
        """Create a short hash of the stack trace for deduplication."""
        tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return hashlib.md5(tb_str.encode()).hexdigest()[:12]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._fh and not self._fh.closed:
            self._fh.flush()
            self._do_fsync()
            self._fh.close()
        logger.info("Trade journal closed: %s", self._path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def event_count(self) -> int:
        return self._seq
