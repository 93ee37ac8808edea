"""
Ledger RPC transport

Thin async wrapper around ``solana.rpc.async_api.AsyncClient``: account
reads, the Clock sysvar, program-account scans, transaction submission with
confirmation, and simulation.  Every call is a blocking round-trip from the
caller's point of view; no timeout is added beyond the HTTP transport's.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.models import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.sysvar import CLOCK
from solders.transaction import Transaction, VersionedTransaction

logger = logging.getLogger(__name__)


class VenueError(RuntimeError):
    """Transient failure talking to the ledger or a venue."""


class TransactionFailedError(VenueError):
    def __init__(self, message: str, signature: Optional[str] = None) -> None:
        super().__init__(message)
        self.signature = signature


class BlockhashExpiredError(TransactionFailedError):
    pass


class SimulationFailedError(VenueError):
    def __init__(self, message: str, logs: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.logs = list(logs or [])


@dataclass(frozen=True)
class AccountSnapshot:
    address: str
    owner: str
    lamports: int
    data: bytes


@dataclass(frozen=True)
class ClockSnapshot:
    slot: int
    unix_timestamp: int

    @classmethod
    def from_sysvar(cls, data: bytes) -> "ClockSnapshot":
        # slot u64, epoch_start_timestamp i64, epoch u64, leader_schedule_epoch u64, unix_timestamp i64
        slot, _start, _epoch, _leader_epoch, unix_ts = struct.unpack_from("<QqQQq", data, 0)
        return cls(slot=slot, unix_timestamp=unix_ts)


@dataclass(frozen=True)
class SimulationReport:
    ok: bool
    error: Optional[str]
    logs: List[str]
    units_consumed: Optional[int] = None


def _classify_send_error(message: str, signature: Optional[str] = None) -> TransactionFailedError:
    if "blockhash" in message.lower():
        return BlockhashExpiredError(message, signature)
    return TransactionFailedError(message, signature)


class LedgerRpc:
    """Signs with the process keypair and talks to one RPC endpoint."""

    def __init__(self, client: AsyncClient, signer: Keypair) -> None:
        self._client = client
        self._signer = signer

    @classmethod
    def connect(cls, rpc_url: str, signer: Keypair) -> "LedgerRpc":
        return cls(AsyncClient(rpc_url, commitment=Confirmed), signer)

    @property
    def signer(self) -> Keypair:
        return self._signer

    @property
    def signer_pubkey(self) -> Pubkey:
        return self._signer.pubkey()

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_account(self, address: str | Pubkey) -> Optional[AccountSnapshot]:
        key = address if isinstance(address, Pubkey) else Pubkey.from_string(address)
        try:
            resp = await self._client.get_account_info(key, commitment=Confirmed)
        except Exception as exc:
            raise VenueError(f"get_account_info {key} failed: {exc}") from exc
        info = resp.value
        if info is None:
            return None
        return AccountSnapshot(
            address=str(key),
            owner=str(info.owner),
            lamports=int(info.lamports),
            data=bytes(info.data),
        )

    async def get_clock(self) -> ClockSnapshot:
        snapshot = await self.get_account(CLOCK)
        if snapshot is None:
            raise VenueError("Clock sysvar unavailable")
        return ClockSnapshot.from_sysvar(snapshot.data)

    async def get_program_account_addresses(
        self,
        program_id: str | Pubkey,
        data_size: int,
    ) -> List[str]:
        key = program_id if isinstance(program_id, Pubkey) else Pubkey.from_string(program_id)
        try:
            resp = await self._client.get_program_accounts(
                key,
                commitment=Confirmed,
                encoding="base64",
                filters=[data_size],
            )
        except Exception as exc:
            raise VenueError(f"get_program_accounts {key} failed: {exc}") from exc
        return [str(item.pubkey) for item in resp.value]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _build_transaction(self, instructions: Sequence[Instruction]) -> Transaction:
        latest = await self._client.get_latest_blockhash(commitment=Confirmed)
        blockhash = latest.value.blockhash
        message = Message.new_with_blockhash(list(instructions), self.signer_pubkey, blockhash)
        return Transaction([self._signer], message, blockhash)

    async def send_and_confirm(self, instructions: Sequence[Instruction]) -> str:
        """Submit one transaction and wait for ``confirmed`` commitment."""
        try:
            tx = await self._build_transaction(instructions)
            resp = await self._client.send_transaction(
                tx,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            )
        except VenueError:
            raise
        except Exception as exc:
            raise _classify_send_error(str(exc)) from exc
        return await self._confirm(resp.value)

    async def send_versioned(self, tx: VersionedTransaction) -> str:
        """Sign an externally built versioned transaction and submit it."""
        try:
            signed = VersionedTransaction(tx.message, [self._signer])
            resp = await self._client.send_transaction(
                signed,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            )
        except Exception as exc:
            raise _classify_send_error(str(exc)) from exc
        return await self._confirm(resp.value)

    async def _confirm(self, signature) -> str:
        sig_str = str(signature)
        try:
            resp = await self._client.confirm_transaction(signature, commitment=Confirmed)
        except Exception as exc:
            raise _classify_send_error(str(exc), sig_str) from exc
        statuses = resp.value or []
        status = statuses[0] if statuses else None
        if status is not None and status.err is not None:
            raise TransactionFailedError(f"Transaction {sig_str} failed: {status.err}", sig_str)
        return sig_str

    async def simulate(self, instructions: Sequence[Instruction]) -> SimulationReport:
        try:
            tx = await self._build_transaction(instructions)
            resp = await self._client.simulate_transaction(tx, commitment=Confirmed)
        except Exception as exc:
            raise SimulationFailedError(str(exc)) from exc
        value = resp.value
        logs = list(value.logs or [])
        err = None if value.err is None else str(value.err)
        return SimulationReport(
            ok=err is None,
            error=err,
            logs=logs,
            units_consumed=value.units_consumed,
        )
