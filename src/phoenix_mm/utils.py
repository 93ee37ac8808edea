"""Shared utility helpers for the phoenix_mm package."""
from __future__ import annotations

from decimal import Decimal

# Base tag mixed into every client order id derived from the signer.
CLIENT_ORDER_ID_BASE_TAG = 69420

_SOLSCAN_TX_URL = "https://solscan.io/tx/{signature}"


def to_ui_amount(atoms: int | Decimal, decimals: int) -> Decimal:
    """Convert atomic token units to UI units."""
    return Decimal(atoms) / (Decimal(10) ** decimals)


def to_atoms(amount: Decimal, decimals: int) -> Decimal:
    """Convert UI units to (possibly fractional) atomic units."""
    return Decimal(amount) * (Decimal(10) ** decimals)


def client_order_id(signer: str, base_tag: int = CLIENT_ORDER_ID_BASE_TAG) -> int:
    """Derive the client order id for IOC orders placed by *signer*.

    The id is ``sum(ord(c) for c in signer) + base_tag``.  It is an additive
    checksum, not a cryptographic hash: any two base58 addresses whose
    characters sum to the same value collide.  Base58 pubkeys are 32-44
    characters drawn from code points 49..122, so the sum spans at most
    ~3,500 distinct values; two random signers collide with probability on
    the order of 1/3,000.  Bumping *base_tag* moves every signer to a fresh id.
    """
    return sum(ord(ch) for ch in signer) + int(base_tag)


def solscan_url(signature: object) -> str:
    return _SOLSCAN_TX_URL.format(signature=signature)
