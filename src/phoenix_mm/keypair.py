"""Signer key material loading.

The secret is read once at startup and held for the process lifetime.
Neither the raw secret nor decoded bytes are ever logged or included in
error messages.
"""
from __future__ import annotations

import json

import base58
from solders.keypair import Keypair

from .config import ConfigurationError

_SECRET_KEY_LEN = 64


def _decode_secret(raw: str) -> bytes:
    text = raw.strip()
    if text.startswith("["):
        try:
            values = json.loads(text)
            return bytes(int(v) for v in values)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("Signer key JSON array is malformed") from exc
    try:
        return base58.b58decode(text)
    except ValueError as exc:
        raise ConfigurationError("Signer key is not valid base58") from exc


def load_keypair(raw: str) -> Keypair:
    """Build a keypair from a base58 secret or a JSON byte array."""
    if not raw or not raw.strip():
        raise ConfigurationError("Missing signer key (MM_KEYPAIR)")
    secret = _decode_secret(raw)
    if len(secret) != _SECRET_KEY_LEN:
        raise ConfigurationError(
            f"Signer key decoded to {len(secret)} bytes, expected {_SECRET_KEY_LEN}"
        )
    try:
        return Keypair.from_bytes(secret)
    except Exception as exc:
        raise ConfigurationError("Signer key bytes do not form a valid keypair") from exc
