"""
Fair-value oracle adapter

Decodes Pyth v2 price accounts into an aggregate price per asset.  Only the
fields the loop needs are read: the exponent and the aggregate price block.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from .rpc import AccountSnapshot

logger = logging.getLogger(__name__)

PYTH_MAGIC = 0xA1B2C3D4
_PRICE_ACCOUNT_TYPE = 3
_EXPONENT_OFFSET = 20
_AGGREGATE_OFFSET = 208
# price i64, conf u64, status u32, corp_act u32, pub_slot u64
_AGGREGATE_FORMAT = "<qQIIQ"
_MIN_PRICE_ACCOUNT_LEN = _AGGREGATE_OFFSET + struct.calcsize(_AGGREGATE_FORMAT)


class PriceFeedError(RuntimeError):
    pass


@dataclass(frozen=True)
class AggregatePrice:
    price: Decimal
    confidence: Decimal
    status: int
    publish_slot: int

    @property
    def is_trading(self) -> bool:
        return self.status == 1


def parse_price_data(data: bytes) -> AggregatePrice:
    if len(data) < _MIN_PRICE_ACCOUNT_LEN:
        raise PriceFeedError(f"Price account too short: {len(data)} bytes")
    magic, _version, account_type = struct.unpack_from("<III", data, 0)
    if magic != PYTH_MAGIC:
        raise PriceFeedError(f"Not a Pyth account (magic={magic:#x})")
    if account_type != _PRICE_ACCOUNT_TYPE:
        raise PriceFeedError(f"Not a Pyth price account (type={account_type})")

    (exponent,) = struct.unpack_from("<i", data, _EXPONENT_OFFSET)
    raw_price, raw_conf, status, _corp_act, pub_slot = struct.unpack_from(
        _AGGREGATE_FORMAT, data, _AGGREGATE_OFFSET
    )
    scale = Decimal(10) ** exponent
    return AggregatePrice(
        price=Decimal(raw_price) * scale,
        confidence=Decimal(raw_conf) * scale,
        status=status,
        publish_slot=pub_slot,
    )


class AccountReader(Protocol):
    async def get_account(self, address: str) -> Optional[AccountSnapshot]: ...


class PriceFeedReader:
    """Reads the reference price of one or more Pyth price accounts."""

    def __init__(self, rpc: AccountReader) -> None:
        self._rpc = rpc

    async def get_price(self, feed_address: str) -> Decimal:
        info = await self._rpc.get_account(feed_address)
        if info is None:
            raise PriceFeedError(f"Price account {feed_address} not found")
        aggregate = parse_price_data(info.data)
        if not aggregate.is_trading:
            logger.warning(
                "Price feed %s not in trading status (status=%d); using last aggregate %s",
                feed_address,
                aggregate.status,
                aggregate.price,
            )
        return aggregate.price

    async def get_pair(self, base_feed: str, quote_feed: str) -> tuple[Decimal, Decimal]:
        return await self.get_price(base_feed), await self.get_price(quote_feed)
