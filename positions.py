import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import config
from cache import KeyedTTLCache

logger = logging.getLogger("Positions")


@dataclass(frozen=True)
class Position:
    underlying: str
    symbol: str
    decimals: int
    amount: int
    price_usd: Optional[Decimal] = None

    @property
    def human_amount(self) -> Decimal:
        return Decimal(self.amount) / Decimal(10 ** self.decimals)


@dataclass
class LiquidationCandidate:
    wallet: str
    health_factor: Decimal
    supply_positions: List[Position] = field(default_factory=list)
    borrow_positions: List[Position] = field(default_factory=list)


def _magnitude(position: Position):
    if position.price_usd is not None:
        return position.human_amount * position.price_usd
    return position.human_amount


class PositionReader:
    """Receipt-token and debt-token balances per reserve, cached per wallet for a short TTL."""

    def __init__(self, client, reserve_index, ttl=config.POSITION_CACHE_TTL, max_entries=config.POSITION_CACHE_MAX):
        self.client = client
        self.reserve_index = reserve_index
        self.cache = KeyedTTLCache(ttl, max_entries=max_entries)

    async def _read_reserve(self, wallet, reserve):
        supplied, borrowed = await asyncio.gather(
            self.client.balance_of(reserve.collateral_token, wallet),
            self.client.balance_of(reserve.debt_token, wallet),
        )
        return supplied, borrowed

    async def _load(self, wallet):
        reserves = await self.reserve_index.get_reserves()
        outcomes = await asyncio.gather(*(self._read_reserve(wallet, r) for r in reserves), return_exceptions=True)

        supply, borrow = [], []
        for reserve, outcome in zip(reserves, outcomes):
            if isinstance(outcome, Exception):
                logger.debug(f"Balance read failed for {reserve.symbol}/{wallet[:10]}: {str(outcome)[:80]}")
                continue
            supplied, borrowed = outcome
            if supplied > 0:
                supply.append(Position(reserve.underlying_asset, reserve.symbol, reserve.decimals, supplied, reserve.price_usd))
            if borrowed > 0:
                borrow.append(Position(reserve.underlying_asset, reserve.symbol, reserve.decimals, borrowed, reserve.price_usd))

        supply.sort(key=_magnitude, reverse=True)
        borrow.sort(key=_magnitude, reverse=True)
        return supply, borrow

    async def read(self, wallet, health_factor) -> LiquidationCandidate:
        supply, borrow = await self.cache.get_or_refresh(wallet.lower(), lambda: self._load(wallet))
        return LiquidationCandidate(wallet, health_factor, list(supply), list(borrow))
