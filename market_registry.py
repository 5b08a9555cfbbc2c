import logging
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from web3 import Web3

import config
from abis import ZERO_ADDRESS
from cache import TTLCache
from http_client import fetch_json

logger = logging.getLogger("MarketRegistry")


@dataclass(frozen=True)
class Reserve:
    underlying_asset: str
    symbol: str
    decimals: int
    is_active: bool
    is_frozen: bool
    borrowing_enabled: bool
    collateral_enabled: bool
    liquidation_bonus_bps: Optional[int] = None
    price_usd: Optional[Decimal] = None
    collateral_token: Optional[str] = None
    debt_token: Optional[str] = None

    @property
    def participates(self):
        return self.is_active and not self.is_frozen


def normalize_bonus(raw) -> Optional[int]:
    """Liquidation bonus as bps above par (10500 = 5% bonus). Accepts bps or percent feeds."""
    if raw is None:
        return None
    try:
        n = float(raw)
    except (TypeError, ValueError):
        return None
    if n <= 0:
        return None
    if 10000 <= n <= 20000:
        return int(n)
    if n < 1000:
        return 10000 + round(n * 100)
    return None


def _parse_price(entry) -> Optional[Decimal]:
    for key in ("priceInUsd", "priceUSD", "priceUsd"):
        raw = entry.get(key)
        if raw is None:
            continue
        try:
            price = Decimal(str(raw))
        except InvalidOperation:
            continue
        if price > 0:
            return price
    return None


def parse_reserve(entry) -> Reserve:
    bonus = entry.get("liquidationBonus")
    if bonus is None:
        bonus = entry.get("reserveLiquidationBonus", entry.get("liquidationBonusBps"))
    return Reserve(
        underlying_asset=Web3.to_checksum_address(entry["underlyingAsset"]),
        symbol=entry.get("symbol") or "?",
        decimals=int(entry.get("decimals", 18)),
        is_active=bool(entry.get("isActive")),
        is_frozen=bool(entry.get("isFrozen")),
        borrowing_enabled=bool(entry.get("borrowingEnabled")),
        collateral_enabled=bool(entry.get("usageAsCollateralEnabled")),
        liquidation_bonus_bps=normalize_bonus(bonus),
        price_usd=_parse_price(entry),
    )


class MarketRegistry:
    """TTL-cached snapshot of lending markets from the market-data API."""

    def __init__(self, api_base=config.MARKETS_API_BASE, chain=config.CHAIN_NAME,
                 ttl=config.MARKETS_CACHE_TTL, active_only=config.SCAN_ACTIVE_ONLY, fetch=fetch_json):
        self.url = f"{api_base.rstrip('/')}/data/markets"
        self.chain = chain
        self.active_only = active_only
        self.cache = TTLCache(ttl, name="Markets snapshot")
        self._fetch = fetch
        self._by_underlying: Dict[str, Reserve] = {}

    async def _load(self) -> List[Reserve]:
        data = await self._fetch(self.url, params={"chain": self.chain}, timeout=15)
        entries = data.get("reserves") if isinstance(data, dict) else None
        if not entries:
            raise ValueError("markets API returned no reserves")

        reserves = []
        for entry in entries:
            try:
                reserves.append(parse_reserve(entry))
            except (KeyError, ValueError) as e:
                logger.warning(f"⚠️ Skipping malformed market entry: {e}")
        logger.info(f"✅ Cached {len(reserves)} markets")
        return reserves

    async def get_markets(self) -> List[Reserve]:
        reserves = await self.cache.get_or_refresh(self._load)
        self._by_underlying = {r.underlying_asset.lower(): r for r in reserves}
        return reserves

    async def eligible_markets(self, borrowing_only=False) -> List[Reserve]:
        markets = await self.get_markets()
        if self.active_only:
            markets = [m for m in markets if m.participates]
        if borrowing_only:
            markets = [m for m in markets if m.borrowing_enabled]
        return markets

    def get_market(self, underlying) -> Optional[Reserve]:
        return self._by_underlying.get(str(underlying).lower())


class ReserveIndex:
    """Maps underlying asset -> (collateral receipt token, debt token), read from the pool."""

    def __init__(self, client, registry, pool_address=config.POOL_ADDRESS, ttl=config.RESERVE_CACHE_TTL):
        self.client = client
        self.registry = registry
        self.pool_address = pool_address
        self.cache = TTLCache(ttl, name="Reserve index")

    async def _load(self):
        markets = await self.registry.eligible_markets()
        token_map = {}
        for market in markets:
            try:
                collateral_token, debt_token = await self.client.get_reserve_tokens(
                    self.pool_address, market.underlying_asset
                )
            except Exception as e:
                logger.warning(f"⚠️ reserveData failed for {market.symbol}: {str(e)[:110]}")
                continue
            if collateral_token == ZERO_ADDRESS or debt_token == ZERO_ADDRESS:
                logger.info(f"  ⚠️ {market.symbol}: not listed on the pool, skipping.")
                continue
            token_map[market.underlying_asset.lower()] = (collateral_token, debt_token)

        if markets and not token_map:
            raise RuntimeError("no reserve data could be loaded")
        logger.info(f"✅ Cached {len(token_map)}/{len(markets)} reserve data entries")
        return token_map

    async def _token_map(self):
        return await self.cache.get_or_refresh(self._load)

    async def get_reserve_addresses(self, asset) -> Optional[dict]:
        token_map = await self._token_map()
        entry = token_map.get(str(asset).lower())
        if entry is None:
            return None
        return {"collateral_token": entry[0], "debt_token": entry[1]}

    async def get_reserves(self, borrowing_only=False) -> List[Reserve]:
        """Eligible markets enriched with their token addresses. Unmapped markets are dropped."""
        token_map = await self._token_map()
        reserves = []
        for market in await self.registry.eligible_markets(borrowing_only=borrowing_only):
            entry = token_map.get(market.underlying_asset.lower())
            if entry is None:
                continue
            reserves.append(replace(market, collateral_token=entry[0], debt_token=entry[1]))
        return reserves
