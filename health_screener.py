import time
import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import config

logger = logging.getLogger("HealthScreener")

ONE = Decimal("1")
WAD = Decimal(10 ** 18)


@dataclass
class HealthReading:
    wallet: str
    health_factor: Decimal
    total_collateral_base: int
    total_debt_base: int


@dataclass
class ScreenResult:
    liquidatable: List[HealthReading] = field(default_factory=list)
    watchlist: List[HealthReading] = field(default_factory=list)
    near_threshold: List[HealthReading] = field(default_factory=list)
    lowest: List[HealthReading] = field(default_factory=list)
    checked: int = 0
    failed: int = 0
    zero_debt: int = 0
    zombies: int = 0


def select_slice(wallets, offset, max_count):
    """
    Rotating window over the known set. Returns (slice, next_offset) so that successive
    cycles eventually cover every wallet when max_count < len(wallets).
    """
    wallets = list(wallets)
    total = len(wallets)
    if total == 0:
        return [], 0
    if max_count <= 0 or total <= max_count:
        return wallets, 0
    start = offset % total
    end = start + max_count
    if end <= total:
        chunk = wallets[start:end]
    else:
        chunk = wallets[start:] + wallets[:end - total]
    return chunk, end % total


class HealthScreener:
    """Batch health-factor screening: concurrent within a batch, sequential across batches."""

    def __init__(self, client, pool_address=config.POOL_ADDRESS, batch_size=config.BATCH_SIZE,
                 near_low=config.HF_NEAR_LOW, watch_threshold=config.HF_WATCH_THRESHOLD,
                 dust_floor=config.MIN_PROCESSABLE_HF, lowest_n=config.LOG_LOWEST_HF):
        self.client = client
        self.pool_address = pool_address
        self.batch_size = batch_size
        self.near_low = Decimal(near_low)
        self.watch_threshold = Decimal(watch_threshold)
        self.dust_floor = Decimal(dust_floor)
        self.lowest_n = lowest_n

    async def check_wallet(self, wallet) -> Optional[HealthReading]:
        data = await self.client.get_user_account_data(self.pool_address, wallet)
        if data.total_debt_base == 0:
            return None
        return HealthReading(
            wallet=wallet,
            health_factor=Decimal(data.health_factor) / WAD,
            total_collateral_base=data.total_collateral_base,
            total_debt_base=data.total_debt_base,
        )

    def classify(self, reading: HealthReading, result: ScreenResult):
        hf = reading.health_factor
        if hf < ONE:
            if hf < self.dust_floor:
                # Already liquidated down to dust; nothing left worth seizing
                result.zombies += 1
            else:
                result.liquidatable.append(reading)
            if self.near_low <= hf:
                result.near_threshold.append(reading)
        elif hf < self.watch_threshold:
            result.watchlist.append(reading)

    async def screen(self, wallets, batch_size=None) -> ScreenResult:
        batch_size = batch_size or self.batch_size
        wallets = list(wallets)
        result = ScreenResult()
        readings = []
        start_time = time.time()

        logger.info(f"🔄 Checking {len(wallets)} borrowers (batch size: {batch_size})")
        for i in range(0, len(wallets), batch_size):
            batch = wallets[i:i + batch_size]
            outcomes = await asyncio.gather(*(self.check_wallet(w) for w in batch), return_exceptions=True)
            for wallet, outcome in zip(batch, outcomes):
                result.checked += 1
                if isinstance(outcome, Exception):
                    result.failed += 1
                    logger.warning(f"⚠️ HF check failed for {wallet[:10]}: {str(outcome)[:100]}")
                    continue
                if outcome is None:
                    result.zero_debt += 1
                    continue
                readings.append(outcome)
                self.classify(outcome, result)

        readings.sort(key=lambda r: r.health_factor)
        result.lowest = readings[:self.lowest_n]
        result.liquidatable.sort(key=lambda r: r.health_factor)
        result.near_threshold.sort(key=lambda r: r.health_factor)
        result.watchlist.sort(key=lambda r: r.health_factor)

        elapsed = (time.time() - start_time) * 1000
        logger.info(
            f"🩺 Screened {result.checked} wallets in {elapsed:.0f}ms | "
            f"💀 {len(result.liquidatable)} liquidatable | 🟠 {len(result.near_threshold)} near | "
            f"👀 {len(result.watchlist)} watch | ❌ {result.failed} failed | 🧟 {result.zombies} zombies"
        )
        return result
