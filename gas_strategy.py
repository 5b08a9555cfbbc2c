import time
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from web3 import Web3

import config
from abis import LIQUIDATION_CALL_TOPIC

logger = logging.getLogger("GasStrategy")

# Priority-fee boost per urgency tier, in percent of the node's suggestion
URGENCY_MULTIPLIERS = {
    "low": 105,
    "medium": 120,
    "high": 135,
    "urgent": 160,
    "extreme": 200,
}
URGENCY_ORDER = ["low", "medium", "high", "urgent", "extreme"]


class GasPriceAboveCap(Exception):
    """The base fee alone is above MAX_GAS_PRICE_GWEI, so no capped fee can be included."""


@dataclass
class GasPrice:
    urgency: str
    max_fee_per_gas: int
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def is_eip1559(self):
        return self.max_priority_fee_per_gas is not None

    def tx_fields(self):
        if self.is_eip1559:
            return {"maxFeePerGas": self.max_fee_per_gas, "maxPriorityFeePerGas": self.max_priority_fee_per_gas}
        return {"gasPrice": self.max_fee_per_gas}


@dataclass
class CompetitorGas:
    count: int
    min: int
    median: int
    p75: int
    p90: int
    max: int
    timestamp: float


def _gwei(wei):
    return Decimal(wei) / Decimal(10 ** 9)


def _percentile(sorted_values, fraction):
    index = min(len(sorted_values) - 1, int(len(sorted_values) * fraction))
    return sorted_values[index]


class GasStrategy:
    """Competitive gas pricing: profit-driven urgency tiers over the node's fee suggestion."""

    def __init__(self, max_gas_price_gwei=config.MAX_GAS_PRICE_GWEI, analysis_ttl=3600, clock=time.time):
        self.max_gas_price = int(Decimal(max_gas_price_gwei) * Decimal(10 ** 9))
        self.analysis_ttl = analysis_ttl
        self.competitor_gas: Optional[CompetitorGas] = None
        self._last_analysis = 0.0
        self._clock = clock

    @staticmethod
    def urgency_for(profit_bps: int) -> str:
        if profit_bps > 1000:
            return "extreme"
        if profit_bps > 500:
            return "urgent"
        if profit_bps > 200:
            return "high"
        return "medium"

    @staticmethod
    def recommended_urgency(profit_bps: int, competitor: Optional[CompetitorGas] = None) -> str:
        """Profit tier, nudged one step up under heavy competition and one step down when quiet."""
        base = GasStrategy.urgency_for(profit_bps)
        if base in ("urgent", "extreme") or competitor is None:
            return base
        index = URGENCY_ORDER.index(base)
        if competitor.count > 20:
            index += 1
        elif competitor.count < 5:
            index -= 1
        return URGENCY_ORDER[max(1, min(index, len(URGENCY_ORDER) - 1))]

    def price(self, fee_data, profit_bps: int, urgency: Optional[str] = None) -> GasPrice:
        urgency = urgency or self.urgency_for(profit_bps)
        multiplier = URGENCY_MULTIPLIERS.get(urgency, URGENCY_MULTIPLIERS["high"])

        if fee_data.is_eip1559:
            base_fee = fee_data.base_fee
            priority = fee_data.priority_fee * multiplier // 100
            max_fee = max(base_fee + priority, base_fee * 2)
            if base_fee > self.max_gas_price:
                raise GasPriceAboveCap(
                    f"base fee {_gwei(base_fee)} gwei above cap {_gwei(self.max_gas_price)} gwei"
                )
            if max_fee > self.max_gas_price:
                logger.warning(f"   ⚠️ Gas capped at {_gwei(self.max_gas_price)} gwei (wanted {_gwei(max_fee)})")
                max_fee = self.max_gas_price
                priority = min(priority, max_fee - base_fee)
            logger.info(
                f"   ⛽ Gas [{urgency}]: priority={_gwei(priority)} gwei, maxFee={_gwei(max_fee)} gwei "
                f"({multiplier - 100}% boost)"
            )
            return GasPrice(urgency, max_fee, priority)

        gas_price = min(fee_data.gas_price * multiplier // 100, self.max_gas_price)
        logger.info(f"   ⛽ Gas [{urgency}]: {_gwei(gas_price)} gwei ({multiplier - 100}% boost)")
        return GasPrice(urgency, gas_price)

    async def get_competitive_gas(self, client, profit_bps: int, urgency: Optional[str] = None) -> GasPrice:
        fee_data = await client.fee_data()
        if urgency is None and self.competitor_gas is not None:
            urgency = self.recommended_urgency(profit_bps, self.competitor_gas)
        return self.price(fee_data, profit_bps, urgency)

    @staticmethod
    def is_profitable_after_gas(profit_native: int, gas_limit: int, gas_price: GasPrice) -> bool:
        return profit_native > gas_limit * gas_price.max_fee_per_gas

    async def analyze_competitor_gas(self, client, pool_address, lookback=500) -> Optional[CompetitorGas]:
        """Gas paid by recent liquidators on the pool. Cached for `analysis_ttl` seconds."""
        now = self._clock()
        if self.competitor_gas is not None and now - self._last_analysis < self.analysis_ttl:
            return self.competitor_gas

        latest = await client.block_number()
        logs = await client.get_logs({
            "address": pool_address,
            "fromBlock": max(0, latest - lookback),
            "toBlock": latest,
            "topics": [LIQUIDATION_CALL_TOPIC],
        })

        prices = []
        for log in logs:
            tx_hash = log["transactionHash"]
            try:
                tx = await client.call(lambda w3: w3.eth.get_transaction(tx_hash), "eth_getTransaction", attempts=1)
            except Exception as e:
                logger.debug(f"Skipping competitor tx {Web3.to_hex(tx_hash)}: {e}")
                continue
            price = tx.get("gasPrice") or tx.get("maxFeePerGas")
            if price:
                prices.append(int(price))

        self._last_analysis = now
        if not prices:
            return self.competitor_gas

        prices.sort()
        self.competitor_gas = CompetitorGas(
            count=len(prices),
            min=prices[0],
            median=_percentile(prices, 0.5),
            p75=_percentile(prices, 0.75),
            p90=_percentile(prices, 0.90),
            max=prices[-1],
            timestamp=now,
        )
        logger.info(
            f"   📊 Competitor gas ({len(prices)} liquidations / {lookback} blocks): "
            f"median={_gwei(self.competitor_gas.median)} p90={_gwei(self.competitor_gas.p90)} gwei"
        )
        return self.competitor_gas
