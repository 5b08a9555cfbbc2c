import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import config
from liquidation_params import LiquidationParams, SwapHop, prepare_hops, path_tokens
from positions import Position, LiquidationCandidate
from quote_client import SwapQuote

logger = logging.getLogger("OpportunitySizer")

BPS = 10000


def flash_premium(amount: int, fee_bps: int) -> int:
    return amount * fee_bps // BPS


def calculate_profit_bps(amount_out: int, debt_amount: int, fee_bps: int = config.FLASH_LOAN_FEE_BPS) -> int:
    """
    profit_bps = (amountOut - (debt + premium)) / debt * 10000, floored at -10000.
    Integer math on raw token units, truncated toward zero.
    """
    if debt_amount <= 0:
        return -BPS
    owed = debt_amount + flash_premium(debt_amount, fee_bps)
    bps = int(Decimal(amount_out - owed) * BPS / Decimal(debt_amount))
    return max(-BPS, bps)


def select_pair(supply: List[Position], borrow: List[Position], top_n=config.TOP_N_POSITIONS):
    """First (collateral, debt) pair of distinct assets among the top-N positions on each side."""
    for collateral in supply[:top_n]:
        for debt in borrow[:top_n]:
            if collateral.underlying.lower() != debt.underlying.lower():
                return collateral, debt
    return None


@dataclass
class Opportunity:
    wallet: str
    health_factor: Decimal
    collateral: Position
    debt: Position
    debt_to_cover: int
    collateral_estimate: int
    quote: SwapQuote
    profit_bps: int
    flash_fee_bps: int
    hops: List[List[SwapHop]] = field(default_factory=list)

    @property
    def owed(self) -> int:
        return self.debt_to_cover + flash_premium(self.debt_to_cover, self.flash_fee_bps)

    @property
    def expected_profit(self) -> int:
        return self.quote.amount_out - self.owed

    @property
    def uses_calldata(self) -> bool:
        return len(self.quote.calldata) > 0

    def to_params(self) -> LiquidationParams:
        if self.uses_calldata:
            return LiquidationParams(
                user=self.wallet,
                collateral_asset=self.collateral.underlying,
                debt_to_cover=self.debt_to_cover,
                swap_instruction=bytes(self.quote.calldata),
                min_amount_out=self.owed,
            )
        return LiquidationParams(
            user=self.wallet,
            collateral_asset=self.collateral.underlying,
            debt_to_cover=self.debt_to_cover,
            min_amount_out=self.owed,
            path_tokens=path_tokens(self.hops),
            hops=self.hops,
        )


class OpportunitySizer:
    """Pair selection, close-factor sizing, quoting and profit estimation for one candidate."""

    def __init__(self, quote_client, swap_router=None, close_factor=config.CLOSE_FACTOR,
                 flash_fee_bps=config.FLASH_LOAN_FEE_BPS, min_profit_bps=config.MIN_PROFIT_THRESHOLD_BPS,
                 min_debt_to_repay=config.MIN_DEBT_TO_REPAY, top_n=config.TOP_N_POSITIONS):
        self.quote_client = quote_client
        self.swap_router = swap_router
        self.close_factor = Decimal(close_factor)
        self.flash_fee_bps = flash_fee_bps
        self.min_profit_bps = min_profit_bps
        self.min_debt_to_repay = Decimal(min_debt_to_repay)
        self.top_n = top_n
        self.rejections = Counter()

    def _reject(self, reason, wallet, detail=""):
        self.rejections[reason] += 1
        logger.info(f"   ⏭️ {wallet[:10]}: {reason}{' (' + detail + ')' if detail else ''}")
        return None

    def _route_hops(self, quote: SwapQuote):
        if not quote.best_path or not quote.token_info:
            return []
        try:
            return prepare_hops({"bestPath": quote.best_path, "tokenInfo": quote.token_info})
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"   ⚠️ Could not prepare hops from route: {e}")
            return []

    async def size(self, candidate: LiquidationCandidate) -> Optional[Opportunity]:
        pair = select_pair(candidate.supply_positions, candidate.borrow_positions, self.top_n)
        if pair is None:
            return self._reject("no_distinct_pair", candidate.wallet)
        collateral, debt = pair

        debt_to_cover = min(debt.amount, int(Decimal(debt.amount) * self.close_factor))
        debt_human = Decimal(debt_to_cover) / Decimal(10 ** debt.decimals)
        if debt_to_cover <= 0 or debt_human < self.min_debt_to_repay:
            return self._reject("debt_below_minimum", candidate.wallet, f"{debt_human} {debt.symbol}")

        collateral_estimate = int(Decimal(collateral.amount) * self.close_factor)
        logger.info(
            f"   📐 {candidate.wallet[:10]}: repay {debt_human} {debt.symbol}, "
            f"seize ~{Decimal(collateral_estimate) / Decimal(10 ** collateral.decimals)} {collateral.symbol}"
        )

        quote = await self.quote_client.get_quote(collateral.underlying, debt.underlying, collateral_estimate)
        if quote is None:
            return self._reject("no_quote", candidate.wallet)

        if quote.execution_target and self.swap_router and quote.execution_target.lower() != self.swap_router.lower():
            return self._reject("router_mismatch", candidate.wallet, quote.execution_target)

        hops = []
        if len(quote.calldata) == 0:
            hops = self._route_hops(quote)
            if not hops:
                return self._reject("no_executable_route", candidate.wallet)

        profit_bps = calculate_profit_bps(quote.amount_out, debt_to_cover, self.flash_fee_bps)
        if profit_bps <= 0:
            return self._reject("unprofitable", candidate.wallet, f"{profit_bps} bps")
        if profit_bps < self.min_profit_bps:
            return self._reject("below_min_profit", candidate.wallet, f"{profit_bps} bps")

        logger.info(f"   💰 {candidate.wallet[:10]}: {profit_bps} bps via {quote.source} quote")
        return Opportunity(
            wallet=candidate.wallet,
            health_factor=candidate.health_factor,
            collateral=collateral,
            debt=debt,
            debt_to_cover=debt_to_cover,
            collateral_estimate=collateral_estimate,
            quote=quote,
            profit_bps=profit_bps,
            flash_fee_bps=self.flash_fee_bps,
            hops=hops,
        )
