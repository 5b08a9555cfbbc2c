import time
import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from web3 import AsyncWeb3

import config
from abis import LIQUIDATOR_ABI
from gas_strategy import GasPriceAboveCap, GasStrategy
from liquidation_params import encode_params

logger = logging.getLogger("ExecutionCoordinator")

WAD = Decimal(10 ** 18)


class AttemptOutcome(Enum):
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_HEALTHY = "skipped_healthy"
    SKIPPED_UNVERIFIED = "skipped_unverified"
    SIMULATION_FAILED = "simulation_failed"
    UNPROFITABLE_AFTER_GAS = "unprofitable_after_gas"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class AttemptState:
    cooldown_until: float = 0.0
    retry_count: int = 0


class CooldownBook:
    """
    Per-wallet AttemptState.
    - short retry cooldown after a failed simulation or submission
    - long post-failure cooldown once retries hit the cap (retry count then resets)
    - no entry at all after a success
    """

    def __init__(self, retry_cooldown=config.RETRY_COOLDOWN_SECONDS, failure_cooldown=config.COOLDOWN_SECONDS,
                 max_retries=config.MAX_RETRIES_PER_WALLET, clock=time.time):
        self.retry_cooldown = retry_cooldown
        self.failure_cooldown = failure_cooldown
        self.max_retries = max_retries
        self.states: Dict[str, AttemptState] = {}
        self._clock = clock

    def get(self, wallet) -> Optional[AttemptState]:
        return self.states.get(wallet.lower())

    def _state(self, wallet) -> AttemptState:
        return self.states.setdefault(wallet.lower(), AttemptState())

    def remaining(self, wallet) -> float:
        state = self.get(wallet)
        if state is None:
            return 0.0
        return max(0.0, state.cooldown_until - self._clock())

    def is_on_cooldown(self, wallet) -> bool:
        return self.remaining(wallet) > 0

    def apply_cooldown(self, wallet, seconds=None):
        """Throttle without counting a retry (no quote, unprofitable, ...)."""
        seconds = self.failure_cooldown if seconds is None else seconds
        self._state(wallet).cooldown_until = self._clock() + seconds

    def record_failure(self, wallet) -> bool:
        """Returns True when the retry budget is exhausted and the long cooldown was applied."""
        state = self._state(wallet)
        state.retry_count += 1
        if state.retry_count < self.max_retries:
            state.cooldown_until = self._clock() + self.retry_cooldown
            return False
        state.cooldown_until = self._clock() + self.failure_cooldown
        state.retry_count = 0
        return True

    def clear(self, wallet):
        self.states.pop(wallet.lower(), None)


class LiquidatorGateway:
    """web3 plumbing for the flash-loan liquidator contract."""

    def __init__(self, client, account, liquidator_address=config.LIQUIDATOR_ADDRESS,
                 pool_address=config.POOL_ADDRESS, chain_id=config.CHAIN_ID):
        self.client = client
        self.account = account
        self.liquidator_address = liquidator_address
        self.pool_address = pool_address
        self.chain_id = chain_id

    def _entry_point(self, w3, opportunity, params_bytes):
        contract = w3.eth.contract(address=self.liquidator_address, abi=LIQUIDATOR_ABI)
        if opportunity.uses_calldata:
            fn = contract.functions.liquidateWithCalldata
        else:
            fn = contract.functions.liquidateWithHops
        return fn(AsyncWeb3.to_checksum_address(opportunity.debt.underlying), opportunity.debt_to_cover, params_bytes)

    async def swap_router(self) -> str:
        async def op(w3):
            contract = w3.eth.contract(address=self.liquidator_address, abi=LIQUIDATOR_ABI)
            return await contract.functions.liquidSwapRouter().call()
        return await self.client.call(op, "liquidSwapRouter")

    async def health_factor(self, wallet) -> Decimal:
        data = await self.client.get_user_account_data(self.pool_address, wallet)
        if data.total_debt_base == 0:
            return Decimal("Infinity")
        return Decimal(data.health_factor) / WAD

    async def simulate(self, opportunity, params_bytes):
        async def op(w3):
            return await self._entry_point(w3, opportunity, params_bytes).call({"from": self.account.address})
        return await self.client.call(op, f"simulate({opportunity.wallet[:10]})")

    async def estimate_gas(self, opportunity, params_bytes) -> int:
        async def op(w3):
            return await self._entry_point(w3, opportunity, params_bytes).estimate_gas({"from": self.account.address})
        return await self.client.call(op, "estimate_gas")

    async def submit(self, opportunity, params_bytes, gas_limit, gas_price):
        """Single-shot send. Never retried: a blind resend could double-spend the nonce slot."""
        w3 = self.client.w3
        nonce = await w3.eth.get_transaction_count(self.account.address, "pending")
        tx = await self._entry_point(w3, opportunity, params_bytes).build_transaction({
            "from": self.account.address,
            "nonce": nonce,
            "gas": gas_limit,
            "chainId": self.chain_id,
            **gas_price.tx_fields(),
        })
        signed = self.account.sign_transaction(tx)
        return await w3.eth.send_raw_transaction(signed.raw_transaction)

    async def wait_for_receipt(self, tx_hash, timeout):
        return await self.client.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)


class ExecutionCoordinator:
    """
    Simulate-then-submit with per-wallet cooldowns.
    At most `max_sims` simulations in flight; submissions serialized through `max_sends` slots.
    """

    def __init__(self, client, gateway, notifier, cooldowns=None, gas_strategy=None, registry=None,
                 wrapped_native=config.WRAPPED_NATIVE, max_sims=config.MAX_CONCURRENT_SIMS,
                 max_sends=config.MAX_CONCURRENT_SENDS, gas_limit_multiplier=config.GAS_LIMIT_MULTIPLIER,
                 receipt_timeout=config.RECEIPT_TIMEOUT, explorer_tx_url=config.EXPLORER_TX_URL):
        self.client = client
        self.gateway = gateway
        self.notifier = notifier
        self.cooldowns = cooldowns or CooldownBook()
        self.gas_strategy = gas_strategy or GasStrategy()
        self.registry = registry
        self.wrapped_native = wrapped_native
        self.gas_limit_multiplier = Decimal(gas_limit_multiplier)
        self.receipt_timeout = receipt_timeout
        self.explorer_tx_url = explorer_tx_url
        self.sim_slots = asyncio.Semaphore(max_sims)
        self.send_slots = asyncio.Semaphore(max_sends)
        self.stats = Counter()

    # ================================================================
    # PROFIT IN NATIVE UNITS
    # ================================================================

    def _native_price(self) -> Optional[Decimal]:
        if self.registry is None or self.wrapped_native is None:
            return None
        market = self.registry.get_market(self.wrapped_native)
        return market.price_usd if market else None

    def profit_in_native(self, opportunity) -> Optional[int]:
        """Expected profit converted to native wei, or None when no price path exists."""
        profit = opportunity.expected_profit
        if profit <= 0:
            return 0
        debt = opportunity.debt
        if self.wrapped_native and debt.underlying.lower() == self.wrapped_native.lower():
            return profit * 10 ** (18 - debt.decimals) if debt.decimals <= 18 else profit // 10 ** (debt.decimals - 18)
        native_price = self._native_price()
        if not native_price or not debt.price_usd:
            return None
        profit_usd = Decimal(profit) / Decimal(10 ** debt.decimals) * debt.price_usd
        return int(profit_usd / native_price * WAD)

    # ================================================================
    # ATTEMPT
    # ================================================================

    async def _fail(self, opportunity, outcome, reason):
        wallet = opportunity.wallet
        exhausted = self.cooldowns.record_failure(wallet)
        self.stats[outcome.value] += 1
        await self.notifier.record_attempt(wallet, outcome.value, reason)
        if exhausted:
            await self.notifier.send_telegram_alert(
                f"🟡 <b>Retries exhausted</b> for <code>{wallet}</code>, long cooldown applied.\n<code>{reason[:200]}</code>",
                is_error=True,
            )
        return outcome

    async def _unprofitable(self, opportunity, reason):
        self.cooldowns.apply_cooldown(opportunity.wallet, self.cooldowns.retry_cooldown)
        self.stats[AttemptOutcome.UNPROFITABLE_AFTER_GAS.value] += 1
        await self.notifier.record_attempt(opportunity.wallet, AttemptOutcome.UNPROFITABLE_AFTER_GAS.value, reason)
        return AttemptOutcome.UNPROFITABLE_AFTER_GAS

    async def attempt(self, opportunity) -> AttemptOutcome:
        wallet = opportunity.wallet

        if self.cooldowns.is_on_cooldown(wallet):
            remaining = self.cooldowns.remaining(wallet) / 60
            logger.info(f"   ⏭️ {wallet[:10]}: on cooldown ({remaining:.0f}m remaining)")
            self.stats[AttemptOutcome.SKIPPED_COOLDOWN.value] += 1
            return AttemptOutcome.SKIPPED_COOLDOWN

        try:
            hf = await self.gateway.health_factor(wallet)
        except Exception as e:
            logger.warning(f"   ⚠️ {wallet[:10]}: could not re-verify health factor: {str(e)[:100]}")
            self.stats[AttemptOutcome.SKIPPED_UNVERIFIED.value] += 1
            return AttemptOutcome.SKIPPED_UNVERIFIED
        if hf >= 1:
            logger.info(f"   ⏭️ {wallet[:10]}: recovered (HF {hf:.4f}), skipping")
            self.stats[AttemptOutcome.SKIPPED_HEALTHY.value] += 1
            return AttemptOutcome.SKIPPED_HEALTHY

        params_bytes = encode_params(opportunity.to_params())

        async with self.sim_slots:
            logger.info(f"   🧪 Simulating liquidation of {wallet[:10]} ({opportunity.profit_bps} bps)...")
            try:
                await self.gateway.simulate(opportunity, params_bytes)
                gas_estimate = await self.gateway.estimate_gas(opportunity, params_bytes)
            except Exception as e:
                logger.warning(f"   ❌ Simulation failed for {wallet[:10]}: {str(e)[:160]}")
                return await self._fail(opportunity, AttemptOutcome.SIMULATION_FAILED, str(e))

        gas_limit = int(Decimal(gas_estimate) * self.gas_limit_multiplier)
        logger.info(f"   ✅ Simulation passed | gas estimate {gas_estimate} -> limit {gas_limit}")

        async with self.send_slots:
            return await self._submit(opportunity, params_bytes, gas_limit)

    async def _submit(self, opportunity, params_bytes, gas_limit) -> AttemptOutcome:
        wallet = opportunity.wallet
        try:
            gas_price = await self.gas_strategy.get_competitive_gas(self.client, opportunity.profit_bps)
        except GasPriceAboveCap as e:
            logger.warning(f"   ⚠️ Gas too expensive, not sending: {e}")
            return await self._unprofitable(opportunity, str(e))
        except Exception as e:
            return await self._fail(opportunity, AttemptOutcome.FAILED, f"gas pricing failed: {e}")

        profit_native = self.profit_in_native(opportunity)
        if profit_native is None or not self.gas_strategy.is_profitable_after_gas(profit_native, gas_limit, gas_price):
            gas_cost = gas_limit * gas_price.max_fee_per_gas
            logger.warning(f"   ⚠️ NOT PROFITABLE after gas: profit={profit_native} < gas={gas_cost} (wei)")
            return await self._unprofitable(opportunity, f"profit={profit_native} gas={gas_cost}")

        try:
            logger.info(f"   📤 Sending liquidation tx for {wallet[:10]}...")
            tx_hash = await self.gateway.submit(opportunity, params_bytes, gas_limit, gas_price)
        except Exception as e:
            await self.notifier.log_system(f"TX Build/Send Failed for {wallet}: {e}", "error")
            return await self._fail(opportunity, AttemptOutcome.FAILED, str(e))

        tx_hex = AsyncWeb3.to_hex(tx_hash)
        link = f"{self.explorer_tx_url}{tx_hex}"
        await self.notifier.log_system(f"🔥 TX SENT: {tx_hex}", "info")

        try:
            receipt = await self.gateway.wait_for_receipt(tx_hash, self.receipt_timeout)
        except Exception as e:
            await self.notifier.log_system(f"Receipt wait failed for {tx_hex}: {e}", "warning")
            return await self._fail(opportunity, AttemptOutcome.FAILED, f"receipt: {e}")

        gas_used = receipt["gasUsed"]
        effective_price = receipt.get("effectiveGasPrice") or gas_price.max_fee_per_gas
        gas_cost_native = Decimal(gas_used * effective_price) / WAD

        if receipt["status"] != 1:
            await self.notifier.log_system(f"❌ TX REVERTED: {tx_hex}", "error")
            await self.notifier.record_execution(
                tx_hex, wallet, opportunity.debt.underlying, opportunity.collateral.underlying,
                opportunity.debt_to_cover, opportunity.profit_bps, gas_used, float(gas_cost_native), "reverted",
            )
            await self.notifier.send_telegram_alert(
                f"🟡 <b>TX REVERTED</b>\n💸 Gas Wasted: {gas_cost_native:.6f}\n🔗 <a href='{link}'>Explorer</a>"
            )
            return await self._fail(opportunity, AttemptOutcome.FAILED, "transaction reverted")

        self.cooldowns.clear(wallet)
        self.stats[AttemptOutcome.SUCCEEDED.value] += 1
        await self.notifier.log_system(f"✅ TX CONFIRMED: {tx_hex} | Gas: {gas_cost_native:.6f}", "success")
        await self.notifier.record_execution(
            tx_hex, wallet, opportunity.debt.underlying, opportunity.collateral.underlying,
            opportunity.debt_to_cover, opportunity.profit_bps, gas_used, float(gas_cost_native), "success",
        )
        await self.notifier.record_attempt(wallet, AttemptOutcome.SUCCEEDED.value, tx_hex)
        await self.notifier.send_telegram_alert(
            f"🟢 <b>Liquidation SUCCESS</b>\n🎯 Target: <code>{wallet}</code>\n"
            f"💰 Profit: ~{opportunity.profit_bps} bps\n⛽ Gas: {gas_cost_native:.6f}\n"
            f"🔗 <a href='{link}'>Explorer</a>"
        )
        return AttemptOutcome.SUCCEEDED
