import time
import signal
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import config
import db_manager
from borrower_discovery import BorrowerDiscovery
from chain_client import ChainClient
from execution_coordinator import AttemptOutcome, CooldownBook, ExecutionCoordinator, LiquidatorGateway
from gas_strategy import GasStrategy
from health_screener import HealthScreener, select_slice
from market_registry import MarketRegistry, ReserveIndex
from notifier import Notifier
from opportunity_sizer import OpportunitySizer
from positions import PositionReader
from quote_client import QuoteClient
from scan_state import ScanStateStore

logger = logging.getLogger("LiquidationBot")

ATTEMPTED = {
    AttemptOutcome.SIMULATION_FAILED,
    AttemptOutcome.UNPROFITABLE_AFTER_GAS,
    AttemptOutcome.SUCCEEDED,
    AttemptOutcome.FAILED,
}
FAILED = {AttemptOutcome.SIMULATION_FAILED, AttemptOutcome.FAILED}


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class CycleScheduler:
    """Single-flow guard: a tick that arrives while a cycle is running is dropped, not queued."""

    def __init__(self):
        self.state = SchedulerState.IDLE
        self.skipped = 0

    def try_start(self) -> bool:
        if self.state is SchedulerState.RUNNING:
            self.skipped += 1
            return False
        self.state = SchedulerState.RUNNING
        return True

    def finish(self):
        self.state = SchedulerState.IDLE


@dataclass
class CycleStats:
    block_number: int = 0
    known_borrowers: int = 0
    checked: int = 0
    liquidatable: int = 0
    near_threshold: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    cycle_time_ms: float = 0.0
    sized: int = 0
    skipped_cooldown: int = 0

    def as_row(self):
        return (self.block_number, self.known_borrowers, self.checked, self.liquidatable, self.near_threshold,
                self.attempted, self.succeeded, self.failed, self.cycle_time_ms)


class LiquidationBot:
    """
    One cycle = discover -> screen a rotating slice -> size the liquidatable ones -> simulate/submit.
    Cycles fire on a fixed interval; a still-running cycle makes the next tick a no-op.
    """

    def __init__(self, client, store, discovery, screener, positions, sizer, coordinator, notifier,
                 gas_strategy=None, max_users=config.MAX_USERS_TO_CHECK,
                 max_wallets=config.MAX_WALLETS_PER_CYCLE, interval=config.CYCLE_INTERVAL_SECONDS,
                 pool_address=config.POOL_ADDRESS):
        self.client = client
        self.store = store
        self.discovery = discovery
        self.screener = screener
        self.positions = positions
        self.sizer = sizer
        self.coordinator = coordinator
        self.notifier = notifier
        self.gas_strategy = gas_strategy
        self.max_users = max_users
        self.max_wallets = max_wallets
        self.interval = interval
        self.pool_address = pool_address
        self.scheduler = CycleScheduler()
        self.cycles = 0

    @classmethod
    async def create(cls):
        """Wire every component from config. Connects the RPC client."""
        client = ChainClient(config.RPC_ENDPOINTS)
        await client.connect()
        account = client.w3.eth.account.from_key(config.PRIVATE_KEY)
        logger.info(f"🔑 Executor wallet: {account.address}")

        notifier = Notifier()
        registry = MarketRegistry()
        reserve_index = ReserveIndex(client, registry)
        store = ScanStateStore()
        gas_strategy = GasStrategy()
        gateway = LiquidatorGateway(client, account)
        coordinator = ExecutionCoordinator(
            client, gateway, notifier,
            cooldowns=CooldownBook(), gas_strategy=gas_strategy, registry=registry,
        )
        return cls(
            client=client,
            store=store,
            discovery=BorrowerDiscovery(client, reserve_index, store),
            screener=HealthScreener(client),
            positions=PositionReader(client, reserve_index),
            sizer=OpportunitySizer(QuoteClient()),
            coordinator=coordinator,
            notifier=notifier,
            gas_strategy=gas_strategy,
        )

    @property
    def cooldowns(self):
        return self.coordinator.cooldowns

    async def start(self):
        await self.store.load()
        try:
            router = await self.coordinator.gateway.swap_router()
            self.sizer.swap_router = router
            logger.info(f"🔀 Liquidator swap router: {router}")
        except Exception as e:
            logger.warning(f"⚠️ Could not read liquidator swap router, quote targets unchecked: {str(e)[:120]}")

    async def shutdown(self):
        await self.store.save()
        await self.client.close()
        await self.notifier.send_telegram_alert("🔴 <b>Flash Liquidator Stopped</b>")
        logger.info("🛑 Shutdown complete.")

    # ================================================================
    # CYCLE
    # ================================================================

    def select_targets(self, liquidatable, stats=None):
        """Lowest-HF first, one entry per wallet, cooldown wallets never selected."""
        seen = set()
        targets = []
        for reading in liquidatable:
            key = reading.wallet.lower()
            if key in seen:
                continue
            seen.add(key)
            if self.cooldowns.is_on_cooldown(reading.wallet):
                logger.info(f"   ⏭️ {reading.wallet[:10]}: on cooldown")
                if stats is not None:
                    stats.skipped_cooldown += 1
                continue
            targets.append(reading)
            if len(targets) >= self.max_wallets:
                break
        return targets

    async def process_target(self, reading) -> Optional[AttemptOutcome]:
        candidate = await self.positions.read(reading.wallet, reading.health_factor)
        async with self.coordinator.sim_slots:
            opportunity = await self.sizer.size(candidate)
        if opportunity is None:
            self.cooldowns.apply_cooldown(reading.wallet)
            await self.notifier.record_attempt(reading.wallet, "not_actionable")
            return None
        return await self.coordinator.attempt(opportunity)

    async def _cycle(self) -> CycleStats:
        start_time = time.time()
        stats = CycleStats()

        try:
            known = await self.discovery.discover()
        except Exception as e:
            logger.error(f"⚠️ Discovery failed, screening known borrowers only: {e}", exc_info=True)
            await self.notifier.send_telegram_alert(
                f"⚠️ <b>Discovery Error:</b> <code>{str(e)[:300]}</code>", is_error=True
            )
            known = self.store.known_borrowers
        stats.block_number = self.discovery.last_report.get("latest_block", 0)
        stats.known_borrowers = len(known)

        batch, self.store.last_check_offset = select_slice(
            known.to_list(), self.store.last_check_offset, self.max_users
        )
        screen = await self.screener.screen(batch)
        stats.checked = screen.checked
        stats.liquidatable = len(screen.liquidatable)
        stats.near_threshold = len(screen.near_threshold)

        for reading in screen.lowest:
            logger.info(f"   📉 {reading.wallet} HF={reading.health_factor:.4f}")

        await self.notifier.record_live_targets([
            (r.wallet, float(r.health_factor), float(r.total_debt_base), float(r.total_collateral_base))
            for r in screen.liquidatable + screen.watchlist
        ])

        targets = self.select_targets(screen.liquidatable, stats)
        if targets and self.gas_strategy is not None:
            try:
                await self.gas_strategy.analyze_competitor_gas(self.client, self.pool_address)
            except Exception as e:
                logger.warning(f"⚠️ Competitor gas analysis failed: {str(e)[:100]}")

        if targets:
            logger.info(f"🎯 {len(targets)} liquidation targets this cycle")
            outcomes = await asyncio.gather(*(self.process_target(t) for t in targets), return_exceptions=True)
            for reading, outcome in zip(targets, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning(f"⚠️ Target {reading.wallet[:10]} failed: {str(outcome)[:120]}")
                    continue
                if outcome is not None:
                    stats.sized += 1
                if outcome in ATTEMPTED:
                    stats.attempted += 1
                if outcome is AttemptOutcome.SUCCEEDED:
                    stats.succeeded += 1
                elif outcome in FAILED:
                    stats.failed += 1

        await self.store.save()
        stats.cycle_time_ms = (time.time() - start_time) * 1000
        await self.notifier.record_cycle(*stats.as_row())

        logger.info(
            f"📊 Cycle #{self.cycles} | block {stats.block_number} | known {stats.known_borrowers} | "
            f"checked {stats.checked} | 💀 {stats.liquidatable} | 🟠 {stats.near_threshold} | "
            f"⏭️ {stats.skipped_cooldown} cooldown | sized {stats.sized} | attempted {stats.attempted} | "
            f"✅ {stats.succeeded} | ❌ {stats.failed} | {stats.cycle_time_ms:.0f}ms"
        )
        if self.sizer.rejections:
            logger.info(f"   🚫 Sizing rejections so far: {dict(self.sizer.rejections)}")
        return stats

    async def run_cycle(self) -> Optional[CycleStats]:
        if not self.scheduler.try_start():
            logger.info("⏳ Previous cycle still running, skipping this tick")
            return None
        self.cycles += 1
        try:
            return await self._cycle()
        except Exception as e:
            logger.error(f"⚠️ Cycle #{self.cycles} failed: {e}", exc_info=True)
            await self.notifier.send_telegram_alert(f"⚠️ <b>Cycle Error:</b> <code>{str(e)[:300]}</code>", is_error=True)
            return None
        finally:
            self.scheduler.finish()

    async def run_forever(self):
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        await self.start()
        await self.notifier.send_telegram_alert("🟢 <b>Flash Liquidator Started</b>")
        logger.info(f"🚀 Flash Liquidator started. Cycle interval: {self.interval}s")

        in_flight = set()
        while not stop.is_set():
            task = asyncio.create_task(self.run_cycle())
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        if in_flight:
            logger.info("⏳ Waiting for the in-flight cycle to finish...")
            await asyncio.gather(*in_flight, return_exceptions=True)
        await self.shutdown()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        handlers=[logging.FileHandler(config.LOG_FILE), logging.StreamHandler()],
    )
    config.validate_config()
    db_manager.init_db()

    async def runner():
        bot = await LiquidationBot.create()
        await bot.run_forever()

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        print("🛑 Flash Liquidator Stopped.")


if __name__ == "__main__":
    main()
