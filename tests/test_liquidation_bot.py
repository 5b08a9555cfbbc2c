import asyncio
from decimal import Decimal

from hexbytes import HexBytes
from web3 import Web3

from chain_client import AccountData, FeeData
from conftest import addr
from execution_coordinator import CooldownBook, ExecutionCoordinator
from gas_strategy import GasStrategy
from health_screener import HealthReading, HealthScreener
from liquidation_bot import CycleScheduler, LiquidationBot, SchedulerState
from liquidation_params import decode_params
from market_registry import Reserve
from opportunity_sizer import OpportunitySizer
from positions import PositionReader
from quote_client import SwapQuote
from scan_state import KnownBorrowerSet, ScanStateStore

E18 = 10 ** 18
GWEI = 10 ** 9
WALLET = Web3.to_checksum_address(addr(0x1234))
HEALTHY = Web3.to_checksum_address(addr(0x5678))
X = Web3.to_checksum_address(addr(0xA1))
Y = Web3.to_checksum_address(addr(0xA2))
CX, DX = Web3.to_checksum_address(addr(0xC1)), Web3.to_checksum_address(addr(0xD1))
CY, DY = Web3.to_checksum_address(addr(0xC2)), Web3.to_checksum_address(addr(0xD2))


def reserve(asset, symbol, collateral_token, debt_token):
    return Reserve(asset, symbol, 18, True, False, True, True, collateral_token=collateral_token, debt_token=debt_token)


class FakeChain:
    def __init__(self):
        self.hf = {WALLET: Decimal("0.9"), HEALTHY: Decimal("2")}
        self.balances = {(CX, WALLET): 10 * E18, (DY, WALLET): 8 * E18}

    async def get_user_account_data(self, pool, wallet):
        return AccountData(2000, 1000, 0, 8000, 7500, int(self.hf[wallet] * E18))

    async def balance_of(self, token, holder):
        return self.balances.get((token, holder), 0)

    async def fee_data(self):
        return FeeData(base_fee=GWEI, priority_fee=GWEI, gas_price=None)


class FakeReserveIndex:
    async def get_reserves(self, borrowing_only=False):
        return [reserve(X, "X", CX, DX), reserve(Y, "Y", CY, DY)]


class FakeDiscovery:
    def __init__(self, wallets, error=None):
        self.known = KnownBorrowerSet(100, wallets)
        self.error = error
        self.last_report = {}

    async def discover(self):
        if self.error:
            raise self.error
        self.last_report = {"latest_block": 777}
        return self.known


class FakeQuoteClient:
    def __init__(self, quote):
        self.quote = quote
        self.requests = []

    async def get_quote(self, token_in, token_out, amount_in):
        self.requests.append((token_in, token_out, amount_in))
        return self.quote


class FakeGateway:
    def __init__(self):
        self.simulated = []
        self.submitted = []

    async def health_factor(self, wallet):
        return Decimal("0.9")

    async def simulate(self, opp, params_bytes):
        self.simulated.append(opp.wallet)

    async def estimate_gas(self, opp, params_bytes):
        return 200000

    async def submit(self, opp, params_bytes, gas_limit, gas_price):
        self.submitted.append(params_bytes)
        return b"\x22" * 32

    async def wait_for_receipt(self, tx_hash, timeout):
        return {"status": 1, "gasUsed": 150000, "effectiveGasPrice": GWEI}

    async def swap_router(self):
        return None


class FakeNotifier:
    def __init__(self):
        self.cycles = []
        self.live_targets = []
        self.attempts = []
        self.alerts = []

    async def log_system(self, msg, level="info"):
        pass

    async def record_attempt(self, wallet, outcome, reason=""):
        self.attempts.append((wallet, outcome))

    async def record_execution(self, *args):
        pass

    async def record_live_targets(self, rows):
        self.live_targets.extend(rows)

    async def record_cycle(self, *args):
        self.cycles.append(args)

    async def send_telegram_alert(self, msg, is_error=False):
        self.alerts.append(msg)


def make_bot(tmp_path, clock, quote, discovery=None):
    chain = FakeChain()
    notifier = FakeNotifier()
    gateway = FakeGateway()
    coordinator = ExecutionCoordinator(
        chain, gateway, notifier,
        cooldowns=CooldownBook(retry_cooldown=3600, failure_cooldown=43200, max_retries=3, clock=clock),
        gas_strategy=GasStrategy(max_gas_price_gwei=100), wrapped_native=Y,
    )
    quotes = FakeQuoteClient(quote)
    bot = LiquidationBot(
        client=chain,
        store=ScanStateStore(path=str(tmp_path / "state.json"), cap=100, seed=[]),
        discovery=discovery or FakeDiscovery([WALLET, HEALTHY]),
        screener=HealthScreener(chain, pool_address=addr(0xFF)),
        positions=PositionReader(chain, FakeReserveIndex()),
        sizer=OpportunitySizer(quotes),
        coordinator=coordinator,
        notifier=notifier,
        max_users=500,
        max_wallets=10,
    )
    return bot, gateway, quotes


def quote(amount_out):
    return SwapQuote(amount_out=amount_out, calldata=HexBytes("0xbeef"), execution_target=None, source="primary")


def test_scheduler_drops_overlapping_ticks():
    scheduler = CycleScheduler()
    assert scheduler.try_start()
    assert not scheduler.try_start()
    assert scheduler.skipped == 1
    scheduler.finish()
    assert scheduler.state is SchedulerState.IDLE
    assert scheduler.try_start()


def test_run_cycle_skipped_while_previous_running(tmp_path, clock):
    bot, gateway, quotes = make_bot(tmp_path, clock, quote(5 * E18))
    bot.scheduler.state = SchedulerState.RUNNING

    assert asyncio.run(bot.run_cycle()) is None
    assert quotes.requests == []
    assert bot.scheduler.skipped == 1


def test_end_to_end_scenario_a(tmp_path, clock):
    bot, gateway, quotes = make_bot(tmp_path, clock, quote(int(Decimal("4.5") * E18)))

    stats = asyncio.run(bot.run_cycle())

    assert stats.block_number == 777
    assert stats.checked == 2
    assert stats.liquidatable == 1
    assert stats.attempted == 1
    assert stats.succeeded == 1
    assert quotes.requests == [(X, Y, 5 * E18)]

    params = decode_params(gateway.submitted[0])
    assert params.user == WALLET
    assert params.collateral_asset == X
    assert params.debt_to_cover == 4 * E18
    assert bot.cooldowns.get(WALLET) is None
    assert bot.notifier.cycles[0][0] == 777
    assert bot.scheduler.state is SchedulerState.IDLE
    assert (tmp_path / "state.json").exists()


def test_unsized_wallet_gets_cooldown_and_is_skipped_next_cycle(tmp_path, clock):
    bot, gateway, quotes = make_bot(tmp_path, clock, None)

    stats = asyncio.run(bot.run_cycle())
    assert stats.attempted == 0
    assert bot.cooldowns.remaining(WALLET) == 43200
    assert bot.notifier.attempts == [(WALLET, "not_actionable")]

    asyncio.run(bot.run_cycle())
    assert len(quotes.requests) == 1
    assert gateway.simulated == []


def test_targets_are_unique_and_cooldown_free(tmp_path, clock):
    bot, gateway, quotes = make_bot(tmp_path, clock, None)
    other = Web3.to_checksum_address(addr(0x9999))
    bot.cooldowns.apply_cooldown(other, 60)

    readings = [
        HealthReading(WALLET, Decimal("0.5"), 1, 1),
        HealthReading(WALLET.lower(), Decimal("0.6"), 1, 1),
        HealthReading(other, Decimal("0.7"), 1, 1),
    ]
    targets = bot.select_targets(readings)
    assert [t.wallet for t in targets] == [WALLET]


def test_discovery_failure_still_screens_known_borrowers(tmp_path, clock):
    discovery = FakeDiscovery([], error=RuntimeError("markets API returned no reserves"))
    bot, gateway, quotes = make_bot(tmp_path, clock, quote(int(Decimal("4.5") * E18)), discovery=discovery)
    bot.store.known_borrowers.merge([WALLET, HEALTHY])

    stats = asyncio.run(bot.run_cycle())

    assert stats is not None
    assert stats.known_borrowers == 2
    assert stats.checked == 2
    assert stats.liquidatable == 1
    assert stats.succeeded == 1
    assert "no reserves" in bot.notifier.alerts[0]


def test_cycle_error_is_contained(tmp_path, clock, monkeypatch):
    bot, gateway, quotes = make_bot(tmp_path, clock, None)

    async def failing_screen(wallets, batch_size=None):
        raise RuntimeError("rpc down")

    monkeypatch.setattr(bot.screener, "screen", failing_screen)

    assert asyncio.run(bot.run_cycle()) is None
    assert bot.scheduler.state is SchedulerState.IDLE
    assert "rpc down" in bot.notifier.alerts[0]
