import asyncio
from decimal import Decimal

from chain_client import AccountData
from conftest import addr
from health_screener import HealthScreener, select_slice

WAD = 10 ** 18


def account(hf, debt=1000):
    return AccountData(
        total_collateral_base=2000, total_debt_base=debt, available_borrows_base=0,
        liquidation_threshold=8000, ltv=7500, health_factor=int(Decimal(hf) * WAD),
    )


class FakeAccountClient:
    def __init__(self, accounts):
        self.accounts = accounts
        self.calls = []

    async def get_user_account_data(self, pool, wallet):
        self.calls.append(wallet)
        entry = self.accounts[wallet]
        if isinstance(entry, Exception):
            raise entry
        return entry


def test_classification_boundaries():
    accounts = {
        addr(1): account("1.0"),
        addr(2): account("0.95"),
        addr(3): account("0.5"),
        addr(4): account("0.001"),
        addr(5): account("0", debt=0),
        addr(6): RuntimeError("rpc down"),
        addr(7): account("1.1"),
        addr(8): account("3.0"),
    }
    screener = HealthScreener(FakeAccountClient(accounts), pool_address=addr(0xFF), batch_size=3,
                              near_low="0.9", watch_threshold="1.15", dust_floor="0.01")

    result = asyncio.run(screener.screen(list(accounts)))

    assert [r.wallet for r in result.liquidatable] == [addr(3), addr(2)]
    assert [r.wallet for r in result.near_threshold] == [addr(2)]
    assert [r.wallet for r in result.watchlist] == [addr(1), addr(7)]
    assert result.zombies == 1
    assert result.zero_debt == 1
    assert result.failed == 1
    assert result.checked == 8
    assert result.lowest[0].wallet == addr(4)


def test_health_factor_of_one_is_never_liquidatable():
    screener = HealthScreener(FakeAccountClient({addr(1): account("1")}), pool_address=addr(0xFF))
    result = asyncio.run(screener.screen([addr(1)]))
    assert result.liquidatable == []


def test_select_slice_rotates_over_whole_set():
    wallets = [addr(n) for n in range(5)]
    offset = 0
    seen = []
    for _ in range(3):
        chunk, offset = select_slice(wallets, offset, 2)
        assert len(chunk) == 2
        seen.extend(chunk)
    assert set(seen) == set(wallets)
    assert offset == 1


def test_select_slice_small_sets():
    assert select_slice([], 3, 10) == ([], 0)
    assert select_slice([addr(1)], 3, 10) == ([addr(1)], 0)
