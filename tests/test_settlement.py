import pytest
from web3 import Web3

from conftest import addr
from liquidation_params import LiquidationParams, SwapHop, encode_params, path_tokens, to_raw_amount
from settlement import FlashLiquidator, Ledger, Revert, SwapOutcome, reconcile_first_hop, require

E18 = 10 ** 18
OWNER = Web3.to_checksum_address(addr(0x0E))
LIQUIDATOR = Web3.to_checksum_address(addr(0x1C))
POOL = Web3.to_checksum_address(addr(0x9001))
ROUTER = Web3.to_checksum_address(addr(0x9002))
USER = Web3.to_checksum_address(addr(0x1234))
COLLATERAL = Web3.to_checksum_address(addr(0xA1))
DEBT = Web3.to_checksum_address(addr(0xA2))
WRAPPED = Web3.to_checksum_address(addr(0xA3))
FEE_BPS = 9


class FakePool:
    """Flash-loan + liquidation behavior of the lending pool, acting on the shared ledger."""

    def __init__(self, ledger, seize_amount):
        self.address = POOL
        self.ledger = ledger
        self.seize_amount = seize_amount
        self.liquidations = []

    def flash_loan_simple(self, receiver, asset, amount, params, referral_code):
        premium = amount * FEE_BPS // 10000
        self.ledger.transfer(asset, self.address, receiver.address, amount)
        ok = receiver.execute_operation(self.address, asset, amount, premium, receiver.address, params)
        require(ok, "flash loan callback failed")
        self.ledger.transfer_from(asset, self.address, receiver.address, self.address, amount + premium)
        return True

    def liquidation_call(self, sender, collateral_asset, debt_asset, user, debt_to_cover, receive_a_token):
        self.ledger.transfer_from(debt_asset, self.address, sender, self.address, debt_to_cover)
        self.ledger.transfer(collateral_asset, self.address, sender, self.seize_amount)
        self.liquidations.append((user, debt_to_cover))


class FakeRouter:
    """Pulls the approved collateral and pays out `rate` debt units per collateral unit (in bps)."""

    def __init__(self, ledger, out_token=DEBT, rate_bps=10000, fail_reason=None, pay_native=False):
        self.address = ROUTER
        self.ledger = ledger
        self.out_token = out_token
        self.rate_bps = rate_bps
        self.fail_reason = fail_reason
        self.pay_native = pay_native
        self.received_hops = None
        self.on_execute = None

    def _swap(self, sender, amount_in):
        if self.on_execute:
            self.on_execute()
        require(self.fail_reason is None, self.fail_reason or "")
        self.ledger.transfer_from(COLLATERAL, self.address, sender, self.address, amount_in)
        amount_out = amount_in * self.rate_bps // 10000
        if self.pay_native:
            self.ledger.transfer_native(self.address, sender, amount_out)
        else:
            self.ledger.transfer(self.out_token, self.address, sender, amount_out)
        return amount_out

    def execute(self, sender, instruction):
        return self._swap(sender, self.ledger.allowance(COLLATERAL, sender, self.address))

    def swap(self, sender, tokens, hops, min_amount_out):
        self.received_hops = hops
        return self._swap(sender, sum(hop.amount_in for hop in hops[0]))


def build(seize=5 * E18, rate_bps=10000, debt_asset=DEBT, **router_kwargs):
    ledger = Ledger()
    ledger.mint(debt_asset, POOL, 1000 * E18)
    ledger.mint(COLLATERAL, POOL, 1000 * E18)
    ledger.mint(debt_asset, ROUTER, 1000 * E18)
    ledger.credit_native(ROUTER, 1000 * E18)
    pool = FakePool(ledger, seize)
    router = FakeRouter(ledger, out_token=debt_asset, rate_bps=rate_bps, **router_kwargs)
    liquidator = FlashLiquidator(LIQUIDATOR, OWNER, pool, router, ledger, wrapped_native=WRAPPED)
    return ledger, pool, router, liquidator


def calldata_params(debt_to_cover=4 * E18):
    return encode_params(LiquidationParams(
        user=USER, collateral_asset=COLLATERAL, debt_to_cover=debt_to_cover,
        swap_instruction=b"\xca\xfe", min_amount_out=debt_to_cover,
    ))


def hop_params(declared, debt_to_cover=4 * E18):
    hops = [[SwapHop(COLLATERAL, DEBT, 0, 3000, declared, False)]]
    return encode_params(LiquidationParams(
        user=USER, collateral_asset=COLLATERAL, debt_to_cover=debt_to_cover,
        min_amount_out=debt_to_cover, path_tokens=path_tokens(hops), hops=hops,
    ))


def balances(ledger):
    holders = (OWNER, LIQUIDATOR, POOL, ROUTER)
    return {
        (token, holder): ledger.balance_of(token, holder)
        for token in (DEBT, COLLATERAL, WRAPPED) for holder in holders
    }


# =====================================================================
# LEDGER
# =====================================================================

def test_try_call_rolls_back_only_the_failed_call():
    ledger = Ledger()
    ledger.mint(DEBT, OWNER, 10)

    def move_then_fail():
        ledger.transfer(DEBT, OWNER, USER, 4)
        raise Revert("boom")

    result = ledger.try_call(move_then_fail)
    assert not result.success and result.reason == "boom"
    assert ledger.balance_of(DEBT, OWNER) == 10

    assert ledger.try_call(ledger.transfer, DEBT, OWNER, USER, 3).success
    assert ledger.balance_of(DEBT, USER) == 3


def test_transfer_from_requires_allowance():
    ledger = Ledger()
    ledger.mint(DEBT, OWNER, 10)
    with pytest.raises(Revert, match="insufficient allowance"):
        ledger.transfer_from(DEBT, USER, OWNER, USER, 5)
    ledger.approve(DEBT, OWNER, USER, 5)
    ledger.transfer_from(DEBT, USER, OWNER, USER, 5)
    assert ledger.allowance(DEBT, OWNER, USER) == 0


def test_swap_outcome_constructors():
    assert SwapOutcome.ok(5) == SwapOutcome(True, 5, "")
    assert SwapOutcome.failed("slippage") == SwapOutcome(False, 0, "slippage")


# =====================================================================
# RECONCILIATION
# =====================================================================

def test_reconcile_shrinks_first_hop():
    hops = [[SwapHop(COLLATERAL, DEBT, 0, 3000, 5, False)], [SwapHop(DEBT, WRAPPED, 1, 500, 7, False)]]
    adjusted = reconcile_first_hop(hops, 3)
    assert adjusted[0][0].amount_in == 3
    assert adjusted[1][0].amount_in == 7
    assert hops[0][0].amount_in == 5


def test_reconcile_grows_first_hop():
    declared = to_raw_amount("0.5", 18)
    hops = [[SwapHop(COLLATERAL, DEBT, 0, 3000, declared, False)]]
    adjusted = reconcile_first_hop(hops, to_raw_amount("2", 18))
    assert adjusted[0][0].amount_in == 2 * E18


def test_reconcile_adjusts_first_allocation_only():
    hops = [[SwapHop(COLLATERAL, DEBT, 0, 3000, 6, False), SwapHop(COLLATERAL, DEBT, 1, 500, 4, False)]]
    adjusted = reconcile_first_hop(hops, 8)
    assert [h.amount_in for h in adjusted[0]] == [4, 4]


def test_reconcile_aborts_when_first_allocation_cannot_absorb_delta():
    hops = [[SwapHop(COLLATERAL, DEBT, 0, 3000, 5, False), SwapHop(COLLATERAL, DEBT, 1, 500, 5, False)]]
    with pytest.raises(Revert, match="cannot reconcile"):
        reconcile_first_hop(hops, 3)


# =====================================================================
# FLASH LIQUIDATOR
# =====================================================================

def test_calldata_settlement_forwards_profit():
    ledger, pool, router, liquidator = build(seize=5 * E18)
    pool_before = ledger.balance_of(DEBT, POOL)

    assert liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, calldata_params())

    owed = 4 * E18 + 4 * E18 * FEE_BPS // 10000
    assert ledger.balance_of(DEBT, OWNER) == 5 * E18 - owed
    assert ledger.balance_of(DEBT, LIQUIDATOR) == 0
    assert ledger.balance_of(COLLATERAL, LIQUIDATOR) == 0
    assert ledger.balance_of(DEBT, POOL) == pool_before + 4 * E18 + 4 * E18 * FEE_BPS // 10000
    name, record = ledger.events[-1]
    assert name == "LiquidationSettled"
    assert record.path == "calldata"
    assert record.user == USER
    assert pool.liquidations == [(USER, 4 * E18)]


def test_hop_settlement_reconciles_to_actual_seize():
    ledger, pool, router, liquidator = build(seize=3 * E18, rate_bps=15000)

    assert liquidator.liquidate_with_hops(OWNER, DEBT, 4 * E18, hop_params(declared=5 * E18))

    assert router.received_hops[0][0].amount_in == 3 * E18
    assert ledger.events[-1][1].path == "hops"
    assert ledger.balance_of(COLLATERAL, LIQUIDATOR) == 0


def test_scenario_c_non_pool_caller_is_rejected():
    ledger, pool, router, liquidator = build()
    before = balances(ledger)

    with pytest.raises(Revert, match="caller is not pool"):
        liquidator.execute_operation(OWNER, DEBT, 4 * E18, 0, LIQUIDATOR, calldata_params())
    assert balances(ledger) == before


def test_foreign_initiator_is_rejected():
    ledger, pool, router, liquidator = build()
    with pytest.raises(Revert, match="initiator is not this contract"):
        liquidator.execute_operation(POOL, DEBT, 4 * E18, 0, OWNER, calldata_params())


def test_entry_points_are_owner_gated():
    ledger, pool, router, liquidator = build()
    with pytest.raises(Revert, match="caller is not owner"):
        liquidator.liquidate_with_calldata(USER, DEBT, 4 * E18, calldata_params())
    with pytest.raises(Revert, match="caller is not owner"):
        liquidator.rescue(USER, DEBT)


def test_entry_point_must_match_payload():
    ledger, pool, router, liquidator = build()
    with pytest.raises(Revert, match="missing swap path"):
        liquidator.liquidate_with_hops(OWNER, DEBT, 4 * E18, calldata_params())
    with pytest.raises(Revert, match="missing swap instruction"):
        liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, hop_params(5 * E18))


def test_insufficient_output_reverts_everything():
    ledger, pool, router, liquidator = build(seize=5 * E18, rate_bps=7000)
    before = balances(ledger)

    with pytest.raises(Revert, match="insufficient output to repay"):
        liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, calldata_params())

    assert balances(ledger) == before
    assert ledger.events == []


def test_swap_failure_reason_is_surfaced():
    ledger, pool, router, liquidator = build(fail_reason="router: too little received")
    before = balances(ledger)

    with pytest.raises(Revert, match="router: too little received"):
        liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, calldata_params())
    assert balances(ledger) == before


def test_no_collateral_received_aborts():
    ledger, pool, router, liquidator = build(seize=0)
    with pytest.raises(Revert, match="no collateral received"):
        liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, calldata_params())


def test_zero_collateral_shortcut_when_debt_balance_covers_repayment():
    ledger, pool, router, liquidator = build(seize=0)
    ledger.mint(DEBT, LIQUIDATOR, 5 * E18)

    assert liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, calldata_params())
    owed = 4 * E18 + 4 * E18 * FEE_BPS // 10000
    assert ledger.balance_of(DEBT, LIQUIDATOR) == 5 * E18 - owed


def test_native_proceeds_are_wrapped_before_repayment():
    ledger, pool, router, liquidator = build(seize=5 * E18, debt_asset=WRAPPED, pay_native=True)
    assert liquidator.liquidate_with_calldata(OWNER, WRAPPED, 4 * E18, calldata_params())
    assert ledger.native_balance(LIQUIDATOR) == 0
    assert ledger.balance_of(WRAPPED, OWNER) > 0


def test_reentrant_callback_is_blocked():
    ledger, pool, router, liquidator = build()
    router.on_execute = lambda: liquidator.execute_operation(POOL, DEBT, 1, 0, LIQUIDATOR, calldata_params())

    with pytest.raises(Revert, match="reentrant call"):
        liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, calldata_params())

    router.on_execute = None
    assert liquidator.liquidate_with_calldata(OWNER, DEBT, 4 * E18, calldata_params())


def test_rescue_amount_and_entire_balance():
    ledger, pool, router, liquidator = build()
    ledger.mint(COLLATERAL, LIQUIDATOR, 10)
    ledger.credit_native(LIQUIDATOR, 7)

    assert liquidator.rescue(OWNER, COLLATERAL, 4) == 4
    assert liquidator.rescue(OWNER, COLLATERAL) == 6
    assert ledger.balance_of(COLLATERAL, OWNER) == 10
    assert liquidator.rescue(OWNER, None) == 7
    assert ledger.native_balance(OWNER) == 7

    with pytest.raises(Revert, match="nothing to rescue"):
        liquidator.rescue(OWNER, COLLATERAL)


def test_liquidator_requires_wrapped_native():
    ledger = Ledger()
    with pytest.raises(ValueError):
        FlashLiquidator(LIQUIDATOR, OWNER, FakePool(ledger, 0), FakeRouter(ledger, out_token=WRAPPED), ledger,
                        wrapped_native=None)
