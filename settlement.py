import copy
import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, List

from abis import ZERO_ADDRESS
from liquidation_params import decode_params
import config

logger = logging.getLogger("Settlement")


class Revert(Exception):
    """Aborts the enclosing transaction. Every ledger mutation since the snapshot is rolled back."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


def require(condition, reason):
    if not condition:
        raise Revert(reason)


def _key(address):
    return str(address).lower()


@dataclass
class CallResult:
    success: bool
    value: Any = None
    reason: str = ""


@dataclass
class SwapOutcome:
    success: bool
    amount_out: int = 0
    reason: str = ""

    @classmethod
    def ok(cls, amount_out):
        return cls(True, amount_out)

    @classmethod
    def failed(cls, reason):
        return cls(False, 0, reason)


@dataclass
class SettlementRecord:
    user: str
    collateral_asset: str
    debt_asset: str
    debt_covered: int
    profit: int
    path: str


# =====================================================================
# LEDGER
# =====================================================================

class Ledger:
    """
    In-memory token + native balances with EVM transaction semantics.
    `atomic()` snapshots the whole ledger; a Revert raised inside restores it.
    """

    def __init__(self):
        self.balances = defaultdict(lambda: defaultdict(int))
        self.allowances = defaultdict(int)
        self.native = defaultdict(int)
        self.events: List[tuple] = []

    def _snapshot(self):
        return copy.deepcopy((self.balances, self.allowances, self.native, self.events))

    def _restore(self, snapshot):
        self.balances, self.allowances, self.native, self.events = snapshot

    @contextmanager
    def atomic(self):
        snapshot = self._snapshot()
        try:
            yield self
        except Revert:
            self._restore(snapshot)
            raise

    def try_call(self, fn, *args, **kwargs) -> CallResult:
        """Low-level call: a Revert inside `fn` rolls back its own effects and is returned, not raised."""
        try:
            with self.atomic():
                value = fn(*args, **kwargs)
        except Revert as e:
            return CallResult(False, None, e.reason)
        return CallResult(True, value)

    # ---- ERC20 ----

    def balance_of(self, token, holder) -> int:
        return self.balances[_key(token)][_key(holder)]

    def mint(self, token, holder, amount):
        self.balances[_key(token)][_key(holder)] += amount

    def burn(self, token, holder, amount):
        require(self.balance_of(token, holder) >= amount, "burn amount exceeds balance")
        self.balances[_key(token)][_key(holder)] -= amount

    def transfer(self, token, sender, recipient, amount):
        require(self.balance_of(token, sender) >= amount, "transfer amount exceeds balance")
        self.balances[_key(token)][_key(sender)] -= amount
        self.balances[_key(token)][_key(recipient)] += amount

    def approve(self, token, owner, spender, amount):
        self.allowances[(_key(token), _key(owner), _key(spender))] = amount

    def allowance(self, token, owner, spender) -> int:
        return self.allowances[(_key(token), _key(owner), _key(spender))]

    def transfer_from(self, token, spender, owner, recipient, amount):
        allowed = self.allowance(token, owner, spender)
        require(allowed >= amount, "insufficient allowance")
        self.transfer(token, owner, recipient, amount)
        self.allowances[(_key(token), _key(owner), _key(spender))] = allowed - amount

    # ---- native ----

    def native_balance(self, holder) -> int:
        return self.native[_key(holder)]

    def credit_native(self, holder, amount):
        self.native[_key(holder)] += amount

    def transfer_native(self, sender, recipient, amount):
        require(self.native_balance(sender) >= amount, "native transfer failed")
        self.native[_key(sender)] -= amount
        self.native[_key(recipient)] += amount

    def wrap_native(self, wrapped_token, holder) -> int:
        amount = self.native_balance(holder)
        if amount > 0:
            self.native[_key(holder)] = 0
            self.mint(wrapped_token, holder, amount)
        return amount

    def emit(self, name, payload):
        self.events.append((name, payload))


# =====================================================================
# FLASH LIQUIDATOR
# =====================================================================

class FlashLiquidator:
    """
    Flash-loan liquidation receiver.

    Collaborators:
      pool   -> .address, .flash_loan_simple(receiver, asset, amount, params, referral_code),
                .liquidation_call(sender, collateral_asset, debt_asset, user, debt_to_cover, receive_a_token)
      router -> .address, .execute(sender, instruction) -> amount_out,
                .swap(sender, path_tokens, hops, min_amount_out) -> amount_out
    Both act on the shared Ledger.
    """

    def __init__(self, address, owner, pool, router, ledger, wrapped_native=config.WRAPPED_NATIVE):
        if not wrapped_native:
            raise ValueError("FlashLiquidator needs the wrapped native token address")
        self.address = address
        self.owner = owner
        self.pool = pool
        self.router = router
        self.ledger = ledger
        self.wrapped_native = wrapped_native
        self._entered = False

    def _only_owner(self, sender):
        require(_key(sender) == _key(self.owner), "caller is not owner")

    # ================================================================
    # ENTRY POINTS (owner-gated)
    # ================================================================

    def liquidate_with_calldata(self, sender, debt_asset, debt_to_cover, params_bytes):
        with self.ledger.atomic():
            self._only_owner(sender)
            params = decode_params(params_bytes)
            require(params.uses_calldata, "missing swap instruction")
            return self.pool.flash_loan_simple(self, debt_asset, debt_to_cover, params_bytes, 0)

    def liquidate_with_hops(self, sender, debt_asset, debt_to_cover, params_bytes):
        with self.ledger.atomic():
            self._only_owner(sender)
            params = decode_params(params_bytes)
            require(params.hops and params.hops[0], "missing swap path")
            return self.pool.flash_loan_simple(self, debt_asset, debt_to_cover, params_bytes, 0)

    def rescue(self, sender, token, amount=0):
        """Sweep `amount` (0 = entire balance) of a token, or of native currency when token is None/zero."""
        with self.ledger.atomic():
            self._only_owner(sender)
            if token is None or _key(token) == _key(ZERO_ADDRESS):
                balance = self.ledger.native_balance(self.address)
                amount = amount or balance
                require(0 < amount <= balance, "nothing to rescue")
                self.ledger.transfer_native(self.address, self.owner, amount)
            else:
                balance = self.ledger.balance_of(token, self.address)
                amount = amount or balance
                require(0 < amount <= balance, "nothing to rescue")
                self.ledger.transfer(token, self.address, self.owner, amount)
            logger.info(f"🧹 Rescued {amount} of {token or 'native'} to owner")
            return amount

    # ================================================================
    # FLASH-LOAN CALLBACK
    # ================================================================

    def execute_operation(self, sender, asset, amount, premium, initiator, params_bytes) -> bool:
        with self.ledger.atomic():
            require(_key(sender) == _key(self.pool.address), "caller is not pool")
            require(_key(initiator) == _key(self.address), "initiator is not this contract")
            require(not self._entered, "reentrant call")
            self._entered = True
            try:
                return self._settle(asset, amount, premium, params_bytes)
            finally:
                self._entered = False

    def _settle(self, debt_asset, amount, premium, params_bytes) -> bool:
        ledger = self.ledger
        params = decode_params(params_bytes)
        owed = amount + premium
        collateral = params.collateral_asset

        ledger.approve(debt_asset, self.address, self.pool.address, params.debt_to_cover)
        self.pool.liquidation_call(self.address, collateral, debt_asset, params.user, params.debt_to_cover, False)

        seized = ledger.balance_of(collateral, self.address)
        if seized == 0:
            require(ledger.balance_of(debt_asset, self.address) >= owed, "no collateral received")
            ledger.approve(debt_asset, self.address, self.pool.address, owed)
            return True

        ledger.approve(collateral, self.address, self.router.address, seized)
        if params.uses_calldata:
            path = "calldata"
            outcome = self._swap_calldata(params)
        else:
            path = "hops"
            outcome = self._swap_hops(params, seized)
        require(outcome.success, outcome.reason or "swap failed")

        ledger.wrap_native(self.wrapped_native, self.address)

        final_balance = ledger.balance_of(debt_asset, self.address)
        require(final_balance >= owed, "insufficient output to repay")
        profit = final_balance - owed
        if profit > 0:
            ledger.transfer(debt_asset, self.address, self.owner, profit)
        ledger.approve(debt_asset, self.address, self.pool.address, owed)

        record = SettlementRecord(params.user, collateral, debt_asset, params.debt_to_cover, profit, path)
        ledger.emit("LiquidationSettled", record)
        logger.info(f"✅ Settled {params.user[:10]} via {path}: profit {profit}")
        return True

    def _swap_calldata(self, params) -> SwapOutcome:
        result = self.ledger.try_call(self.router.execute, self.address, params.swap_instruction)
        if not result.success:
            return SwapOutcome.failed(result.reason)
        return SwapOutcome.ok(result.value)

    def _swap_hops(self, params, seized) -> SwapOutcome:
        hops = reconcile_first_hop(params.hops, seized)
        result = self.ledger.try_call(
            self.router.swap, self.address, params.path_tokens, hops, params.min_amount_out
        )
        if not result.success:
            return SwapOutcome.failed(result.reason)
        return SwapOutcome.ok(result.value)


def reconcile_first_hop(hops, actual_balance):
    """
    Align the first hop's declared input with the collateral actually seized.
    Only the first allocation of the first hop absorbs the delta; later hops are left as declared.
    """
    first = hops[0]
    declared = sum(hop.amount_in for hop in first)
    if declared == actual_balance:
        return hops
    delta = actual_balance - declared
    if delta < 0:
        require(-delta <= first[0].amount_in, "cannot reconcile")
    adjusted = replace(first[0], amount_in=first[0].amount_in + delta)
    return [[adjusted] + first[1:]] + hops[1:]
