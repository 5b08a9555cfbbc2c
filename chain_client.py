import time
import random
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError

import config
from abis import POOL_ABI, ERC20_ABI, RESERVE_DATA_ATOKEN_INDEX, RESERVE_DATA_VARIABLE_DEBT_INDEX

logger = logging.getLogger("ChainClient")

# Transient infrastructure failures: rotate endpoint and retry.
RETRYABLE_KEYWORDS = [
    "timeout", "timed out", "rate limit", "rate-limit", "too many requests", "429", "403",
    "forbidden", "quota", "-32001", "-32005", "gateway", "502", "503", "504",
    "socket hang up", "missing response", "connection reset", "econnreset", "etimedout",
    "econnrefused", "server disconnected", "serverdisconnected", "cannot connect",
    "connection refused", "clientconnectorerror", "session is closed",
]

# Log queries the node refuses because the block window is too wide.
RANGE_TOO_LARGE_KEYWORDS = [
    "block range", "max block range", "range too large", "query returned more than",
    "response size exceeded", "limit exceeded", "-32602", "-32600",
]


def is_range_too_large_error(error):
    err_str = str(error).lower()
    return any(k in err_str for k in RANGE_TOO_LARGE_KEYWORDS)


def is_retryable_error(error):
    """Classify an RPC error as transient (retry + rotate) or fatal (propagate)."""
    if isinstance(error, ContractLogicError):
        return False
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        return True
    err_str = str(error).lower()
    return any(k in err_str for k in RETRYABLE_KEYWORDS)


class RetryPolicy:
    """
    Exponential backoff with jitter, shared by every remote call site.
    - delay(i) = min(base * 2^i, max) + uniform(0, jitter)
    - Non-retryable errors and the final failed attempt are re-raised untouched.
    """

    def __init__(self, attempts=config.RPC_MAX_ATTEMPTS, base_delay=config.RPC_BACKOFF_BASE,
                 max_delay=config.RPC_BACKOFF_MAX, jitter=0.25):
        self.attempts = max(1, attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def with_attempts(self, attempts):
        return RetryPolicy(attempts, self.base_delay, self.max_delay, self.jitter)

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    async def run(self, operation, is_retryable=is_retryable_error, on_retry=None, label="call"):
        for attempt in range(self.attempts):
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e) or attempt == self.attempts - 1:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(f"⚠️ {label} failed ({attempt + 1}/{self.attempts}): {e}. Retry in {delay:.1f}s")
                if on_retry is not None:
                    await on_retry(e)
                await asyncio.sleep(delay)


@dataclass
class AccountData:
    total_collateral_base: int
    total_debt_base: int
    available_borrows_base: int
    liquidation_threshold: int
    ltv: int
    health_factor: int


@dataclass
class FeeData:
    base_fee: Optional[int]
    priority_fee: Optional[int]
    gas_price: Optional[int]

    @property
    def is_eip1559(self):
        return self.base_fee is not None


class ChainClient:
    """
    Round-Robin Async RPC client.
    - Every read goes through one RetryPolicy; retryable errors rotate to the next endpoint.
    - eth_getLogs is serialized behind a single gate with a minimum spacing and hard timeout.
    """

    def __init__(self, endpoints, retry_policy=None, timeout=config.RPC_TIMEOUT,
                 logs_delay=config.GETLOGS_DELAY_MS / 1000, logs_timeout=config.GETLOGS_TIMEOUT_MS / 1000,
                 w3_factory=None):
        if not endpoints:
            raise ValueError("ChainClient needs at least one RPC endpoint")
        self.rpc_urls = list(endpoints)
        self.current_index = 0
        self.active_url = self.rpc_urls[0]
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.logs_delay = logs_delay
        self.logs_timeout = logs_timeout
        self.rotations = 0
        self.w3 = None
        self._retired = []

        self._w3_factory = w3_factory or self._build_w3
        self._logs_gate = asyncio.Lock()
        self._last_logs_call = 0.0

    def _build_w3(self, url):
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self.timeout}))

    async def connect(self):
        now = time.monotonic()
        if self.w3 is not None:
            # Calls still in flight hold the old instance; it outlives them by two request timeouts.
            self._retired.append((self.w3, now))
        expired = [w3 for w3, retired_at in self._retired if now - retired_at > 2 * self.timeout]
        self._retired = [(w3, retired_at) for w3, retired_at in self._retired if now - retired_at <= 2 * self.timeout]
        for w3 in expired:
            await self._disconnect(w3)
        self.w3 = self._w3_factory(self.active_url)
        logger.info(f"🔌 RPC: {self.active_url[:50]}...")

    @staticmethod
    async def _disconnect(w3):
        disconnect = getattr(getattr(w3, "provider", None), "disconnect", None)
        if disconnect is None:
            return
        try:
            await disconnect()
        except Exception as e:
            logger.debug(f"Provider disconnect failed: {e}")

    async def close(self):
        instances = [w3 for w3, _ in self._retired] + ([self.w3] if self.w3 is not None else [])
        self._retired = []
        self.w3 = None
        for w3 in instances:
            await self._disconnect(w3)

    async def rotate(self, error=None, failed_w3=None):
        if failed_w3 is not None and failed_w3 is not self.w3:
            logger.debug(f"RPC already rotated away from the failing endpoint ({error})")
            return
        self.current_index = (self.current_index + 1) % len(self.rpc_urls)
        self.active_url = self.rpc_urls[self.current_index]
        self.rotations += 1
        logger.warning(f"🔄 Rotating RPC to {self.active_url[:50]}... ({error})")
        await self.connect()

    async def call(self, operation, label="RPC call", attempts=None):
        """Run `operation(w3)` under the retry policy. Concurrent failures on one endpoint rotate it only once."""
        if self.w3 is None:
            await self.connect()
        policy = self.retry_policy if attempts is None else self.retry_policy.with_attempts(attempts)
        used = None

        async def attempt():
            nonlocal used
            used = self.w3
            return await operation(used)

        async def on_retry(error):
            await self.rotate(error, failed_w3=used)

        return await policy.run(attempt, on_retry=on_retry, label=label)

    async def get_logs(self, log_filter):
        """Bulk log query. No retries here: the caller owns chunking and retry decisions."""
        if self.w3 is None:
            await self.connect()
        async with self._logs_gate:
            wait = self.logs_delay - (time.monotonic() - self._last_logs_call)
            if wait > 0:
                await asyncio.sleep(wait)
            try:
                return await asyncio.wait_for(self.w3.eth.get_logs(log_filter), timeout=self.logs_timeout)
            finally:
                self._last_logs_call = time.monotonic()

    # ================================================================
    # READ HELPERS
    # ================================================================

    async def block_number(self) -> int:
        async def op(w3):
            return await w3.eth.block_number
        return await self.call(op, "eth_blockNumber")

    async def fee_data(self) -> FeeData:
        async def op(w3):
            block = await w3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
            if base_fee is None:
                return FeeData(base_fee=None, priority_fee=None, gas_price=await w3.eth.gas_price)
            priority_fee = await w3.eth.max_priority_fee
            return FeeData(base_fee=base_fee, priority_fee=priority_fee, gas_price=None)
        return await self.call(op, "fee data")

    async def get_user_account_data(self, pool_address, user) -> AccountData:
        async def op(w3):
            pool = w3.eth.contract(address=pool_address, abi=POOL_ABI)
            return await pool.functions.getUserAccountData(AsyncWeb3.to_checksum_address(user)).call()
        data = await self.call(op, f"getUserAccountData({user[:10]})")
        return AccountData(*data)

    async def get_reserve_tokens(self, pool_address, asset):
        """Returns (collateral receipt token, variable debt token) for an underlying asset."""
        async def op(w3):
            pool = w3.eth.contract(address=pool_address, abi=POOL_ABI)
            return await pool.functions.getReserveData(AsyncWeb3.to_checksum_address(asset)).call()
        data = await self.call(op, f"getReserveData({asset[:10]})")
        return data[RESERVE_DATA_ATOKEN_INDEX], data[RESERVE_DATA_VARIABLE_DEBT_INDEX]

    async def balance_of(self, token, holder) -> int:
        async def op(w3):
            erc20 = w3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=ERC20_ABI)
            return await erc20.functions.balanceOf(AsyncWeb3.to_checksum_address(holder)).call()
        return await self.call(op, f"balanceOf({token[:10]})")
