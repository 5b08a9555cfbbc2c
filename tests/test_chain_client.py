import asyncio
from types import SimpleNamespace

import pytest
from web3.exceptions import ContractLogicError

from chain_client import (
    AccountData,
    ChainClient,
    RetryPolicy,
    is_range_too_large_error,
    is_retryable_error,
)
from conftest import addr


def test_error_classification():
    assert is_retryable_error(Exception("429 Too Many Requests"))
    assert is_retryable_error(asyncio.TimeoutError())
    assert is_retryable_error(ConnectionError("reset"))
    assert not is_retryable_error(ContractLogicError("execution reverted"))
    assert not is_retryable_error(ValueError("invalid argument"))

    assert is_range_too_large_error(Exception("query returned more than 10000 results"))
    assert is_range_too_large_error(Exception("block range is too wide: max block range 1000"))
    assert not is_range_too_large_error(Exception("503 Service Unavailable"))


def test_retry_policy_delays_are_capped():
    policy = RetryPolicy(attempts=3, base_delay=1.0, max_delay=5.0, jitter=0)
    assert policy.delay_for(0) == 1.0
    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(5) == 5.0
    assert policy.with_attempts(1).attempts == 1


def test_retry_policy_retries_transient_then_succeeds(sleeps):
    calls = []
    rotations = []

    async def operation():
        calls.append(1)
        if len(calls) < 3:
            raise Exception("rate limit exceeded")
        return "ok"

    async def on_retry(e):
        rotations.append(str(e))

    policy = RetryPolicy(attempts=3, base_delay=0.1, max_delay=1, jitter=0)
    result = asyncio.run(policy.run(operation, on_retry=on_retry))

    assert result == "ok"
    assert len(calls) == 3
    assert len(rotations) == 2
    assert sleeps == [0.1, 0.2]


def test_retry_policy_propagates_non_retryable(sleeps):
    calls = []

    async def operation():
        calls.append(1)
        raise ValueError("bad calldata")

    with pytest.raises(ValueError):
        asyncio.run(RetryPolicy(attempts=5, jitter=0).run(operation))
    assert len(calls) == 1
    assert sleeps == []


def test_retry_policy_raises_last_failure_when_exhausted(sleeps):
    async def operation():
        raise Exception("504 gateway timeout")

    with pytest.raises(Exception, match="504"):
        asyncio.run(RetryPolicy(attempts=2, base_delay=0, jitter=0).run(operation))


def test_client_requires_endpoints():
    with pytest.raises(ValueError):
        ChainClient([])


def test_call_rotates_endpoint_on_transient_error(sleeps):
    built = []

    def factory(url):
        built.append(url)
        return SimpleNamespace(url=url)

    client = ChainClient(["http://a", "http://b"], retry_policy=RetryPolicy(3, 0, 0, jitter=0), w3_factory=factory)

    async def op(w3):
        if w3.url == "http://a":
            raise Exception("503 service unavailable")
        return 42

    async def run():
        await client.connect()
        return await client.call(op, "test")

    assert asyncio.run(run()) == 42
    assert client.active_url == "http://b"
    assert client.rotations == 1
    assert built == ["http://a", "http://b"]


def test_call_does_not_retry_reverts(sleeps):
    client = ChainClient(["http://a", "http://b"], w3_factory=lambda url: SimpleNamespace(url=url))
    calls = []

    async def op(w3):
        calls.append(w3.url)
        raise ContractLogicError("execution reverted: HF ok")

    with pytest.raises(ContractLogicError):
        asyncio.run(client.call(op))
    assert calls == ["http://a"]
    assert client.rotations == 0


class _Call:
    def __init__(self, value):
        self.value = value

    async def call(self, *args):
        return self.value


def test_get_user_account_data_maps_tuple():
    functions = SimpleNamespace(getUserAccountData=lambda user: _Call((100, 50, 10, 8000, 7500, 9 * 10 ** 17)))
    eth = SimpleNamespace(contract=lambda address, abi: SimpleNamespace(functions=functions))
    client = ChainClient(["http://a"], w3_factory=lambda url: SimpleNamespace(eth=eth))

    data = asyncio.run(client.get_user_account_data(addr(1), addr(2)))

    assert isinstance(data, AccountData)
    assert data.total_debt_base == 50
    assert data.health_factor == 9 * 10 ** 17


def test_get_logs_is_serialized_and_unretried():
    calls = []

    async def get_logs(log_filter):
        calls.append(log_filter["fromBlock"])
        if log_filter["fromBlock"] == 2:
            raise Exception("timeout")
        return [{"n": log_filter["fromBlock"]}]

    eth = SimpleNamespace(get_logs=get_logs)
    client = ChainClient(["http://a"], logs_delay=0, logs_timeout=5, w3_factory=lambda url: SimpleNamespace(eth=eth))

    async def run():
        first = await client.get_logs({"fromBlock": 1})
        with pytest.raises(Exception, match="timeout"):
            await client.get_logs({"fromBlock": 2})
        return first

    assert asyncio.run(run()) == [{"n": 1}]
    assert calls == [1, 2]


def test_concurrent_failures_rotate_once_and_keep_old_session_open(sleeps):
    disconnected = []

    def factory(url):
        async def disconnect():
            disconnected.append(url)
        return SimpleNamespace(url=url, provider=SimpleNamespace(disconnect=disconnect))

    client = ChainClient(["http://a", "http://b", "http://c"], retry_policy=RetryPolicy(3, 0, 0, jitter=0),
                         w3_factory=factory)

    async def op(w3):
        await asyncio.sleep(0)
        if w3.url == "http://a":
            raise Exception("503 service unavailable")
        return w3.url

    async def run():
        await client.connect()
        results = await asyncio.gather(*(client.call(op, "batch") for _ in range(3)), return_exceptions=True)
        return results

    assert asyncio.run(run()) == ["http://b", "http://b", "http://b"]
    assert client.rotations == 1
    assert disconnected == []

    asyncio.run(client.close())
    assert sorted(disconnected) == ["http://a", "http://b"]


def test_closed_session_is_retryable():
    assert is_retryable_error(RuntimeError("Session is closed"))
