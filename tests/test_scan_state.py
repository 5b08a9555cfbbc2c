import asyncio
import json

import pytest
from web3 import Web3

from abis import ZERO_ADDRESS
from conftest import addr
from scan_state import KnownBorrowerSet, ScanCheckpoint, ScanStateStore, normalize_address


def test_checkpoint_never_moves_backwards():
    cp = ScanCheckpoint()
    cp.advance(100)
    cp.advance(50)
    assert cp.last_scanned_block == 100
    cp.advance(150)
    assert cp.last_scanned_block == 150


def test_normalize_address():
    assert normalize_address(addr(1)) == Web3.to_checksum_address(addr(1))
    assert normalize_address(ZERO_ADDRESS) is None
    assert normalize_address("not-an-address") is None


def test_known_borrowers_dedup_and_cap():
    known = KnownBorrowerSet(cap=2)
    assert known.add(addr(1))
    assert not known.add(addr(1).upper().replace("0X", "0x"))
    assert known.merge([addr(2), ZERO_ADDRESS, "junk", addr(3)]) == 2

    assert len(known) == 2
    assert addr(1) not in known
    assert addr(3) in known


def test_store_round_trip(tmp_path):
    path = str(tmp_path / "state.json")
    store = ScanStateStore(path=path, cap=10, seed=[])
    store.checkpoint("0xDEBT").advance(1234)
    store.checkpoint("0xdebt").current_range_size = 450
    store.known_borrowers.merge([addr(1), addr(2)])
    store.last_check_offset = 7
    asyncio.run(store.save())

    raw = json.loads((tmp_path / "state.json").read_text())
    assert raw["perDebtToken"]["0xdebt"]["lastScannedBlock"] == 1234
    assert raw["lastCheckOffset"] == 7

    restored = ScanStateStore(path=path, cap=10, seed=[addr(9)])
    asyncio.run(restored.load())
    assert restored.checkpoint("0xdebt").last_scanned_block == 1234
    assert restored.checkpoint("0xdebt").current_range_size == 450
    assert restored.last_check_offset == 7
    assert restored.known_borrowers.to_list()[:2] == [Web3.to_checksum_address(addr(1)), Web3.to_checksum_address(addr(2))]
    assert addr(9) in restored.known_borrowers


def test_corrupt_state_starts_fresh(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    store = ScanStateStore(path=str(path), cap=10, seed=[])
    asyncio.run(store.load())
    assert len(store.known_borrowers) == 0
    assert store.checkpoints == {}


@pytest.mark.parametrize("content", [
    "null",
    "[]",
    '{"perDebtToken": {"0xabc": {"lastScannedBlock": "x"}}, "knownBorrowers": ["%s"]}' % addr(5),
    '{"perDebtToken": [], "lastCheckOffset": 3}',
    '{"lastCheckOffset": "soon"}',
])
def test_malformed_state_starts_fresh(tmp_path, content):
    path = tmp_path / "state.json"
    path.write_text(content)
    store = ScanStateStore(path=str(path), cap=10, seed=[addr(7)])

    asyncio.run(store.load())

    assert store.checkpoints == {}
    assert store.known_borrowers.to_list() == [Web3.to_checksum_address(addr(7))]
    assert store.last_check_offset == 0
