import os
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

import aiofiles
from web3 import Web3

import config
from abis import ZERO_ADDRESS

logger = logging.getLogger("ScanState")


@dataclass
class ScanCheckpoint:
    last_scanned_block: Optional[int] = None
    consecutive_failures: int = 0
    cooldown_until: float = 0.0
    current_range_size: int = config.GETLOGS_START_BLOCK_RANGE

    def advance(self, block: int):
        # Never moves backwards
        if self.last_scanned_block is None or block > self.last_scanned_block:
            self.last_scanned_block = block

    def in_cooldown(self, now: float) -> bool:
        return self.cooldown_until > now

    def to_dict(self):
        return {
            "lastScannedBlock": self.last_scanned_block,
            "consecutiveFailures": self.consecutive_failures,
            "cooldownUntil": self.cooldown_until,
            "currentRangeSize": self.current_range_size,
        }

    @classmethod
    def from_dict(cls, data):
        last = data.get("lastScannedBlock")
        return cls(
            last_scanned_block=int(last) if last is not None else None,
            consecutive_failures=int(data.get("consecutiveFailures", data.get("fails", 0))),
            cooldown_until=float(data.get("cooldownUntil", 0)),
            current_range_size=int(data.get("currentRangeSize", config.GETLOGS_START_BLOCK_RANGE)),
        )


def normalize_address(address) -> Optional[str]:
    try:
        checksum = Web3.to_checksum_address(str(address).strip())
    except ValueError:
        return None
    if checksum == ZERO_ADDRESS:
        return None
    return checksum


class KnownBorrowerSet:
    """Insertion-ordered address set. Past the cap the oldest entries are evicted first."""

    def __init__(self, cap=config.KNOWN_BORROWERS_CAP, addresses=()):
        self.cap = cap
        self._items = OrderedDict()
        self.merge(addresses)

    def __len__(self):
        return len(self._items)

    def __contains__(self, address):
        normalized = normalize_address(address)
        return normalized is not None and normalized in self._items

    def __iter__(self):
        return iter(self._items)

    def add(self, address) -> bool:
        normalized = normalize_address(address)
        if normalized is None or normalized in self._items:
            return False
        self._items[normalized] = None
        while len(self._items) > self.cap:
            self._items.popitem(last=False)
        return True

    def merge(self, addresses) -> int:
        return sum(1 for address in addresses if self.add(address))

    def to_list(self):
        return list(self._items)


class ScanStateStore:
    """
    Durable discovery state: per-debt-token checkpoints, the known-borrower set and the
    screening cursor. Stored as indented JSON so it can be inspected by hand.
    """

    def __init__(self, path=config.STATE_FILE, cap=config.KNOWN_BORROWERS_CAP, seed=config.SEED_BORROWERS):
        self.path = path
        self.seed = list(seed)
        self.checkpoints: Dict[str, ScanCheckpoint] = {}
        self.known_borrowers = KnownBorrowerSet(cap)
        self.last_check_offset = 0

    def checkpoint(self, key) -> ScanCheckpoint:
        key = str(key).lower()
        if key not in self.checkpoints:
            self.checkpoints[key] = ScanCheckpoint()
        return self.checkpoints[key]

    async def load(self):
        data = {}
        if os.path.exists(self.path):
            try:
                async with aiofiles.open(self.path, mode="r") as f:
                    content = await f.read()
                if content:
                    data = json.loads(content)
            except (OSError, ValueError) as e:
                logger.warning(f"⚠️ Failed to read scan state {self.path}, starting fresh: {e}")
                data = {}

        if not isinstance(data, dict):
            logger.warning(f"⚠️ Scan state {self.path} is not a JSON object, starting fresh")
            data = {}
        try:
            checkpoints = {
                str(key).lower(): ScanCheckpoint.from_dict(entry)
                for key, entry in (data.get("perDebtToken") or {}).items()
            }
            known = list(data.get("knownBorrowers") or [])
            offset = int(data.get("lastCheckOffset", 0))
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ Malformed scan state {self.path}, starting fresh: {e}")
            checkpoints, known, offset = {}, [], 0

        self.checkpoints.update(checkpoints)
        self.known_borrowers.merge(known)
        self.last_check_offset = max(0, offset)

        seeded = self.known_borrowers.merge(self.seed)
        logger.info(
            f"💾 Scan state loaded: {len(self.checkpoints)} checkpoints, "
            f"{len(self.known_borrowers)} known borrowers ({seeded} seeded)"
        )

    def to_dict(self):
        return {
            "perDebtToken": {key: cp.to_dict() for key, cp in self.checkpoints.items()},
            "knownBorrowers": self.known_borrowers.to_list(),
            "lastCheckOffset": self.last_check_offset,
        }

    async def save(self):
        """Atomic write: temp file + os.replace, so a reader never sees a half-written file."""
        temp_path = self.path + ".tmp"
        async with aiofiles.open(temp_path, mode="w") as f:
            await f.write(json.dumps(self.to_dict(), indent=2))
        os.replace(temp_path, self.path)
