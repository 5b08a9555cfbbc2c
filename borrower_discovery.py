import time
import random
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import config
from abis import TRANSFER_TOPIC, ZERO_TOPIC, LIQUIDATION_CALL_TOPIC
from chain_client import is_retryable_error, is_range_too_large_error
from http_client import fetch_json
from scan_state import normalize_address

logger = logging.getLogger("BorrowerDiscovery")

DISTRESSED_ENDPOINTS = [
    ("/data/liquidations", {"limit": 100}),
    ("/api/liquidations", {"limit": 100}),
    ("/data/users", {"healthFactorMax": "1.1", "limit": 500}),
    ("/api/users", {"healthFactorMax": "1.1", "limit": 500}),
]


class ReserveScanState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COOLDOWN = "cooldown"


@dataclass
class ScanResult:
    borrowers: List[str] = field(default_factory=list)
    progressed_to: Optional[int] = None
    completed: bool = True
    range_size: int = config.GETLOGS_START_BLOCK_RANGE
    queries: int = 0


def topic_address(log, index) -> Optional[str]:
    """Address packed into an indexed 32-byte topic, or None if the topic is missing/malformed."""
    topics = log.get("topics") or []
    if len(topics) <= index:
        return None
    topic = topics[index]
    raw = topic.hex() if isinstance(topic, (bytes, bytearray)) else str(topic)
    if raw.startswith("0x"):
        raw = raw[2:]
    if len(raw) != 64:
        return None
    return normalize_address("0x" + raw[-40:])


def mint_receiver(log):
    # Transfer(from=0x0, to=borrower, value)
    return topic_address(log, 2)


def liquidated_user(log):
    # LiquidationCall(collateralAsset, debtAsset, user, ...): user is the third indexed arg
    return topic_address(log, 3)


def extract_wallets(data) -> List[str]:
    """Pull wallet addresses out of the loosely-shaped distressed-position API payloads."""
    items = None
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        for key in ("liquidations", "users", "data"):
            if isinstance(data.get(key), list):
                items = data[key]
                break
    if not items:
        return []

    wallets = []
    for item in items:
        candidate = item
        if isinstance(item, dict):
            candidate = item.get("user") or item.get("address") or item.get("borrower") or item.get("account") or item.get("id")
            if isinstance(candidate, dict):
                candidate = candidate.get("id") or candidate.get("address")
        if not candidate:
            continue
        address = normalize_address(candidate)
        if address:
            wallets.append(address)
    return wallets


class BorrowerDiscovery:
    """
    Incremental borrower discovery.
    - Debt-token mint scans per reserve, resumed from persisted checkpoints.
    - Adaptive chunking: grow x1.5 on success, halve on "range too large", abandon at the floor.
    - Recent LiquidationCall events and the optional distressed-position API feed.
    """

    def __init__(self, client, reserve_index, store, pool_address=config.POOL_ADDRESS,
                 lookback_blocks=config.SCAN_LOOKBACK_BLOCKS,
                 max_blocks_per_run=config.BORROW_SCAN_MAX_BLOCKS_PER_RUN,
                 start_range=config.GETLOGS_START_BLOCK_RANGE,
                 max_range=config.GETLOGS_MAX_BLOCK_RANGE,
                 min_range=config.GETLOGS_MIN_BLOCK_RANGE,
                 retries_per_chunk=config.GETLOGS_RETRIES_PER_CHUNK,
                 backoff_base=0.8, backoff_max=8.0,
                 jitter_ms=config.GETLOGS_JITTER_MS,
                 cooldown_step=config.SCAN_COOLDOWN_STEP,
                 cooldown_max=config.SCAN_COOLDOWN_MAX,
                 liquidation_lookback=config.LIQUIDATION_LOOKBACK_BLOCKS,
                 enable_liquidation_scanning=config.ENABLE_LIQUIDATION_SCANNING,
                 enable_api_scanning=config.ENABLE_API_SCANNING,
                 distressed_api_base=config.DISTRESSED_API_BASE,
                 chain=config.CHAIN_NAME,
                 fetch=fetch_json, clock=time.time):
        self.client = client
        self.reserve_index = reserve_index
        self.store = store
        self.pool_address = pool_address
        self.lookback_blocks = lookback_blocks
        self.max_blocks_per_run = max_blocks_per_run
        self.start_range = start_range
        self.max_range = max(max_range, start_range)
        self.min_range = min_range
        self.retries_per_chunk = max(1, retries_per_chunk)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter_ms = jitter_ms
        self.cooldown_step = cooldown_step
        self.cooldown_max = cooldown_max
        self.liquidation_lookback = liquidation_lookback
        self.enable_liquidation_scanning = enable_liquidation_scanning
        self.enable_api_scanning = enable_api_scanning
        self.distressed_api_base = distressed_api_base.rstrip("/")
        self.chain = chain
        self._fetch = fetch
        self._clock = clock

        self.states: Dict[str, ReserveScanState] = {}
        self.last_report = {}

    def state_of(self, key) -> ReserveScanState:
        return self.states.get(str(key).lower(), ReserveScanState.IDLE)

    def _backoff(self, attempt):
        delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        if self.jitter_ms:
            delay += random.uniform(0, self.jitter_ms) / 1000
        return delay

    def _clamp_range(self, size):
        return max(self.min_range, min(self.max_range, int(size or self.start_range)))

    # ================================================================
    # ADAPTIVE LOG SCAN
    # ================================================================

    async def scan_logs_adaptive(self, address, topics, from_block, to_block, checkpoint, extract) -> ScanResult:
        """
        Walk [from_block, to_block] in chunks. The checkpoint advances after every chunk that
        succeeds, so an abandoned scan keeps whatever it already covered.
        """
        range_size = self._clamp_range(checkpoint.current_range_size)
        result = ScanResult(range_size=range_size)
        found = set()
        cursor = from_block

        while cursor <= to_block:
            end = min(cursor + range_size - 1, to_block)
            attempt = 0
            while True:
                log_filter = {"address": address, "fromBlock": cursor, "toBlock": end, "topics": topics}
                try:
                    result.queries += 1
                    logs = await self.client.get_logs(log_filter)
                except Exception as e:
                    if is_range_too_large_error(e):
                        if range_size <= self.min_range:
                            logger.warning(f"     ⚠️ Range {cursor}-{end} still too large at floor {self.min_range}, abandoning")
                            result.completed = False
                            break
                        range_size = max(self.min_range, range_size // 2)
                        end = min(cursor + range_size - 1, to_block)
                        logger.info(f"     ✂️ Range too large, shrinking chunk -> {range_size}")
                        continue

                    if not is_retryable_error(e):
                        logger.warning(f"     ⚠️ getLogs non-retryable {cursor}-{end}: {str(e)[:160]}")
                        result.completed = False
                        break

                    attempt += 1
                    if attempt >= self.retries_per_chunk:
                        if range_size <= self.min_range:
                            logger.warning(f"     ⚠️ At min range {self.min_range} and still failing, abandoning this cycle")
                            result.completed = False
                            break
                        range_size = max(self.min_range, range_size // 2)
                        end = min(cursor + range_size - 1, to_block)
                        attempt = 0
                        logger.warning(f"     ⚠️ getLogs chunk failed ({str(e)[:80]}), shrinking -> {range_size}")
                        continue

                    await asyncio.sleep(self._backoff(attempt))
                    await self.client.rotate(e)
                    continue

                for log in logs:
                    wallet = extract(log)
                    if wallet:
                        found.add(wallet)
                checkpoint.advance(end)
                result.progressed_to = end
                cursor = end + 1
                range_size = min(self.max_range, int(range_size * 1.5))
                break

            if not result.completed:
                break

        result.borrowers = sorted(found)
        result.range_size = range_size
        checkpoint.current_range_size = range_size
        return result

    def _finish(self, key, checkpoint, result, label):
        if result.completed:
            checkpoint.consecutive_failures = 0
            checkpoint.cooldown_until = 0.0
            self.states[key] = ReserveScanState.IDLE
            return
        checkpoint.consecutive_failures += 1
        wait = min(self.cooldown_max, checkpoint.consecutive_failures * self.cooldown_step)
        checkpoint.cooldown_until = self._clock() + wait
        self.states[key] = ReserveScanState.COOLDOWN
        logger.warning(f"     ⏸️ {label}: scan abandoned, cooling down {wait}s (fails={checkpoint.consecutive_failures})")

    def _window(self, checkpoint, latest, lookback):
        if checkpoint.last_scanned_block is not None:
            start = checkpoint.last_scanned_block + 1
        else:
            start = max(0, latest - lookback)
        end = min(latest, start + self.max_blocks_per_run - 1)
        return start, end

    async def _scan_source(self, key, label, address, topics, latest, lookback, extract) -> Optional[List[str]]:
        checkpoint = self.store.checkpoint(key)
        if checkpoint.in_cooldown(self._clock()):
            self.states[key] = ReserveScanState.COOLDOWN
            return None
        if self.states.get(key) == ReserveScanState.COOLDOWN:
            self.states[key] = ReserveScanState.IDLE

        start, end = self._window(checkpoint, latest, lookback)
        if start > end:
            return []

        self.states[key] = ReserveScanState.SCANNING
        result = await self.scan_logs_adaptive(address, topics, start, end, checkpoint, extract)
        self._finish(key, checkpoint, result, label)
        if result.progressed_to is not None:
            logger.info(f"     ✅ {label}: covered {start}-{result.progressed_to} ({len(result.borrowers)} wallets)")
        return result.borrowers

    async def scan_reserve(self, reserve, latest) -> Optional[List[str]]:
        """Debt-mint scan for one reserve. None means the reserve was skipped on cooldown."""
        return await self._scan_source(
            reserve.debt_token.lower(), reserve.symbol, reserve.debt_token,
            [TRANSFER_TOPIC, ZERO_TOPIC, None], latest, self.lookback_blocks, mint_receiver,
        )

    async def scan_recent_liquidations(self, latest) -> List[str]:
        """Wallets liquidated recently may re-borrow; keep them on the radar."""
        if not self.enable_liquidation_scanning:
            return []
        key = f"liquidations:{self.pool_address}".lower()
        users = await self._scan_source(
            key, "LiquidationCall", self.pool_address, [LIQUIDATION_CALL_TOPIC],
            latest, self.liquidation_lookback, liquidated_user,
        )
        if users:
            logger.info(f"   📊 Found {len(users)} recently liquidated users (may borrow again)")
        return users or []

    async def fetch_distressed_wallets(self) -> List[str]:
        """Best-effort external feed. Any failure simply yields no wallets."""
        if not self.enable_api_scanning:
            return []
        for path, params in DISTRESSED_ENDPOINTS:
            url = f"{self.distressed_api_base}{path}"
            try:
                data = await self._fetch(url, params=dict(params, chain=self.chain), timeout=10)
            except Exception as e:
                logger.debug(f"Distressed feed {path} unavailable: {e}")
                continue
            wallets = extract_wallets(data)
            if wallets:
                logger.info(f"   ✅ Found {len(wallets)} distressed wallets from API {path}")
                return sorted(set(wallets))
        logger.info("   ℹ️ No distressed positions from API (normal in stable markets)")
        return []

    async def discover(self):
        """One discovery pass. Reserves are scanned sequentially; state is saved after each one."""
        latest = await self.client.block_number()
        known_before = len(self.store.known_borrowers)
        new_wallets = set()
        skipped = 0
        scanned = 0

        new_wallets.update(await self.scan_recent_liquidations(latest))
        new_wallets.update(await self.fetch_distressed_wallets())

        reserves = await self.reserve_index.get_reserves(borrowing_only=True)
        for reserve in reserves:
            logger.info(f"🔍 Scanning {reserve.symbol} debt token [{reserve.debt_token}]...")
            borrowers = await self.scan_reserve(reserve, latest)
            if borrowers is None:
                skipped += 1
                continue
            scanned += 1
            new_wallets.update(borrowers)
            self.store.known_borrowers.merge(borrowers)
            await self.store.save()

        self.store.known_borrowers.merge(new_wallets)
        await self.store.save()
        added = len(self.store.known_borrowers) - known_before

        if skipped:
            logger.info(f"   ⏭️ Skipped {skipped} reserve scans due to cooldowns")
        logger.info(
            f"   📊 Discovery: {len(new_wallets)} wallets seen, {added} new, "
            f"{len(self.store.known_borrowers)} known"
        )
        self.last_report = {
            "latest_block": latest,
            "reserves_scanned": scanned,
            "reserves_skipped": skipped,
            "wallets_seen": len(new_wallets),
        }
        return self.store.known_borrowers
