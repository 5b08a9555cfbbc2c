import os
import logging
from decimal import Decimal

from web3 import Web3
from dotenv import load_dotenv

# --- 1. ENVIRONMENT ---

ENV_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env")
if not os.path.exists(ENV_PATH):
    ENV_PATH = ".env"
load_dotenv(ENV_PATH)

logger = logging.getLogger("Config")


def _env_bool(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_list(name):
    raw = os.getenv(name, "")
    return [item.strip().strip("'").strip('"') for item in raw.split(",") if item.strip()]


def _env_address(name):
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return Web3.to_checksum_address(raw)


# --- 2. ENDPOINTS & ADDRESSES ---

PRIMARY_RPC = os.getenv("PRIMARY_RPC")
FALLBACK_RPCS = _env_list("FALLBACK_RPCS")
RPC_ENDPOINTS = ([PRIMARY_RPC] if PRIMARY_RPC else []) + FALLBACK_RPCS
RPC_TIMEOUT = int(os.getenv("RPC_TIMEOUT", "60"))

PRIVATE_KEY = os.getenv("PRIVATE_KEY")
POOL_ADDRESS = _env_address("POOL_ADDRESS")
LIQUIDATOR_ADDRESS = _env_address("LIQUIDATOR_ADDRESS")
WRAPPED_NATIVE = _env_address("WRAPPED_NATIVE")
CHAIN_ID = int(os.getenv("CHAIN_ID", "999"))
CHAIN_NAME = os.getenv("CHAIN_NAME", "hyperevm")
EXPLORER_TX_URL = os.getenv("EXPLORER_TX_URL", "https://hyperevmscan.io/tx/")

MARKETS_API_BASE = os.getenv("MARKETS_API_BASE", "https://api.hyperlend.finance")
DISTRESSED_API_BASE = os.getenv("DISTRESSED_API_BASE", MARKETS_API_BASE)
QUOTE_API_URL = os.getenv("QUOTE_API_URL", "https://api.liqd.ag/v2/route")
QUOTE_FALLBACK_URL = os.getenv("QUOTE_FALLBACK_URL", "https://api.liqd.ag/liquidcore/quote")

SEED_BORROWERS = _env_list("SEED_BORROWERS")

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL")

STATE_FILE = os.getenv("STATE_FILE", ".borrow-scan-state.json")
DB_FILE = os.getenv("DB_FILE", "liquidations.db")
LOG_FILE = os.getenv("LOG_FILE", "liquidation_bot.log")

# --- 3. SIZING & EXECUTION ---

CLOSE_FACTOR = Decimal(os.getenv("CLOSE_FACTOR", "0.5"))
FLASH_LOAN_FEE_BPS = int(os.getenv("FLASH_LOAN_FEE_BPS", "9"))
MIN_PROFIT_THRESHOLD_BPS = int(os.getenv("MIN_PROFIT_THRESHOLD_BPS", "50"))
MIN_DEBT_TO_REPAY = Decimal(os.getenv("MIN_DEBT_TO_REPAY", "1"))
QUOTE_SLIPPAGE_BPS = int(os.getenv("QUOTE_SLIPPAGE_BPS", "100"))
QUOTE_TIMEOUT = int(os.getenv("QUOTE_TIMEOUT", "15"))
TOP_N_POSITIONS = 10

MAX_WALLETS_PER_CYCLE = int(os.getenv("MAX_WALLETS_PER_CYCLE", "100"))
COOLDOWN_SECONDS = int(os.getenv("COOLDOWN_SECONDS", str(12 * 60 * 60)))
RETRY_COOLDOWN_SECONDS = int(os.getenv("RETRY_COOLDOWN_SECONDS", str(60 * 60)))
MAX_RETRIES_PER_WALLET = int(os.getenv("MAX_RETRIES_PER_WALLET", "3"))
GAS_LIMIT_MULTIPLIER = Decimal(os.getenv("GAS_LIMIT_MULTIPLIER", "1.3"))
MAX_GAS_PRICE_GWEI = Decimal(os.getenv("MAX_GAS_PRICE_GWEI", "100"))
MAX_CONCURRENT_SIMS = int(os.getenv("MAX_CONCURRENT_SIMS", "3"))
MAX_CONCURRENT_SENDS = int(os.getenv("MAX_CONCURRENT_SENDS", "1"))
RECEIPT_TIMEOUT = int(os.getenv("RECEIPT_TIMEOUT", "60"))
CYCLE_INTERVAL_SECONDS = int(os.getenv("CYCLE_INTERVAL_SECONDS", "120"))

# --- 4. SCREENING ---

BATCH_SIZE = int(os.getenv("BATCH_SIZE", "20"))
MAX_USERS_TO_CHECK = int(os.getenv("MAX_USERS_TO_CHECK", "500"))
MIN_PROCESSABLE_HF = Decimal(os.getenv("MIN_PROCESSABLE_HF", "0.01"))
HF_NEAR_LOW = Decimal(os.getenv("HF_NEAR_LOW", "0.90"))
HF_WATCH_THRESHOLD = Decimal(os.getenv("HF_WATCH_THRESHOLD", "1.15"))
LOG_LOWEST_HF = int(os.getenv("LOG_LOWEST_HF", "20"))

# --- 5. CACHES ---

MARKETS_CACHE_TTL = int(os.getenv("MARKETS_CACHE_TTL", str(30 * 60)))
RESERVE_CACHE_TTL = int(os.getenv("RESERVE_CACHE_TTL", str(30 * 60)))
POSITION_CACHE_TTL = int(os.getenv("POSITION_CACHE_TTL", "30"))
POSITION_CACHE_MAX = 1000

# --- 6. DISCOVERY ---

SCAN_LOOKBACK_BLOCKS = int(os.getenv("SCAN_LOOKBACK_BLOCKS", "500000"))
BORROW_SCAN_MAX_BLOCKS_PER_RUN = int(os.getenv("BORROW_SCAN_MAX_BLOCKS_PER_RUN", "50000"))
GETLOGS_START_BLOCK_RANGE = int(os.getenv("GETLOGS_START_BLOCK_RANGE", "900"))
GETLOGS_MAX_BLOCK_RANGE = int(os.getenv("GETLOGS_MAX_BLOCK_RANGE", "5000"))
GETLOGS_MIN_BLOCK_RANGE = int(os.getenv("GETLOGS_MIN_BLOCK_RANGE", "50"))
GETLOGS_RETRIES_PER_CHUNK = int(os.getenv("GETLOGS_RETRIES_PER_CHUNK", "3"))
GETLOGS_JITTER_MS = int(os.getenv("GETLOGS_JITTER_MS", "250"))
GETLOGS_DELAY_MS = int(os.getenv("GETLOGS_DELAY_MS", "500"))
GETLOGS_TIMEOUT_MS = int(os.getenv("GETLOGS_TIMEOUT_MS", "45000"))
SCAN_COOLDOWN_STEP = int(os.getenv("SCAN_COOLDOWN_STEP", "60"))
SCAN_COOLDOWN_MAX = int(os.getenv("SCAN_COOLDOWN_MAX", "600"))
LIQUIDATION_LOOKBACK_BLOCKS = int(os.getenv("LIQUIDATION_LOOKBACK_BLOCKS", "100000"))
KNOWN_BORROWERS_CAP = int(os.getenv("KNOWN_BORROWERS_CAP", "50000"))
ENABLE_LIQUIDATION_SCANNING = _env_bool("ENABLE_LIQUIDATION_SCANNING", True)
ENABLE_API_SCANNING = _env_bool("ENABLE_API_SCANNING", True)
SCAN_ACTIVE_ONLY = _env_bool("SCAN_ACTIVE_ONLY", True)

# --- 7. RPC RETRY POLICY ---

RPC_MAX_ATTEMPTS = int(os.getenv("RPC_MAX_ATTEMPTS", "3"))
RPC_BACKOFF_BASE = float(os.getenv("RPC_BACKOFF_BASE", "1.2"))
RPC_BACKOFF_MAX = float(os.getenv("RPC_BACKOFF_MAX", "12"))


def validate_config():
    """Fatal startup check: the bot cannot run without endpoints, signer and contracts."""
    if not RPC_ENDPOINTS:
        logger.error("❌ Critical Error: Missing PRIMARY_RPC in .env")
        exit(1)
    if not PRIVATE_KEY:
        logger.error("❌ Critical Error: Missing PRIVATE_KEY in .env")
        exit(1)
    if not POOL_ADDRESS or not LIQUIDATOR_ADDRESS:
        logger.error("❌ Critical Error: Missing POOL_ADDRESS or LIQUIDATOR_ADDRESS in .env")
        exit(1)
    if not WRAPPED_NATIVE:
        logger.error("❌ Critical Error: Missing WRAPPED_NATIVE in .env")
        exit(1)
