import sqlite3
import datetime
import logging
import threading

import config

logger = logging.getLogger("DBManager")

DB_FILE = config.DB_FILE

# Thread-safe lock: writers run in executor threads
db_lock = threading.Lock()


def get_connection():
    """SQLite connection in WAL mode so reads never block the bot's writes."""
    conn = sqlite3.connect(DB_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_db():
    """Creates every table. IF NOT EXISTS keeps it idempotent."""
    with db_lock:
        conn = get_connection()
        cursor = conn.cursor()

        # Submitted liquidations and their on-chain outcome
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_hash TEXT,
                wallet TEXT,
                debt_asset TEXT,
                collateral_asset TEXT,
                debt_covered TEXT,
                profit_bps INTEGER,
                gas_used INTEGER,
                gas_cost_native REAL,
                status TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Every non-trivial attempt outcome (simulation failures, gas rejections, ...)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                wallet TEXT,
                outcome TEXT,
                reason TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT,
                message TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Latest screening snapshot per wallet
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS live_targets (
                address TEXT PRIMARY KEY,
                health_factor REAL,
                total_debt_base REAL,
                total_collateral_base REAL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS system_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER,
                known_borrowers INTEGER,
                checked INTEGER,
                liquidatable INTEGER,
                near_threshold INTEGER,
                attempted INTEGER,
                succeeded INTEGER,
                failed INTEGER,
                cycle_time_ms REAL,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        conn.commit()
        conn.close()


# =====================================================================
# WRITERS
# =====================================================================

def log_event(level, message):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute("INSERT INTO logs (level, message) VALUES (?, ?)", (level, message))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"❌ DB Log Error: {e}")


def record_execution(tx_hash, wallet, debt_asset, collateral_asset, debt_covered, profit_bps,
                     gas_used, gas_cost_native, status):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute('''
                INSERT INTO executions (tx_hash, wallet, debt_asset, collateral_asset, debt_covered,
                                        profit_bps, gas_used, gas_cost_native, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (tx_hash, wallet, debt_asset, collateral_asset, str(debt_covered), profit_bps,
                  gas_used, gas_cost_native, status))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"❌ Failed to record execution {tx_hash}: {e}")


def record_attempt(wallet, outcome, reason=""):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute("INSERT INTO attempts (wallet, outcome, reason) VALUES (?, ?, ?)",
                         (wallet, outcome, (reason or "")[:500]))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"❌ Failed to record attempt for {wallet}: {e}")


def update_live_targets(targets_data):
    """
    Batch UPSERT of screening results in one transaction.

    Args:
        targets_data: list of tuples (address, health_factor, total_debt_base, total_collateral_base)
    """
    if not targets_data:
        return
    try:
        with db_lock:
            conn = get_connection()
            now = datetime.datetime.now(datetime.timezone.utc).isoformat()
            rows = [(addr, hf, debt, coll, now) for addr, hf, debt, coll in targets_data]
            conn.executemany('''
                INSERT INTO live_targets (address, health_factor, total_debt_base, total_collateral_base, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                    health_factor = excluded.health_factor,
                    total_debt_base = excluded.total_debt_base,
                    total_collateral_base = excluded.total_collateral_base,
                    updated_at = excluded.updated_at
            ''', rows)
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"❌ update_live_targets Error: {e}")


def log_system_metric(block_number, known_borrowers, checked, liquidatable, near_threshold,
                      attempted, succeeded, failed, cycle_time_ms):
    try:
        with db_lock:
            conn = get_connection()
            conn.execute('''
                INSERT INTO system_metrics (block_number, known_borrowers, checked, liquidatable, near_threshold,
                                            attempted, succeeded, failed, cycle_time_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (block_number, known_borrowers, checked, liquidatable, near_threshold,
                  attempted, succeeded, failed, cycle_time_ms))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"❌ log_system_metric Error: {e}")


# =====================================================================
# READERS
# =====================================================================

def _fetch_all(query, params=()):
    try:
        with db_lock:
            conn = get_connection()
            rows = conn.execute(query, params).fetchall()
            conn.close()
            return rows
    except sqlite3.Error:
        return []


def get_recent_logs(limit=50):
    return _fetch_all("SELECT * FROM logs ORDER BY id DESC LIMIT ?", (limit,))


def get_executions(limit=50):
    return _fetch_all("SELECT * FROM executions ORDER BY id DESC LIMIT ?", (limit,))


def get_attempts(wallet=None, limit=50):
    if wallet:
        return _fetch_all("SELECT * FROM attempts WHERE wallet = ? ORDER BY id DESC LIMIT ?", (wallet, limit))
    return _fetch_all("SELECT * FROM attempts ORDER BY id DESC LIMIT ?", (limit,))


def get_live_targets():
    """Closest to liquidation first."""
    return _fetch_all('''
        SELECT address, health_factor, total_debt_base, total_collateral_base, updated_at
        FROM live_targets
        ORDER BY health_factor ASC
    ''')


def get_recent_metrics(limit=100):
    return _fetch_all("SELECT * FROM system_metrics ORDER BY id DESC LIMIT ?", (limit,))
