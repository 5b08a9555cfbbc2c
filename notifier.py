import time
import asyncio
import logging

import requests

import config
import db_manager

logger = logging.getLogger("Notifier")

ALERT_COOLDOWN = 300  # 5 minutes between identical error alerts


class Notifier:
    """Log + SQLite + Telegram/Discord fan-out. Blocking I/O runs in the default executor."""

    def __init__(self, db_enabled=True, telegram_token=config.TELEGRAM_BOT_TOKEN,
                 telegram_chat_id=config.TELEGRAM_CHAT_ID, discord_webhook=config.DISCORD_WEBHOOK_URL):
        self.db_enabled = db_enabled
        self.telegram_token = telegram_token
        self.telegram_chat_id = telegram_chat_id
        self.discord_webhook = discord_webhook
        self._last_errors = {}

    async def _in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def log_system(self, msg, level="info"):
        if level == "error":
            logger.error(msg)
        elif level == "warning":
            logger.warning(msg)
        else:
            logger.info(msg)

        if self.db_enabled:
            await self._in_executor(db_manager.log_event, level, msg)

        if self.discord_webhook and level in ("success", "error"):
            await self.send_discord_alert(msg, level)

    def _suppressed(self, msg):
        error_key = msg[:100]
        now = time.time()
        if error_key in self._last_errors and (now - self._last_errors[error_key]) < ALERT_COOLDOWN:
            return True
        self._last_errors[error_key] = now
        return False

    async def send_telegram_alert(self, msg, is_error=False):
        if not self.telegram_token or not self.telegram_chat_id:
            return
        if is_error and self._suppressed(msg):
            return

        url = f"https://api.telegram.org/bot{self.telegram_token}/sendMessage"
        payload = {"chat_id": self.telegram_chat_id, "text": msg, "parse_mode": "HTML"}
        try:
            await self._in_executor(lambda: requests.post(url, json=payload, timeout=10))
        except requests.RequestException as e:
            logger.debug(f"Telegram alert failed: {e}")

    async def send_discord_alert(self, msg, level):
        color = 0x00ff00 if level == "success" else 0xff0000
        payload = {"embeds": [{"title": "⚡ Flash Liquidator", "description": msg, "color": color}]}
        try:
            await self._in_executor(lambda: requests.post(self.discord_webhook, json=payload, timeout=10))
        except requests.RequestException as e:
            logger.debug(f"Discord alert failed: {e}")

    # ================================================================
    # RECORDS
    # ================================================================

    async def record_attempt(self, wallet, outcome, reason=""):
        if self.db_enabled:
            await self._in_executor(db_manager.record_attempt, wallet, outcome, reason)

    async def record_execution(self, *args):
        if self.db_enabled:
            await self._in_executor(db_manager.record_execution, *args)

    async def record_live_targets(self, rows):
        if self.db_enabled and rows:
            await self._in_executor(db_manager.update_live_targets, rows)

    async def record_cycle(self, *args):
        if self.db_enabled:
            await self._in_executor(db_manager.log_system_metric, *args)
