import logging
from dataclasses import dataclass
from typing import Optional

from hexbytes import HexBytes

import config
from chain_client import RetryPolicy
from http_client import fetch_json
from scan_state import normalize_address

logger = logging.getLogger("QuoteClient")


@dataclass(frozen=True)
class SwapQuote:
    amount_out: int
    calldata: HexBytes
    execution_target: Optional[str]
    source: str
    best_path: Optional[dict] = None
    token_info: Optional[dict] = None

    @property
    def is_usable(self):
        return self.amount_out > 0


def parse_quote(data, source) -> SwapQuote:
    """Accepts {execution: {calldata, to, amountOut}} and the legacy top-level calldata/amountOut."""
    if not isinstance(data, dict):
        raise ValueError(f"unexpected quote payload: {type(data).__name__}")
    execution = data.get("execution") or {}
    calldata = execution.get("calldata") or data.get("calldata")
    amount_out = execution.get("amountOut") or data.get("amountOut") or "0"
    target = execution.get("to")
    return SwapQuote(
        amount_out=int(str(amount_out)),
        calldata=HexBytes(calldata) if calldata else HexBytes(b""),
        execution_target=normalize_address(target) if target else None,
        source=source,
        best_path=data.get("bestPath"),
        token_info=data.get("tokenInfo"),
    )


class QuoteClient:
    """Swap-quote aggregator: primary route endpoint with a legacy fallback."""

    def __init__(self, primary_url=config.QUOTE_API_URL, fallback_url=config.QUOTE_FALLBACK_URL,
                 slippage_bps=config.QUOTE_SLIPPAGE_BPS, timeout=config.QUOTE_TIMEOUT,
                 retry_policy=None, fetch=fetch_json):
        self.endpoints = [(primary_url, "primary")]
        if fallback_url:
            self.endpoints.append((fallback_url, "fallback"))
        self.slippage_bps = slippage_bps
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(attempts=2, base_delay=0.5, max_delay=2)
        self._fetch = fetch
        self.failures = 0

    async def _request(self, url, params):
        return await self.retry_policy.run(
            lambda: self._fetch(url, params=params, timeout=self.timeout), label=f"quote {url[:40]}"
        )

    async def get_quote(self, token_in, token_out, amount_in) -> Optional[SwapQuote]:
        params = {
            "tokenIn": token_in,
            "tokenOut": token_out,
            "amountIn": str(amount_in),
            "slippageTolerance": self.slippage_bps,
        }
        for url, source in self.endpoints:
            try:
                quote = parse_quote(await self._request(url, params), source)
            except Exception as e:
                self.failures += 1
                logger.warning(f"   ⚠️ {source} quote failed: {str(e)[:120]}")
                continue
            if quote.is_usable:
                logger.info(f"   ✅ {source} quote: amountOut={quote.amount_out}")
                return quote
            logger.warning(f"   ⚠️ {source} quote returned zero output")
        return None
