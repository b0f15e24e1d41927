"""
Price Oracle — USD token prices via CoinGecko
==============================================

Best-effort lookup: stablecoins are fixed at $1.00, other symbols are
fetched from the CoinGecko simple-price endpoint and cached for 60 s.
On failure the last cached value is returned (even if stale), else 0.0.
The oracle never raises for network errors.

Source: https://docs.coingecko.com/reference/simple-price
"""

import asyncio
import time
from typing import Dict, Iterable, Optional, Tuple

import httpx

from lp_agent.central_config import config
from lp_agent.logging_utils import get_logger
from lp_agent.stablecoins import is_stablecoin

logger = get_logger(__name__)


class PriceOracle:
    """USD price cache shared by concurrent position evaluations."""

    def __init__(
        self,
        ttl_seconds: float = config.coingecko.CACHE_TTL_SECONDS,
        timeout: float = config.coingecko.TIMEOUT_SECONDS,
        token_ids: Optional[Dict[str, str]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.token_ids = dict(token_ids or config.coingecko.TOKEN_IDS)
        self._cache: Dict[str, Tuple[float, float]] = {}  # symbol → (price, fetched_at)
        self._lock = asyncio.Lock()

    def _fresh(self, symbol: str) -> Optional[float]:
        entry = self._cache.get(symbol)
        if entry and time.monotonic() - entry[1] < self.ttl_seconds:
            return entry[0]
        return None

    async def get_price(self, symbol: str) -> float:
        """USD price for ``symbol``; 0.0 when unknown and never fetched."""
        return (await self.get_prices([symbol])).get(symbol.strip().upper(), 0.0)

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Batch lookup keyed by upper-cased symbol."""
        wanted = {s.strip().upper() for s in symbols if s and s.strip()}
        prices: Dict[str, float] = {}
        missing = []
        for sym in wanted:
            if is_stablecoin(sym):
                prices[sym] = 1.0
                continue
            cached = self._fresh(sym)
            if cached is not None:
                prices[sym] = cached
            else:
                missing.append(sym)

        if missing:
            # One in-flight fetch at a time; later callers reuse its result
            async with self._lock:
                still_missing = [s for s in missing if self._fresh(s) is None]
                if still_missing:
                    await self._fetch(still_missing)
            for sym in missing:
                entry = self._cache.get(sym)
                prices[sym] = entry[0] if entry else 0.0
        return prices

    async def get_value_usd(self, symbol: str, amount: float) -> float:
        return amount * await self.get_price(symbol)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _fetch(self, symbols: list) -> None:
        ids = {self.token_ids[s]: s for s in symbols if s in self.token_ids}
        unknown = [s for s in symbols if s not in self.token_ids]
        if unknown:
            logger.debug("no CoinGecko id for %s", ", ".join(sorted(unknown)))
        if not ids:
            return

        url = config.coingecko.get_simple_price_url(sorted(ids))
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("price fetch failed (%s); using cached values", e)
            return

        now = time.monotonic()
        for coin_id, sym in ids.items():
            usd = (data.get(coin_id) or {}).get("usd")
            if isinstance(usd, (int, float)) and usd > 0:
                self._cache[sym] = (float(usd), now)
