#!/usr/bin/env python3
"""
Pool Aggregator — Cross-Venue Pool Discovery
=============================================

Fans a token-pair query out to every registered venue adapter and merges
the answers. A venue that errors or times out contributes no pools; the
query as a whole never fails because of one venue.

Features:
  - All pools for a pair across venues, sorted by TVL
  - Best pool by APR, TVL or 24h volume
  - Composite ranking (fee APR, TVL and volume on log scales)
  - Per-pair comparison with a recommendation
"""

import asyncio
import math
from typing import Any, Dict, List, Optional

from lp_agent.central_config import config
from lp_agent.dex_registry import AdapterRegistry, DexAdapter
from lp_agent.logging_utils import get_logger
from lp_agent.models import PoolInfo

logger = get_logger(__name__)


def estimated_fee_apr(pool: PoolInfo) -> float:
    """Annualized fee APR (%) implied by fee rate and volume/TVL."""
    if pool.tvl <= 0:
        return 0.0
    return pool.fee_bps / 10_000 * (pool.volume_24h / pool.tvl) * 365 * 100


def pool_score(pool: PoolInfo) -> float:
    """
    Composite ranking score:
      APR    : min(APR, 200) / 2        (up to 100 points)
      TVL    : log10(TVL) × 5           (5 points per order of magnitude)
      Volume : log10(volume) × 3
    """
    apr_score = min(estimated_fee_apr(pool), 200) / 2
    tvl_score = math.log10(max(pool.tvl, 1)) * 5
    volume_score = math.log10(max(pool.volume_24h, 1)) * 3
    return apr_score + tvl_score + volume_score


def pool_summary(pool: PoolInfo) -> Dict[str, Any]:
    """Flat dict view of a pool for CLI/API output."""
    return {
        "address": pool.address,
        "dex": pool.dex.value,
        "pair": pool.pair_label,
        "token_a": {"symbol": pool.token_a_symbol, "mint": pool.token_a_mint},
        "token_b": {"symbol": pool.token_b_symbol, "mint": pool.token_b_mint},
        "pool_type": pool.pool_type.value,
        "tvl": pool.tvl,
        "volume_24h": pool.volume_24h,
        "fee_rate": pool.fee_bps / 10_000,
        "current_price": pool.current_price,
        "apr_24h": pool.apr_24h,
    }


class Aggregator:
    """
    Cross-venue pool discovery over an ``AdapterRegistry``.

    Each adapter call is bounded by ``timeout`` seconds; slow venues are
    treated like failed ones.
    """

    # Sort keys for find_best_pool (all descending)
    sort_keys = {
        "apr": lambda p: p.apr_24h,
        "tvl": lambda p: p.tvl,
        "volume": lambda p: p.volume_24h,
    }

    def __init__(self, registry: AdapterRegistry, timeout: float = config.venues.TIMEOUT_SECONDS):
        self.registry = registry
        self.timeout = timeout

    async def _pools_from(self, adapter: DexAdapter, token_a: str, token_b: str) -> List[PoolInfo]:
        try:
            return await asyncio.wait_for(adapter.find_pools(token_a, token_b), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("%s: pool search timed out after %.1fs", adapter.dex_type.value, self.timeout)
        except Exception as e:
            logger.warning("%s: pool search failed: %s", adapter.dex_type.value, e)
        return []

    async def find_pools_for_pair(self, token_a: str, token_b: str) -> List[PoolInfo]:
        """Every venue's pools for the pair, TVL descending."""
        results = await asyncio.gather(
            *(self._pools_from(adapter, token_a, token_b) for adapter in self.registry)
        )
        pools = [pool for venue_pools in results for pool in venue_pools]
        pools.sort(key=lambda p: p.tvl, reverse=True)
        logger.debug("found %d pools for %s/%s", len(pools), token_a, token_b)
        return pools

    async def find_best_pool(
        self, token_a: str, token_b: str, criteria: str = "apr"
    ) -> Optional[PoolInfo]:
        """Top pool by ``criteria`` (apr | tvl | volume), or None if no venue has one.

        Ties keep the TVL order from ``find_pools_for_pair``.
        """
        if criteria not in self.sort_keys:
            raise ValueError(f"unknown criteria {criteria!r}; expected one of {sorted(self.sort_keys)}")
        pools = await self.find_pools_for_pair(token_a, token_b)
        if not pools:
            return None
        return sorted(pools, key=self.sort_keys[criteria], reverse=True)[0]

    async def get_best_pools(self, token_a: str, token_b: str, limit: int = 5) -> List[Dict[str, Any]]:
        pools = await self.find_pools_for_pair(token_a, token_b)
        scored = sorted(pools, key=pool_score, reverse=True)[:limit]
        results = []
        for pool in scored:
            entry = pool_summary(pool)
            entry["estimated_apr"] = estimated_fee_apr(pool)
            entry["score"] = round(pool_score(pool), 2)
            results.append(entry)
        return results

    async def compare_by_pair(self, token_a: str, token_b: str) -> Dict[str, Any]:
        """Rank the pair's pools by estimated fee APR and recommend the top one."""
        pools = await self.find_pools_for_pair(token_a, token_b)
        ranked = sorted(pools, key=estimated_fee_apr, reverse=True)
        rows = []
        for rank, pool in enumerate(ranked, start=1):
            entry = pool_summary(pool)
            entry["estimated_apr"] = estimated_fee_apr(pool)
            entry["rank"] = rank
            rows.append(entry)

        recommendation = None
        if rows:
            best = rows[0]
            recommendation = {
                "dex": best["dex"],
                "address": best["address"],
                "reason": (
                    f"Highest estimated APR ({best['estimated_apr']:.2f}%) "
                    "based on fee rate and volume/TVL ratio"
                ),
            }
        return {
            "token_a": token_a,
            "token_b": token_b,
            "pools": rows,
            "recommendation": recommendation,
        }
