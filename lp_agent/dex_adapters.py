#!/usr/bin/env python3
"""
Venue Adapters — Meteora DLMM, Orca Whirlpools, Raydium CLMM
=============================================================

Read side: public REST APIs of each venue, normalized into ``PoolInfo``.
Write side: delegated to an injected ``TransactionExecutor`` (the wallet
transport). Without one, writes return a structured failure.

Endpoints:
  Meteora : GET /pair/all, GET /pair/{address}
  Orca    : GET /v1/whirlpool/list, GET /v1/whirlpool/{address}
  Raydium : GET /pools/info/mint?mint1=&mint2=…, GET /pools/info/ids?ids=
"""

import abc
import asyncio
import time
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import httpx

from lp_agent.central_config import config, resolve_mint
from lp_agent.dex_registry import (
    AdapterError,
    ClosePositionParams,
    CollectFeesParams,
    CreatePositionParams,
    DexAdapter,
    RebalanceParams,
)
from lp_agent.logging_utils import get_logger
from lp_agent.models import DexType, PoolInfo, PoolType, Position, PositionStatus, TxResult

logger = get_logger(__name__)


# ── Rate Limiter ─────────────────────────────────────────────────────────


class _RateLimiter:
    """Token-bucket rate limiter to respect venue API limits."""

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        now = time.monotonic()
        # Purge timestamps outside the current window
        self._timestamps = [t for t in self._timestamps if now - t < self._period]
        if len(self._timestamps) >= self._max:
            # Wait until the oldest request expires
            sleep_time = self._period - (now - self._timestamps[0]) + 0.1
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
        self._timestamps.append(time.monotonic())


# Shared rate limiters (module-level singletons), one per venue
_venue_limiters = {
    DexType.METEORA: _RateLimiter(max_requests=100, period_seconds=60),
    DexType.ORCA: _RateLimiter(max_requests=100, period_seconds=60),
    DexType.RAYDIUM: _RateLimiter(max_requests=100, period_seconds=60),
}


def _num(value: Any) -> float:
    """Venue APIs mix strings, numbers and nulls for numeric fields."""
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


# ── Transaction executors ────────────────────────────────────────────────


class TransactionExecutor(abc.ABC):
    """Builds, signs and confirms a venue write. Returns a structured result."""

    @abc.abstractmethod
    async def submit(self, dex: DexType, operation: str, params: Any) -> TxResult:
        ...


class DryRunExecutor(TransactionExecutor):
    """Simulates confirmed submissions. Used by ``run.py monitor``."""

    def __init__(self):
        self.submissions: List[Dict[str, Any]] = []

    async def submit(self, dex: DexType, operation: str, params: Any) -> TxResult:
        signature = f"dryrun-{uuid.uuid4().hex[:16]}"
        self.submissions.append(
            {"dex": dex.value, "operation": operation, "params": asdict(params), "signature": signature}
        )
        logger.info("dry-run %s on %s → %s", operation, dex.value, signature)

        if operation == "create":
            return TxResult(
                success=True,
                signature=signature,
                position=Position(
                    id=f"dryrun-{uuid.uuid4().hex[:12]}",
                    owner=params.owner,
                    dex=dex,
                    pool_address=params.pool_address,
                    lower_price=params.lower_price,
                    upper_price=params.upper_price,
                    token_a_amount=params.token_a_amount,
                    token_b_amount=params.token_b_amount,
                    created_at=time.time(),
                ),
            )
        return TxResult(success=True, signature=signature)


# ── Base HTTP adapter ────────────────────────────────────────────────────


class HttpVenueAdapter(DexAdapter):
    """Shared HTTP plumbing, payload normalization and write delegation."""

    dex_type: DexType
    GAS_ESTIMATES: Dict[str, float] = {
        "create": 0.003,
        "close": 0.002,
        "rebalance": 0.005,
        "collect": 0.001,
    }

    def __init__(
        self,
        executor: Optional[TransactionExecutor] = None,
        timeout: float = config.venues.TIMEOUT_SECONDS,
    ):
        self.executor = executor
        self.timeout = timeout
        self._positions: Dict[str, Position] = {}

    async def _get_json(self, url: str) -> Any:
        await _venue_limiters[self.dex_type].acquire()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, verify=True) as client:
                response = await client.get(url)
        except httpx.TimeoutException as e:
            raise AdapterError(f"{self.dex_type.value}: timeout fetching {url}") from e
        except httpx.HTTPError as e:
            raise AdapterError(f"{self.dex_type.value}: request failed: {e}") from e

        if response.status_code == 429:
            raise AdapterError(f"{self.dex_type.value}: rate limited")
        if response.status_code == 404:
            raise AdapterError(f"{self.dex_type.value}: not found: {url}")
        if response.status_code != 200:
            raise AdapterError(f"{self.dex_type.value}: HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise AdapterError(f"{self.dex_type.value}: invalid JSON") from e

    def _normalize(self, raw: Dict) -> PoolInfo:
        try:
            return self._to_pool_info(raw)
        except (KeyError, TypeError, AttributeError) as e:
            raise AdapterError(f"{self.dex_type.value}: unexpected pool payload") from e

    @staticmethod
    @abc.abstractmethod
    def _to_pool_info(raw: Dict) -> PoolInfo:
        ...

    # ── Writes ──

    async def _submit(self, operation: str, params: Any) -> TxResult:
        if self.executor is None:
            return TxResult(success=False, error="no transaction executor configured")
        try:
            return await self.executor.submit(self.dex_type, operation, params)
        except (httpx.HTTPError, RuntimeError, ValueError) as e:
            logger.warning("%s %s failed: %s", self.dex_type.value, operation, e)
            return TxResult(success=False, error=str(e))

    async def create_position(self, params: CreatePositionParams) -> TxResult:
        if params.lower_price <= 0 or params.lower_price >= params.upper_price:
            return TxResult(success=False, error="invalid price range")
        result = await self._submit("create", params)
        if result.success and result.position is not None:
            self._positions[result.position.id] = result.position
        return result

    async def close_position(self, params: ClosePositionParams) -> TxResult:
        result = await self._submit("close", params)
        if result.success and params.percent_to_withdraw >= 100:
            closed = self._positions.get(params.position_id)
            if closed is not None:
                closed.status = PositionStatus.CLOSED
        return result

    async def collect_fees(self, params: CollectFeesParams) -> TxResult:
        return await self._submit("collect", params)

    async def rebalance(self, params: RebalanceParams) -> TxResult:
        if params.new_lower_price <= 0 or params.new_lower_price >= params.new_upper_price:
            return TxResult(success=False, error="invalid price range")
        return await self._submit("rebalance", params)

    async def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    async def get_positions(self, owner: str) -> List[Position]:
        return [p for p in self._positions.values() if p.owner == owner]

    def estimate_gas(self, operation: str) -> float:
        return self.GAS_ESTIMATES.get(operation, 0.002)


# ── Pool-list venues ─────────────────────────────────────────────────────


class ListedPoolAdapter(HttpVenueAdapter):
    """Venue whose API serves its whole pool list; pair searches filter a cached copy."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._cache: Optional[List[PoolInfo]] = None
        self._cache_time: float = 0.0
        self._cache_ttl_seconds = 120  # Cache for 2 minutes

    async def _cached_pool_list(self) -> List[PoolInfo]:
        now = time.monotonic()
        if self._cache is not None and now - self._cache_time < self._cache_ttl_seconds:
            return self._cache
        self._cache = await self._fetch_pool_list()
        self._cache_time = now
        return self._cache

    @abc.abstractmethod
    async def _fetch_pool_list(self) -> List[PoolInfo]:
        ...

    async def find_pools(self, token_a: str, token_b: str) -> List[PoolInfo]:
        wanted = {resolve_mint(token_a), resolve_mint(token_b)}
        pools = [
            p for p in await self._cached_pool_list()
            if {p.token_a_mint, p.token_b_mint} == wanted
        ]
        pools.sort(key=lambda p: p.tvl, reverse=True)
        return pools


# ── Meteora DLMM ─────────────────────────────────────────────────────────


class MeteoraAdapter(ListedPoolAdapter):
    dex_type = DexType.METEORA

    async def _fetch_pool_list(self) -> List[PoolInfo]:
        data = await self._get_json(config.venues.meteora_pairs_url())
        return [self._normalize(pair) for pair in data if pair.get("address")]

    async def get_pool_info(self, pool_address: str) -> PoolInfo:
        return self._normalize(await self._get_json(config.venues.meteora_pair_url(pool_address)))

    @staticmethod
    def _to_pool_info(pair: Dict) -> PoolInfo:
        symbols = (pair.get("name") or "Unknown-Unknown").split("-")
        return PoolInfo(
            dex=DexType.METEORA,
            address=pair["address"],
            token_a_mint=pair.get("mint_x", ""),
            token_b_mint=pair.get("mint_y", ""),
            token_a_symbol=symbols[0],
            token_b_symbol=symbols[1] if len(symbols) > 1 else "Unknown",
            current_price=_num(pair.get("current_price")),
            fee_bps=_num(pair.get("base_fee_percentage")) * 100,
            tvl=_num(pair.get("liquidity")),
            volume_24h=_num(pair.get("trade_volume_24h")),
            apr_24h=_num(pair.get("apr")),
            pool_type=PoolType.DLMM,
            bin_step=pair.get("bin_step"),
        )


# ── Orca Whirlpools ──────────────────────────────────────────────────────


class OrcaAdapter(ListedPoolAdapter):
    dex_type = DexType.ORCA
    GAS_ESTIMATES = {"create": 0.004, "close": 0.003, "rebalance": 0.007, "collect": 0.001}

    async def _fetch_pool_list(self) -> List[PoolInfo]:
        data = await self._get_json(config.venues.orca_whirlpools_url())
        return [self._normalize(p) for p in data.get("whirlpools", []) if p.get("address")]

    async def get_pool_info(self, pool_address: str) -> PoolInfo:
        return self._normalize(await self._get_json(config.venues.orca_whirlpool_url(pool_address)))

    @staticmethod
    def _to_pool_info(pool: Dict) -> PoolInfo:
        token_a = pool.get("tokenA") or {}
        token_b = pool.get("tokenB") or {}
        volume = pool.get("volume") or {}
        fee_apr = pool.get("feeApr") or {}
        return PoolInfo(
            dex=DexType.ORCA,
            address=pool["address"],
            token_a_mint=token_a.get("mint", ""),
            token_b_mint=token_b.get("mint", ""),
            token_a_symbol=token_a.get("symbol", "Unknown"),
            token_b_symbol=token_b.get("symbol", "Unknown"),
            current_price=_num(pool.get("price")),
            fee_bps=round(_num(pool.get("lpFeeRate")) * 10_000, 2),
            tvl=_num(pool.get("tvl")),
            volume_24h=_num(volume.get("day")),
            # Orca reports APR as a fraction
            apr_24h=_num(fee_apr.get("day")) * 100,
            pool_type=PoolType.WHIRLPOOL,
            tick_spacing=pool.get("tickSpacing"),
        )


# ── Raydium CLMM ─────────────────────────────────────────────────────────


class RaydiumAdapter(HttpVenueAdapter):
    dex_type = DexType.RAYDIUM

    async def find_pools(self, token_a: str, token_b: str) -> List[PoolInfo]:
        url = config.venues.raydium_pools_by_mint_url(resolve_mint(token_a), resolve_mint(token_b))
        data = await self._get_json(url)
        pools = [
            self._normalize(p)
            for p in (data.get("data") or {}).get("data", [])
            if p.get("type") == "Concentrated"
        ]
        pools.sort(key=lambda p: p.tvl, reverse=True)
        return pools

    async def get_pool_info(self, pool_address: str) -> PoolInfo:
        data = await self._get_json(config.venues.raydium_pool_url(pool_address))
        pools = [p for p in data.get("data") or [] if p]
        if not pools:
            raise AdapterError(f"raydium: pool {pool_address} not found")
        return self._normalize(pools[0])

    @staticmethod
    def _to_pool_info(pool: Dict) -> PoolInfo:
        mint_a = pool.get("mintA") or {}
        mint_b = pool.get("mintB") or {}
        day = pool.get("day") or {}
        return PoolInfo(
            dex=DexType.RAYDIUM,
            address=pool["id"],
            token_a_mint=mint_a.get("address", ""),
            token_b_mint=mint_b.get("address", ""),
            token_a_symbol=mint_a.get("symbol", "Unknown"),
            token_b_symbol=mint_b.get("symbol", "Unknown"),
            current_price=_num(pool.get("price")),
            fee_bps=round(_num(pool.get("feeRate")) * 10_000, 2),
            tvl=_num(pool.get("tvl")),
            volume_24h=_num(day.get("volume")),
            apr_24h=_num(day.get("apr")),
            pool_type=PoolType.CLMM,
            tick_spacing=(pool.get("config") or {}).get("tickSpacing"),
        )


def default_adapters(executor: Optional[TransactionExecutor] = None) -> List[DexAdapter]:
    """One adapter per supported venue, sharing the same executor."""
    return [MeteoraAdapter(executor), OrcaAdapter(executor), RaydiumAdapter(executor)]
