#!/usr/bin/env python3
"""
DEX Registry — Supported Venues and the Adapter Contract
=========================================================

Maps each supported Solana concentrated-liquidity venue to its program id
and pool flavour, and defines the capability set every venue adapter
implements. The aggregator and the position monitor depend only on
``DexAdapter``; concrete venues live in ``dex_adapters.py``.

Program Sources:
  Meteora DLMM   : https://docs.meteora.ag/dlmm
  Orca Whirlpool : https://dev.orca.so/
  Raydium CLMM   : https://docs.raydium.io/raydium/pool-creation/creating-a-clmm-pool-and-farm
"""

import abc
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from lp_agent.models import DexType, PoolInfo, PoolType, Position, TxResult

# ── Venue Registry ──────────────────────────────────────────────────────
#
# Structure:
#   DEX_REGISTRY[dex_slug] = {
#       "name": str,           # Display name
#       "icon": str,           # Emoji for CLI
#       "program_id": str,     # On-chain program
#       "pool_types": [...],   # Pool flavours served by the venue
#   }

DEX_REGISTRY: Dict[str, dict] = {
    "meteora": {
        "name": "Meteora DLMM",
        "icon": "☄️",
        "program_id": "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo",
        "pool_types": [PoolType.DLMM, PoolType.DAMM_V2],
    },
    "orca": {
        "name": "Orca Whirlpools",
        "icon": "🐋",
        "program_id": "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
        "pool_types": [PoolType.WHIRLPOOL],
    },
    "raydium": {
        "name": "Raydium CLMM",
        "icon": "⚡",
        "program_id": "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",
        "pool_types": [PoolType.CLMM],
    },
}


def get_dex_display_name(dex_slug: str) -> str:
    """Get display name for a DEX slug."""
    dex = DEX_REGISTRY.get(dex_slug)
    return dex["name"] if dex else dex_slug


def get_dex_icon(dex_slug: str) -> str:
    """Get emoji icon for a DEX slug."""
    dex = DEX_REGISTRY.get(dex_slug)
    return dex["icon"] if dex else "🔄"


def get_program_id(dex_slug: str) -> Optional[str]:
    dex = DEX_REGISTRY.get(dex_slug)
    return dex["program_id"] if dex else None


# ── Adapter Contract ────────────────────────────────────────────────────


class AdapterError(RuntimeError):
    """A venue read failed (HTTP error, timeout, unknown pool)."""


@dataclass
class CreatePositionParams:
    pool_address: str
    owner: str
    lower_price: float
    upper_price: float
    token_a_amount: float
    token_b_amount: float
    slippage_bps: int = 100


@dataclass
class ClosePositionParams:
    position_id: str
    owner: str
    percent_to_withdraw: float = 100.0
    slippage_bps: int = 100


@dataclass
class CollectFeesParams:
    position_id: str
    owner: str


@dataclass
class RebalanceParams:
    position_id: str
    owner: str
    new_lower_price: float
    new_upper_price: float
    slippage_bps: int = 100
    new_pool_address: Optional[str] = None


class DexAdapter(abc.ABC):
    """Read/write capability set of one venue.

    Reads raise ``AdapterError``; writes never raise for venue-side failures
    and report them through ``TxResult(success=False, error=...)``.
    """

    dex_type: DexType

    @abc.abstractmethod
    async def find_pools(self, token_a: str, token_b: str) -> List[PoolInfo]:
        """Pools trading the pair (either orientation)."""

    @abc.abstractmethod
    async def get_pool_info(self, pool_address: str) -> PoolInfo:
        ...

    async def get_current_price(self, pool_address: str) -> float:
        return (await self.get_pool_info(pool_address)).current_price

    async def get_volume_24h(self, pool_address: str) -> float:
        return (await self.get_pool_info(pool_address)).volume_24h

    async def get_tvl(self, pool_address: str) -> float:
        return (await self.get_pool_info(pool_address)).tvl

    @abc.abstractmethod
    async def create_position(self, params: CreatePositionParams) -> TxResult:
        ...

    @abc.abstractmethod
    async def get_position(self, position_id: str) -> Optional[Position]:
        ...

    @abc.abstractmethod
    async def get_positions(self, owner: str) -> List[Position]:
        ...

    @abc.abstractmethod
    async def close_position(self, params: ClosePositionParams) -> TxResult:
        ...

    @abc.abstractmethod
    async def collect_fees(self, params: CollectFeesParams) -> TxResult:
        ...

    @abc.abstractmethod
    async def rebalance(self, params: RebalanceParams) -> TxResult:
        ...

    @abc.abstractmethod
    def estimate_gas(self, operation: str) -> float:
        """Estimated network cost in SOL for create|close|rebalance|collect."""


class AdapterRegistry:
    """Adapters keyed by venue type."""

    def __init__(self, adapters: Optional[List[DexAdapter]] = None):
        self._adapters: Dict[DexType, DexAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: DexAdapter) -> None:
        self._adapters[adapter.dex_type] = adapter

    def get(self, dex: DexType) -> DexAdapter:
        try:
            return self._adapters[dex]
        except KeyError:
            raise AdapterError(f"no adapter registered for {dex.value}") from None

    def has(self, dex: DexType) -> bool:
        return dex in self._adapters

    def __iter__(self) -> Iterator[DexAdapter]:
        return iter(list(self._adapters.values()))

    def __len__(self) -> int:
        return len(self._adapters)
