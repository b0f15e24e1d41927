"""
Domain Models — positions, pool snapshots and engine verdicts
==============================================================

Value objects shared by the decision engine and its collaborators:

  • Position        → a user's liquidity stake in one pool (mutable, owned by the monitor)
  • StrategyConfig  → per-position automation settings
  • PoolInfo        → immutable market snapshot from a venue
  • RebalanceDecision / MigrationAnalysis / FeeSplit → per-cycle results
  • TxResult        → structured outcome of a venue write

Timestamps are POSIX seconds (float).
"""

import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class PositionConfigError(ValueError):
    """Malformed position or strategy configuration (rejected at registration)."""


# ── Enums ────────────────────────────────────────────────────────────────


class DexType(str, Enum):
    METEORA = "meteora"
    ORCA = "orca"
    RAYDIUM = "raydium"


class PoolType(str, Enum):
    DLMM = "DLMM"
    DAMM_V2 = "DAMM_V2"
    WHIRLPOOL = "Whirlpool"
    CLMM = "CLMM"
    UNKNOWN = "unknown"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    OUT_OF_RANGE = "out_of_range"
    CLOSED = "closed"
    PENDING = "pending"


class RebalanceTrigger(str, Enum):
    PRICE_EXIT = "price_exit"
    YIELD_TARGET = "yield_target"
    TIME_BASED = "time_based"
    MANUAL = "manual"


# ── Position ─────────────────────────────────────────────────────────────


@dataclass
class StrategyConfig:
    """Automation settings attached to a position."""

    target_daily_yield: Optional[float] = None  # percent per day, e.g. 0.4
    auto_rebalance: bool = True
    privacy_enabled: bool = False
    max_slippage_bps: int = 100
    min_rebalance_interval: int = 3600  # seconds

    def validate(self) -> None:
        if self.target_daily_yield is not None:
            if not math.isfinite(self.target_daily_yield) or self.target_daily_yield <= 0:
                raise PositionConfigError(
                    f"target_daily_yield must be a positive percentage, got {self.target_daily_yield}"
                )
        if not 0 <= self.max_slippage_bps <= 10_000:
            raise PositionConfigError(
                f"max_slippage_bps must be within 0..10000, got {self.max_slippage_bps}"
            )
        if self.min_rebalance_interval < 0:
            raise PositionConfigError("min_rebalance_interval cannot be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyConfig":
        try:
            target = data.get("target_daily_yield")
            return cls(
                target_daily_yield=float(target) if target is not None else None,
                auto_rebalance=bool(data.get("auto_rebalance", True)),
                privacy_enabled=bool(data.get("privacy_enabled", False)),
                max_slippage_bps=int(data.get("max_slippage_bps", 100)),
                min_rebalance_interval=int(data.get("min_rebalance_interval", 3600)),
            )
        except (TypeError, ValueError) as e:
            raise PositionConfigError(f"invalid strategy: {e}") from e


@dataclass
class Position:
    """
    A liquidity stake in one pool on one venue.

    Price bounds are quoted as token B per token A (the pool's price).
    ``last_checked_at`` is the only field touched by a cycle that takes
    no action.
    """

    id: str
    owner: str
    dex: DexType
    pool_address: str
    lower_price: float
    upper_price: float
    liquidity: float = 0.0
    token_a_amount: float = 0.0
    token_b_amount: float = 0.0
    unclaimed_fees_a: float = 0.0
    unclaimed_fees_b: float = 0.0
    status: PositionStatus = PositionStatus.ACTIVE
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    created_at: float = 0.0
    last_rebalance_at: Optional[float] = None
    is_private: bool = False
    encrypted_ref: Optional[str] = None
    last_checked_at: Optional[float] = None

    @property
    def key(self) -> tuple:
        return (self.owner, self.id)

    def in_range(self, price: float) -> bool:
        return self.lower_price <= price <= self.upper_price

    def value_in_quote(self, price: float) -> float:
        """Position value in token B units at the given pool price."""
        return self.token_a_amount * price + self.token_b_amount

    def fees_in_quote(self, price: float) -> float:
        return self.unclaimed_fees_a * price + self.unclaimed_fees_b

    def validate(self) -> None:
        """Raise PositionConfigError if any invariant does not hold."""
        if not self.id or not self.owner:
            raise PositionConfigError("position id and owner are required")
        if not self.pool_address:
            raise PositionConfigError(f"position {self.id}: pool_address is required")
        for name in ("lower_price", "upper_price", "liquidity", "token_a_amount",
                     "token_b_amount", "unclaimed_fees_a", "unclaimed_fees_b"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise PositionConfigError(f"position {self.id}: {name} must be a finite value >= 0")
        if self.lower_price <= 0 or self.lower_price >= self.upper_price:
            raise PositionConfigError(
                f"position {self.id}: lower_price ({self.lower_price}) must be positive "
                f"and below upper_price ({self.upper_price})"
            )
        if self.last_rebalance_at is not None and self.last_rebalance_at < self.created_at:
            raise PositionConfigError(
                f"position {self.id}: last_rebalance_at precedes created_at"
            )
        self.strategy.validate()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["dex"] = self.dex.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        """Build and validate a position from a JSON-like mapping.

        Timestamps may be POSIX seconds or ISO-8601 strings.
        """
        try:
            position = cls(
                id=str(data["id"]),
                owner=str(data["owner"]),
                dex=DexType(data["dex"]),
                pool_address=str(data["pool_address"]),
                lower_price=float(data["lower_price"]),
                upper_price=float(data["upper_price"]),
                liquidity=float(data.get("liquidity", 0.0)),
                token_a_amount=float(data.get("token_a_amount", 0.0)),
                token_b_amount=float(data.get("token_b_amount", 0.0)),
                unclaimed_fees_a=float(data.get("unclaimed_fees_a", 0.0)),
                unclaimed_fees_b=float(data.get("unclaimed_fees_b", 0.0)),
                status=PositionStatus(data.get("status", "active")),
                strategy=StrategyConfig.from_dict(data.get("strategy") or {}),
                created_at=_parse_timestamp(data.get("created_at", 0.0)),
                last_rebalance_at=(
                    _parse_timestamp(data["last_rebalance_at"])
                    if data.get("last_rebalance_at") is not None
                    else None
                ),
                is_private=bool(data.get("is_private", False)),
                encrypted_ref=data.get("encrypted_ref"),
            )
        except KeyError as e:
            raise PositionConfigError(f"missing required field: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            if isinstance(e, PositionConfigError):
                raise
            raise PositionConfigError(f"invalid position: {e}") from e
        position.validate()
        return position


def _parse_timestamp(value: Any) -> float:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    return float(value)


# ── Market snapshot ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class PoolInfo:
    """A venue's market data for one pool. Re-fetched each cycle."""

    dex: DexType
    address: str
    token_a_mint: str
    token_b_mint: str
    token_a_symbol: str
    token_b_symbol: str
    current_price: float
    fee_bps: float
    tvl: float
    volume_24h: float
    apr_24h: float
    pool_type: PoolType = PoolType.UNKNOWN
    tick_spacing: Optional[int] = None
    bin_step: Optional[int] = None

    @property
    def pair_label(self) -> str:
        return f"{self.token_a_symbol}/{self.token_b_symbol}"


# ── Verdicts ─────────────────────────────────────────────────────────────


@dataclass
class RebalanceDecision:
    """The engine's verdict for one position in one cycle."""

    should_rebalance: bool
    trigger: RebalanceTrigger
    reason: str
    new_lower_price: Optional[float] = None
    new_upper_price: Optional[float] = None
    target_pool: Optional[PoolInfo] = None
    estimated_gas_cost: float = 0.0  # SOL
    estimated_benefit: float = 0.0  # USD per day
    risk_score: int = 50

    @property
    def is_migration(self) -> bool:
        return self.target_pool is not None


@dataclass(frozen=True)
class MigrationAnalysis:
    profitable: bool
    net_benefit_per_day: float
    break_even_days: float
    reason: str
    current_daily_yield: float = 0.0
    target_daily_yield: float = 0.0
    migration_cost: float = 0.0
    target_pool_address: Optional[str] = None
    target_dex: Optional[DexType] = None


@dataclass(frozen=True)
class FeeSplit:
    """Fee accounting result. Shares always sum exactly to ``amount``."""

    amount: Decimal
    total_fee: Decimal
    to_position: Decimal = Decimal(0)  # deposit: principal that reaches the pool
    to_user: Decimal = Decimal(0)  # performance: claimed fees returned to the owner
    to_treasury: Decimal = Decimal(0)
    to_agent_gas: Decimal = Decimal(0)

    def shares_total(self) -> Decimal:
        return self.to_position + self.to_user + self.to_treasury + self.to_agent_gas


@dataclass
class TxResult:
    """Outcome of a venue write (create/close/rebalance/collect)."""

    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    position: Optional[Position] = None
