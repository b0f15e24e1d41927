#!/usr/bin/env python3
"""
Yield & Range Calculator
========================

Recommends a concentrated-liquidity price range for a target daily yield,
and estimates the yield, rebalance frequency and confidence that go with it.

MODEL (every step is traceable):
──────────────────────────────────
1. Base fee revenue per $ of liquidity per day
     base = volume_24h × (fee_bps / 10 000) / TVL
2. Concentration: a range of relative width W earns ≈ base / W while in
   range; the price is assumed in range 90 % of the time
     gross = base × 0.9 / W
3. Width for a target t (fraction per day), clamped to [1 %, 50 %]
     W = base × 0.9 / t
4. Rebalance frequency from the volatility ratio r = σ_24h / W
     r ≤ 0.5 → 0/day,  0.5 < r ≤ 1 → 0.5/day,  r > 1 → r/day
   Non-decreasing in r, so narrowing the range never lowers it.
5. Net yield subtracts rebalance gas, normalized to a $1 000 position.

Volatility is a fraction (0.05 = 5 % daily stdev). Yields are percentages.
"""

import math
import statistics
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

# ── Constants ────────────────────────────────────────────────────────────

MIN_RANGE_WIDTH = 0.01  # 1%: very tight, lots of rebalancing
MAX_RANGE_WIDTH = 0.50  # 50%: wider than this, yield diminishes
TIME_IN_RANGE = 0.9
REBALANCE_GAS_SOL = 0.001
REFERENCE_POSITION_USD = 1_000.0
BASE_CONFIDENCE = 80


@dataclass(frozen=True)
class YieldCalcInput:
    target_daily_yield: float  # percent per day, e.g. 0.4
    current_price: float
    volatility_24h: float  # fraction, e.g. 0.05
    pool_fee_bps: float
    volume_24h: float
    tvl: float


@dataclass(frozen=True)
class YieldCalcOutput:
    recommended_lower: float
    recommended_upper: float
    range_width_pct: float  # percent of current price
    estimated_daily_yield: float  # percent per day, net of rebalance gas
    estimated_rebalances_per_day: float
    confidence: int  # 0–100


def _finite_positive(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


class YieldCalculator:
    """Pure, stateless range/yield math."""

    @staticmethod
    def calculate(inp: YieldCalcInput, sol_price_usd: float = 150.0) -> YieldCalcOutput:
        """
        Recommend a range centered on the current price.

        Degenerate market inputs (volatility, volume or TVL not positive,
        non-positive target) yield the widest allowed range with
        confidence 0 instead of an error.

        Raises:
            ValueError: if current_price is not a positive finite number.
        """
        if not _finite_positive(inp.current_price):
            raise ValueError(f"current_price must be positive, got {inp.current_price}")

        degenerate = not (
            _finite_positive(inp.tvl)
            and _finite_positive(inp.volume_24h)
            and _finite_positive(inp.volatility_24h)
            and _finite_positive(inp.target_daily_yield)
            and _finite_positive(inp.pool_fee_bps)
        )

        if degenerate:
            base = 0.0
            width = MAX_RANGE_WIDTH
            volatility = inp.volatility_24h if _finite_positive(inp.volatility_24h) else 0.0
        else:
            base = YieldCalculator.base_fee_revenue(inp.volume_24h, inp.pool_fee_bps, inp.tvl)
            width = base * TIME_IN_RANGE / (inp.target_daily_yield / 100)
            width = min(max(width, MIN_RANGE_WIDTH), MAX_RANGE_WIDTH)
            volatility = inp.volatility_24h

        lower, upper = YieldCalculator.range_for_width(inp.current_price, width)
        rebalances = YieldCalculator.estimate_rebalances_per_day(volatility, width)
        daily_yield = YieldCalculator.estimate_daily_yield(base, width, rebalances, sol_price_usd)

        if degenerate:
            confidence = 0
        else:
            confidence = BASE_CONFIDENCE
            if width in (MIN_RANGE_WIDTH, MAX_RANGE_WIDTH):
                confidence -= 20  # constrained by the clamp
            if volatility / width > 2:
                confidence -= 15  # price moves outpace the range
            if inp.volume_24h < inp.tvl * 0.1:
                confidence -= 10  # thin volume, unreliable fee data
            confidence = max(0, min(100, confidence))

        return YieldCalcOutput(
            recommended_lower=lower,
            recommended_upper=upper,
            range_width_pct=width * 100,
            estimated_daily_yield=daily_yield,
            estimated_rebalances_per_day=rebalances,
            confidence=confidence,
        )

    @staticmethod
    def base_fee_revenue(volume_24h: float, fee_bps: float, tvl: float) -> float:
        """Fee revenue per $ of full-range liquidity per day (fraction)."""
        if tvl <= 0 or volume_24h <= 0 or fee_bps <= 0:
            return 0.0
        return volume_24h * (fee_bps / 10_000) / tvl

    @staticmethod
    def range_for_width(current_price: float, width: float) -> Tuple[float, float]:
        """Symmetric bounds price × (1 ± W/2). W is clamped to the allowed band."""
        width = min(max(width, MIN_RANGE_WIDTH), MAX_RANGE_WIDTH)
        half = width / 2
        return current_price * (1 - half), current_price * (1 + half)

    @staticmethod
    def estimate_rebalances_per_day(volatility: float, width: float) -> float:
        if width <= 0 or not _finite_positive(volatility):
            return 0.0
        ratio = volatility / width
        if ratio > 1:
            return ratio
        if ratio > 0.5:
            return 0.5
        return 0.0

    @staticmethod
    def estimate_daily_yield(
        base_revenue: float, width: float, rebalances_per_day: float, sol_price_usd: float
    ) -> float:
        """Net daily yield in percent for a $1 000 reference position."""
        gross = base_revenue / width * TIME_IN_RANGE if width > 0 else 0.0
        gas_usd = REBALANCE_GAS_SOL * max(sol_price_usd, 0.0) * rebalances_per_day
        return (gross - gas_usd / REFERENCE_POSITION_USD) * 100

    @staticmethod
    def is_rebalance_profitable(
        current_yield: float,
        expected_yield: float,
        gas_cost_sol: float,
        position_value_usd: float,
        sol_price_usd: float = 150.0,
        days_to_breakeven: float = 2.0,
    ) -> bool:
        """True if the yield gain repays the gas within ``days_to_breakeven``."""
        daily_benefit = position_value_usd * (expected_yield - current_yield) / 100
        if daily_benefit <= 0:
            return False
        return gas_cost_sol * sol_price_usd / daily_benefit <= days_to_breakeven

    @staticmethod
    def adjust_range_for_momentum(
        lower: float, upper: float, price_change_24h: float, momentum: str = "neutral"
    ) -> Tuple[float, float]:
        """Shift the range by 10 % of its width toward a strong (>2 %) trend."""
        shift = (upper - lower) * 0.1
        if momentum == "bullish" and price_change_24h > 2:
            return lower + shift, upper + shift
        if momentum == "bearish" and price_change_24h < -2 and lower - shift > 0:
            return lower - shift, upper - shift
        return lower, upper

    @staticmethod
    def estimate_volatility(prices: Sequence[float]) -> Optional[float]:
        """Stdev of simple returns over a price series; None if too short."""
        returns = [
            (b - a) / a for a, b in zip(prices, prices[1:]) if a > 0
        ]
        if len(returns) < 2:
            return None
        return statistics.pstdev(returns)


def calculate_risk_score(
    current_price: float,
    lower_price: float,
    upper_price: float,
    last_rebalance_at: Optional[float],
    now: float,
) -> int:
    """
    Position risk on a 0–100 scale.

      base 50
      +20  price outside the range
      +15  range narrower than 5 % of price
      −10  rebalanced within the last hour
    """
    risk = 50
    if current_price < lower_price or current_price > upper_price:
        risk += 20
    if current_price > 0 and (upper_price - lower_price) / current_price < 0.05:
        risk += 15
    if last_rebalance_at is not None and now - last_rebalance_at < 3600:
        risk -= 10
    return max(0, min(100, risk))


def recenter_range(lower: float, upper: float, current_price: float) -> Dict[str, float]:
    """Keep the range's relative width, centered on ``current_price``."""
    mid = (lower + upper) / 2
    ratio = (upper - lower) / mid if mid > 0 else MAX_RANGE_WIDTH
    new_lower, new_upper = YieldCalculator.range_for_width(current_price, ratio)
    return {"lower": new_lower, "upper": new_upper}
