#!/usr/bin/env python3
"""
Cost-Benefit Analyzer — is an action worth its cost?
=====================================================

Two pure, deterministic checks (no network calls):

1. ``analyze_migration`` — move a position to another pool/venue.
     daily yield      = APR / 100 / 365 × position value
     slippage         = min(position/TVL × 0.5, 5 %) × value × 2 legs
                        (5 % × value when TVL ≤ 0)
     cost             = tx cost (two transactions, in USD) + slippage
     break-even days  = cost / yield diff   (∞ if diff ≤ 0)
     net benefit/day  = yield diff − cost / 7
     profitable iff break-even < 7 d AND net > $0.50/day AND TVL ≥ $50k

2. ``analyze_in_pool_rebalance`` — re-range within the same pool.
     justified iff the daily yield gain repays gas × safety multiple
     within the break-even window.

Thresholds come from ``PolicyConfig`` and default to the values above.
"""

import math
from dataclasses import dataclass
from typing import Optional

from lp_agent.central_config import PolicyConfig
from lp_agent.models import MigrationAnalysis, PoolInfo

_DEFAULT_POLICY = PolicyConfig()


def estimate_slippage_cost_usd(position_value_usd: float, pool_tvl_usd: float) -> float:
    """Slippage for closing and reopening, growing with position share of TVL."""
    if pool_tvl_usd <= 0:
        return position_value_usd * 0.05  # 5% worst case
    ratio = position_value_usd / pool_tvl_usd
    slippage_pct = min(ratio * 0.5, 0.05)
    return position_value_usd * slippage_pct * 2


def _fmt_days(days: float) -> str:
    return "∞" if math.isinf(days) else f"{days:.1f}"


def analyze_migration(
    current_pool: PoolInfo,
    target_pool: PoolInfo,
    position_value_usd: float,
    sol_price_usd: float,
    policy: PolicyConfig = _DEFAULT_POLICY,
) -> MigrationAnalysis:
    target_tvl = target_pool.tvl
    short_addr = target_pool.address[:8]

    if target_tvl < policy.min_target_tvl_usd:
        return MigrationAnalysis(
            profitable=False,
            net_benefit_per_day=0.0,
            break_even_days=math.inf,
            reason=(
                f"Target pool TVL (${target_tvl:,.0f}) below minimum "
                f"(${policy.min_target_tvl_usd:,.0f})"
            ),
            target_pool_address=target_pool.address,
            target_dex=target_pool.dex,
        )

    current_apr = current_pool.apr_24h
    target_apr = target_pool.apr_24h
    current_daily = current_apr / 100 / 365 * position_value_usd
    target_daily = target_apr / 100 / 365 * position_value_usd
    daily_diff = target_daily - current_daily

    tx_cost_usd = policy.migration_tx_cost_sol * sol_price_usd
    slippage_cost = estimate_slippage_cost_usd(position_value_usd, target_tvl)
    total_cost = tx_cost_usd + slippage_cost

    break_even = total_cost / daily_diff if daily_diff > 0 else math.inf
    net_benefit = daily_diff - total_cost / policy.max_break_even_days

    profitable = (
        break_even < policy.max_break_even_days
        and net_benefit > policy.min_net_benefit_per_day_usd
        and target_tvl >= policy.min_target_tvl_usd
    )

    if profitable:
        reason = (
            f"Migration to {target_pool.dex.value} pool {short_addr}… recommended. "
            f"APR improves from {current_apr:.1f}% → {target_apr:.1f}%. "
            f"Net gain: ${net_benefit:.2f}/day after costs. "
            f"Break-even in {break_even:.1f} days. "
            f"Migration cost: ${total_cost:.2f} (tx: ${tx_cost_usd:.2f}, slippage: ${slippage_cost:.2f})."
        )
    else:
        failed = []
        if daily_diff <= 0:
            failed.append(
                f"target APR ({target_apr:.1f}%) not higher than current ({current_apr:.1f}%)"
            )
        if break_even >= policy.max_break_even_days:
            failed.append(
                f"break-even {_fmt_days(break_even)} days exceeds "
                f"{policy.max_break_even_days:g}-day limit"
            )
        if net_benefit <= policy.min_net_benefit_per_day_usd:
            failed.append(
                f"net benefit ${net_benefit:.2f}/day below "
                f"${policy.min_net_benefit_per_day_usd:g} threshold"
            )
        reason = (
            f"Migration to {target_pool.dex.value} pool {short_addr}… not recommended: "
            + "; ".join(failed) + "."
        )

    return MigrationAnalysis(
        profitable=profitable,
        net_benefit_per_day=round(net_benefit, 4),
        break_even_days=break_even if math.isinf(break_even) else round(break_even, 2),
        reason=reason,
        current_daily_yield=current_daily,
        target_daily_yield=target_daily,
        migration_cost=total_cost,
        target_pool_address=target_pool.address,
        target_dex=target_pool.dex,
    )


@dataclass(frozen=True)
class RebalanceEconomics:
    justified: bool
    daily_benefit_usd: float
    cost_usd: float
    break_even_days: float
    reason: str


def analyze_in_pool_rebalance(
    current_yield_pct: float,
    expected_yield_pct: float,
    position_value_usd: float,
    gas_cost_sol: float,
    sol_price_usd: float,
    policy: PolicyConfig = _DEFAULT_POLICY,
) -> RebalanceEconomics:
    """Yields are daily percentages; an out-of-range position earns 0."""
    daily_benefit = (expected_yield_pct - current_yield_pct) / 100 * position_value_usd
    cost = gas_cost_sol * sol_price_usd
    break_even = cost / daily_benefit if daily_benefit > 0 else math.inf
    justified = (
        daily_benefit > 0
        and cost * policy.gas_safety_multiple <= daily_benefit * policy.max_break_even_days
    )
    if justified:
        reason = (
            f"rebalance gains ${daily_benefit:.2f}/day for ${cost:.2f} gas "
            f"(break-even {_fmt_days(break_even)} days)"
        )
    elif daily_benefit <= 0:
        reason = (
            f"expected yield {expected_yield_pct:.3f}%/day does not beat "
            f"current {current_yield_pct:.3f}%/day"
        )
    else:
        reason = (
            f"gain ${daily_benefit:.2f}/day does not cover ${cost:.2f} gas × "
            f"{policy.gas_safety_multiple:g} within {policy.max_break_even_days:g} days"
        )
    return RebalanceEconomics(justified, daily_benefit, cost, break_even, reason)


def best_migration(
    current_pool: PoolInfo,
    candidates,
    position_value_usd: float,
    sol_price_usd: float,
    policy: PolicyConfig = _DEFAULT_POLICY,
) -> Optional[MigrationAnalysis]:
    """The most beneficial profitable analysis among ``candidates``, if any."""
    best: Optional[MigrationAnalysis] = None
    for pool in candidates:
        if pool.address == current_pool.address:
            continue
        analysis = analyze_migration(current_pool, pool, position_value_usd, sol_price_usd, policy)
        if analysis.profitable and (best is None or analysis.net_benefit_per_day > best.net_benefit_per_day):
            best = analysis
    return best
