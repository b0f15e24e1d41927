"""
LP Agent — Command Implementations
===================================

All CLI command handlers live here, keeping run.py as a thin
argparse dispatcher. Each public function corresponds to a
subcommand (info, range, fees, migrate, scout, price, monitor).
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path

from lp_agent.central_config import PROJECT_NAME, PROJECT_VERSION, AgentConfig
from lp_agent.dex_registry import DEX_REGISTRY, AdapterRegistry, get_dex_icon
from lp_agent.models import DexType, PoolInfo, Position, PositionConfigError
from lp_agent.optin_registry import OptInStatus, StaticOptInRegistry


# ── Formatting ───────────────────────────────────────────────────────────


def format_pool_table(pools: list[dict], title: str) -> str:
    """Format aggregator results (``pool_summary`` dicts) for CLI display."""
    if not pools:
        return f"No concentrated-liquidity pools found for {title}.\n💡 Check the token symbols or mints."

    lines = [f"{'=' * 92}", f"  🔭 {title} — {len(pools)} pools", f"{'=' * 92}", ""]
    hdr = f"  {'#':>2} {'DEX':10s} {'Type':10s} {'Fee bps':>8s} {'APR%':>8s} {'TVL':>14s} {'Vol 24h':>14s} {'Address':14s}"
    lines.append(hdr)
    lines.append(f"  {'-' * (len(hdr) - 2)}")
    for i, p in enumerate(pools, 1):
        apr = p.get("estimated_apr", p["apr_24h"])
        lines.append(
            f"  {i:>2} {get_dex_icon(p['dex'])} {p['dex']:8s} {p['pool_type'][:10]:10s} "
            f"{p['fee_rate'] * 10_000:8.1f} {apr:8.1f} ${p['tvl']:>13,.0f} "
            f"${p['volume_24h']:>13,.0f} {p['address'][:12]}…"
        )
    lines.append(f"\n{'=' * 92}")
    lines.append("  ⚠️  APR is a 24h snapshot, not a forecast")
    lines.append(f"{'=' * 92}")
    return "\n".join(lines)


def _parse_pair(pair: str) -> tuple[str, str]:
    parts = [p.strip() for p in pair.replace("-", "/").split("/") if p.strip()]
    if len(parts) != 2:
        raise ValueError(f"expected a pair like SOL/USDC, got {pair!r}")
    return parts[0], parts[1]


# ── Commands ─────────────────────────────────────────────────────────────


def cmd_info() -> None:
    """Display system and architecture information."""
    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print("🔗 Protocol   : Solana concentrated liquidity (DLMM, Whirlpool, CLMM)")
    print("🧠 Engine     : range calculator, fee accountant, cost-benefit analyzer")
    print("⏱️  Scheduler  : per-position lock, opt-in gate, cooldown")
    print()
    print("📁 Files:")
    print("   run.py                — CLI entry point")
    print("   yield_calculator.py   — range / yield / rebalance-frequency model")
    print("   fee_accountant.py     — exact Decimal fee splits")
    print("   migration_analyzer.py — break-even and net-benefit verdicts")
    print("   advisory_reasoner.py  — optional language-model opinion")
    print("   pool_aggregator.py    — cross-venue pool discovery")
    print("   position_monitor.py   — rebalancing scheduler")
    print("   lp_agent/             — config, models, adapters, oracle, opt-in registry")
    print()
    print("🔄 Supported venues:")
    for slug, dex in DEX_REGISTRY.items():
        types = ", ".join(t.value for t in dex["pool_types"])
        print(f"   {dex['icon']} {dex['name']:<18} — {types}")
    print()
    print("🔗 Quick Start:")
    print("   python run.py range  --price 150 --target 0.4 --volume 2000000 --tvl 5000000")
    print("   python run.py fees   1000 --kind performance")
    print("   python run.py scout  SOL/USDC")
    print("   python run.py monitor positions.json --cycles 1")


def cmd_range(
    price: float,
    target: float,
    volatility: float,
    fee_bps: float,
    volume: float,
    tvl: float,
    sol_price: float = 150.0,
) -> None:
    """Recommend a range for a target daily yield."""
    from yield_calculator import YieldCalcInput, YieldCalculator

    out = YieldCalculator.calculate(
        YieldCalcInput(
            target_daily_yield=target,
            current_price=price,
            volatility_24h=volatility,
            pool_fee_bps=fee_bps,
            volume_24h=volume,
            tvl=tvl,
        ),
        sol_price_usd=sol_price,
    )
    print(f"\n📐 Range for {target:g}%/day at price {price:g}")
    print("=" * 55)
    print(f"   Lower bound        : {out.recommended_lower:.6f}")
    print(f"   Upper bound        : {out.recommended_upper:.6f}")
    print(f"   Width              : {out.range_width_pct:.2f}%")
    print(f"   Est. daily yield   : {out.estimated_daily_yield:.4f}%")
    print(f"   Rebalances / day   : {out.estimated_rebalances_per_day:.2f}")
    print(f"   Confidence         : {out.confidence}/100")


def cmd_fees(amount: str, kind: str = "deposit") -> None:
    """Show the deposit or performance fee split for an amount."""
    from fee_accountant import FeeAccountant

    accountant = FeeAccountant(AgentConfig.from_env().fees)
    if kind == "performance":
        split = accountant.calculate_performance_fee(amount)
        print(f"\n💰 Performance fee on {split.amount}")
        print("=" * 55)
        print(f"   Total fee          : {split.total_fee}")
        print(f"   → Treasury         : {split.to_treasury}")
        print(f"   → Agent gas        : {split.to_agent_gas}")
        print(f"   → User             : {split.to_user}")
    else:
        split = accountant.calculate_deposit_fee(amount)
        print(f"\n💰 Deposit fee on {split.amount}")
        print("=" * 55)
        print(f"   Total fee          : {split.total_fee}")
        print(f"   → Treasury         : {split.to_treasury}")
        print(f"   → Position         : {split.to_position}")
    print(f"   Sum of shares      : {split.shares_total()}")


def cmd_migrate(
    current_apr: float,
    target_apr: float,
    target_tvl: float,
    value: float,
    sol_price: float = 150.0,
) -> bool:
    """Run the cost-benefit analyzer on two hypothetical pools."""
    from migration_analyzer import analyze_migration

    def _pool(address: str, apr: float, tvl: float) -> PoolInfo:
        return PoolInfo(
            dex=DexType.ORCA, address=address, token_a_mint="", token_b_mint="",
            token_a_symbol="A", token_b_symbol="B", current_price=1.0, fee_bps=30,
            tvl=tvl, volume_24h=0.0, apr_24h=apr,
        )

    analysis = analyze_migration(
        _pool("current-pool", current_apr, target_tvl),
        _pool("target-pool", target_apr, target_tvl),
        position_value_usd=value,
        sol_price_usd=sol_price,
        policy=AgentConfig.from_env().policy,
    )
    icon = "✅" if analysis.profitable else "❌"
    print(f"\n{icon} Migration {'profitable' if analysis.profitable else 'not profitable'}")
    print("=" * 55)
    print(f"   Net benefit / day  : ${analysis.net_benefit_per_day:,.2f}")
    print(f"   Break-even         : {analysis.break_even_days} days")
    print(f"   Migration cost     : ${analysis.migration_cost:,.2f}")
    print(f"   Reason             : {analysis.reason}")
    return analysis.profitable


async def cmd_scout(pair: str, sort: str = "score", limit: int = 10) -> None:
    """Search every venue for pools trading the pair."""
    from lp_agent.dex_adapters import default_adapters
    from pool_aggregator import Aggregator, pool_summary

    token_a, token_b = _parse_pair(pair)
    print(f"\n🔭 Searching for {token_a}/{token_b} pools across {len(DEX_REGISTRY)} venues...")

    aggregator = Aggregator(AdapterRegistry(default_adapters()))
    if sort == "score":
        rows = await aggregator.get_best_pools(token_a, token_b, limit=limit)
    else:
        pools = await aggregator.find_pools_for_pair(token_a, token_b)
        pools.sort(key=Aggregator.sort_keys[sort], reverse=True)
        rows = [pool_summary(p) for p in pools[:limit]]
    print(format_pool_table(rows, f"{token_a}/{token_b}"))


async def cmd_price(symbols: list[str]) -> None:
    """Print USD prices from the oracle."""
    from lp_agent.price_oracle import PriceOracle

    prices = await PriceOracle().get_prices(symbols)
    print(f"\n💵 Prices · {datetime.now():%Y-%m-%d %H:%M:%S}")
    print("=" * 35)
    for sym in sorted(prices):
        price = prices[sym]
        shown = f"${price:,.6f}" if price else "unavailable"
        print(f"   {sym:<10} {shown}")


def load_positions_file(
    path: Path, default_cross_pool_allowed: bool = False
) -> tuple[list[Position], StaticOptInRegistry]:
    """
    Read a positions file: a JSON list of position objects. An optional
    ``opt_in`` object per entry (``enabled``, ``cross_pool_allowed``)
    populates a static opt-in registry; a missing ``cross_pool_allowed``
    takes ``default_cross_pool_allowed``.

    Raises:
        PositionConfigError: if any entry is malformed.
    """
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, ValueError) as e:
        raise PositionConfigError(f"cannot read positions file {path}: {e}") from e
    if not isinstance(raw, list):
        raise PositionConfigError("positions file must contain a JSON list")

    positions = []
    registry = StaticOptInRegistry()
    for entry in raw:
        if not isinstance(entry, dict):
            raise PositionConfigError("each position must be a JSON object")
        position = Position.from_dict(entry)
        positions.append(position)
        opt_in = entry.get("opt_in")
        if opt_in:
            registry.set(
                position.owner,
                position.id,
                OptInStatus(
                    enabled=bool(opt_in.get("enabled", False)),
                    cross_pool_allowed=bool(opt_in.get("cross_pool_allowed", default_cross_pool_allowed)),
                ),
            )
    return positions, registry


async def cmd_monitor(
    positions_file: str,
    cycles: int = 1,
    interval: float | None = None,
    on_chain_opt_in: bool = False,
) -> None:
    """
    Run the scheduler against a positions file with a dry-run executor.

    With ``on_chain_opt_in`` the opt-in gate reads the RebalanceConfig
    accounts over RPC instead of the file's ``opt_in`` entries.
    """
    from dataclasses import replace

    from advisory_reasoner import AdvisoryReasoner
    from fee_accountant import FeeAccountant
    from lp_agent.dex_adapters import DryRunExecutor, default_adapters
    from lp_agent.optin_registry import OnChainOptInRegistry
    from lp_agent.price_oracle import PriceOracle
    from pool_aggregator import Aggregator
    from position_monitor import PositionMonitor

    agent_config = AgentConfig.from_env()
    policy = agent_config.policy
    if interval is not None:
        policy = replace(policy, check_interval_seconds=interval)

    positions, opt_in = load_positions_file(Path(positions_file), policy.default_cross_pool_allowed)
    if on_chain_opt_in:
        opt_in = OnChainOptInRegistry.from_config(agent_config)
    executor = DryRunExecutor()
    registry = AdapterRegistry(default_adapters(executor))
    monitor = PositionMonitor(
        registry,
        opt_in,
        policy=policy,
        aggregator=Aggregator(registry, timeout=policy.call_timeout_seconds),
        reasoner=AdvisoryReasoner.from_config(agent_config),
        oracle=PriceOracle(),
        fee_accountant=FeeAccountant(agent_config.fees),
    )
    for position in positions:
        monitor.add_position(position)

    print(f"\n⏱️  Monitoring {len(positions)} positions (dry run)")
    if cycles > 0:
        for i in range(cycles):
            if i:
                await asyncio.sleep(policy.check_interval_seconds)
            await monitor.run_cycle()
    else:
        await monitor.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await monitor.stop()
            await monitor.wait_idle()

    print("\n📋 Positions")
    print("=" * 70)
    for row in monitor.status_report():
        pos = row["position"]
        decision = row["last_decision"]
        print(f"   {get_dex_icon(pos['dex'])} {pos['id'][:20]:<20} {row['status']:<13} "
              f"[{pos['lower_price']:.6f}, {pos['upper_price']:.6f}]")
        if decision:
            print(f"      ↳ {decision['reason']}")
    print("\n🗒️  Activity (newest first)")
    print("=" * 70)
    for entry in monitor.activity.get_all()[:20]:
        print(f"   {datetime.fromtimestamp(entry.timestamp):%H:%M:%S} {entry.type.value:<16} {entry.message}")
    print(f"\n🧪 Dry-run submissions: {len(executor.submissions)}")
