#!/usr/bin/env python3
"""
LP Agent -- Concentrated Liquidity Rebalancing Engine
======================================================

Decision and scheduling engine for concentrated-liquidity positions on
Solana DEXes: Meteora DLMM, Orca Whirlpools, Raydium CLMM.

Usage:
  python run.py range   --price 150 --target 0.4 --volume 2e6 --tvl 5e6   Recommend a range
  python run.py fees    1000 --kind performance                           Fee split
  python run.py migrate --current-apr 20 --target-apr 60 --tvl 80000 --value 10000
  python run.py scout   SOL/USDC                                          Best pools across venues
  python run.py price   SOL JUP BONK                                      USD prices
  python run.py monitor positions.json --cycles 1                         Dry-run the scheduler
  python run.py info                                                      System overview

Sources:
  Meteora DLMM API : https://docs.meteora.ag/
  Orca API         : https://dev.orca.so/
  Raydium API v3   : https://api-v3.raydium.io/docs/
  CoinGecko API    : https://docs.coingecko.com/
"""

import sys
import asyncio
import argparse
from pathlib import Path

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lp_agent.central_config import PROJECT_VERSION  # noqa: E402
from lp_agent.commands import (  # noqa: E402
    cmd_fees,
    cmd_info,
    cmd_migrate,
    cmd_monitor,
    cmd_price,
    cmd_range,
    cmd_scout,
)
from lp_agent.logging_utils import setup_logging  # noqa: E402
from lp_agent.models import PositionConfigError  # noqa: E402


# ── CLI Parser ────────────────────────────────────────────────────────────


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lp-agent",
        description=f"LP Agent v{PROJECT_VERSION} — Concentrated Liquidity Rebalancing Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py range   --price 150 --target 0.4 --volume 2000000 --tvl 5000000
  python run.py fees    1.0                                   Deposit fee on 1 SOL
  python run.py fees    1000 --kind performance               Performance fee split
  python run.py migrate --current-apr 20 --target-apr 60 --tvl 80000 --value 10000
  python run.py scout   SOL/USDC --sort tvl                   Rank by TVL
  python run.py price   SOL JUP
  python run.py monitor positions.json --cycles 0             Run until Ctrl+C

Supported venues:
  meteora  ☄️ Meteora DLMM
  orca     🐋 Orca Whirlpools
  raydium  ⚡ Raydium CLMM

Environment (.env supported):
  NVIDIA_API_KEY, AI_BASE_URL, AI_MODEL     Advisory reasoner (optional)
  SOLANA_RPC_URL                            Opt-in registry reads
  CHECK_INTERVAL_SECONDS, CALL_TIMEOUT_SECONDS
  DEPOSIT_FEE_BPS, PERFORMANCE_FEE_BPS, AGENT_GAS_RESERVE_BPS
  LP_AGENT_LOG_LEVEL                        DEBUG, INFO, WARNING
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"LP Agent v{PROJECT_VERSION}"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Debug logging"
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    range_p = sub.add_parser("range", help="Recommend a price range for a target yield")
    range_p.add_argument("--price", type=float, required=True, help="Current pool price")
    range_p.add_argument(
        "--target", type=float, default=0.4, help="Target daily yield in percent (default: 0.4)"
    )
    range_p.add_argument(
        "--volatility", type=float, default=0.05, help="24h volatility as a fraction (default: 0.05)"
    )
    range_p.add_argument("--fee-bps", type=float, default=30, help="Pool fee in bps (default: 30)")
    range_p.add_argument("--volume", type=float, required=True, help="24h volume in USD")
    range_p.add_argument("--tvl", type=float, required=True, help="Pool TVL in USD")
    range_p.add_argument(
        "--sol-price", type=float, default=150.0, help="SOL price in USD (default: 150)"
    )

    fees_p = sub.add_parser("fees", help="Show a fee split")
    fees_p.add_argument("amount", help="Amount (decimal string, e.g. 1.0)")
    fees_p.add_argument(
        "--kind",
        choices=["deposit", "performance"],
        default="deposit",
        help="deposit or performance (default: deposit)",
    )

    mig_p = sub.add_parser("migrate", help="Cost-benefit of moving to another pool")
    mig_p.add_argument("--current-apr", type=float, required=True, help="Current pool APR %%")
    mig_p.add_argument("--target-apr", type=float, required=True, help="Target pool APR %%")
    mig_p.add_argument("--tvl", type=float, required=True, help="Target pool TVL in USD")
    mig_p.add_argument("--value", type=float, required=True, help="Position value in USD")
    mig_p.add_argument(
        "--sol-price", type=float, default=150.0, help="SOL price in USD (default: 150)"
    )

    scout_p = sub.add_parser("scout", help="Find pools for a token pair across venues")
    scout_p.add_argument("pair", help="Token pair, e.g. SOL/USDC (symbols or mints)")
    scout_p.add_argument(
        "--sort",
        choices=["score", "apr", "tvl", "volume"],
        default="score",
        help="Sort by: score, apr, tvl, volume (default: score)",
    )
    scout_p.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")

    price_p = sub.add_parser("price", help="USD token prices (CoinGecko)")
    price_p.add_argument("symbols", nargs="+", help="Token symbols, e.g. SOL JUP")

    mon_p = sub.add_parser("monitor", help="Run the scheduler on a positions file (dry run)")
    mon_p.add_argument("positions", help="JSON file with a list of positions")
    mon_p.add_argument(
        "--cycles", type=int, default=1, help="Cycles to run; 0 runs until Ctrl+C (default: 1)"
    )
    mon_p.add_argument(
        "--interval", type=float, default=None, help="Seconds between cycles (default: from env or 60)"
    )
    mon_p.add_argument(
        "--on-chain-opt-in", action="store_true", help="Read opt-in accounts over Solana RPC"
    )

    sub.add_parser("info", help="System & architecture info")

    return parser


# ── Main ──────────────────────────────────────────────────────────────────


def main() -> int:
    parser = create_parser()
    args = parser.parse_args()
    setup_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == "info":
            cmd_info()
            return 0
        if args.command == "range":
            cmd_range(
                price=args.price,
                target=args.target,
                volatility=args.volatility,
                fee_bps=args.fee_bps,
                volume=args.volume,
                tvl=args.tvl,
                sol_price=args.sol_price,
            )
            return 0
        if args.command == "fees":
            cmd_fees(args.amount, kind=args.kind)
            return 0
        if args.command == "migrate":
            ok = cmd_migrate(
                current_apr=args.current_apr,
                target_apr=args.target_apr,
                target_tvl=args.tvl,
                value=args.value,
                sol_price=args.sol_price,
            )
            return 0 if ok else 1
        if args.command == "scout":
            asyncio.run(cmd_scout(pair=args.pair, sort=args.sort, limit=args.limit))
            return 0
        if args.command == "price":
            asyncio.run(cmd_price(args.symbols))
            return 0
        if args.command == "monitor":
            asyncio.run(
                cmd_monitor(
                    args.positions,
                    cycles=args.cycles,
                    interval=args.interval,
                    on_chain_opt_in=args.on_chain_opt_in,
                )
            )
            return 0
    except (PositionConfigError, ValueError) as e:
        print(f"❌ {e}")
        return 2

    parser.print_help()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)
