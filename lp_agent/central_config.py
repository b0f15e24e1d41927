"""
Project Configuration — API endpoints, version, policy constants
=================================================================

Contains venue API configuration, fee/policy defaults and project metadata.
Env-backed values are read through python-dotenv; shell variables take
precedence over ``.env``.

Sources:
  Meteora DLMM API : https://dlmm-api.meteora.ag
  Orca API         : https://api.mainnet.orca.so
  Raydium API v3   : https://api-v3.raydium.io
  CoinGecko API    : https://www.coingecko.com/en/api/documentation
"""

import os
import re
from dataclasses import dataclass, field, replace
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from types import MappingProxyType
from typing import Optional

from dotenv import load_dotenv

# Version: single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("lp-agent")
except PackageNotFoundError:
    # Dev / CI: package not installed, read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "LP Agent"

BPS_DENOMINATOR = 10_000

# Well-known SPL mints, so pairs can be given by symbol: immutable mapping
TOKEN_MINTS = MappingProxyType(
    {
        "SOL": "So11111111111111111111111111111111111111112",
        "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
        "JUP": "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN",
        "BONK": "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
        "RAY": "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R",
        "ORCA": "orcaEKTdK7LKz57vaAYr9QeNsVEPfiu6QeMU1kektZE",
        "MSOL": "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So",
    }
)


def resolve_mint(token: str) -> str:
    """Map a known symbol to its mint; anything else is taken as a mint."""
    return TOKEN_MINTS.get(token.strip().upper(), token.strip())


@dataclass(frozen=True)
class VenueAPI:
    """Public REST endpoints of the supported concentrated-liquidity venues."""

    METEORA_BASE_URL: str = "https://dlmm-api.meteora.ag"
    ORCA_BASE_URL: str = "https://api.mainnet.orca.so"
    RAYDIUM_BASE_URL: str = "https://api-v3.raydium.io"

    TIMEOUT_SECONDS: int = 15

    @classmethod
    def meteora_pairs_url(cls) -> str:
        return f"{cls.METEORA_BASE_URL}/pair/all"

    @classmethod
    def meteora_pair_url(cls, address: str) -> str:
        return f"{cls.METEORA_BASE_URL}/pair/{address}"

    @classmethod
    def orca_whirlpools_url(cls) -> str:
        return f"{cls.ORCA_BASE_URL}/v1/whirlpool/list"

    @classmethod
    def orca_whirlpool_url(cls, address: str) -> str:
        return f"{cls.ORCA_BASE_URL}/v1/whirlpool/{address}"

    @classmethod
    def raydium_pools_by_mint_url(cls, mint_a: str, mint_b: str) -> str:
        """URL listing pools for a mint pair, largest first."""
        return (
            f"{cls.RAYDIUM_BASE_URL}/pools/info/mint?mint1={mint_a}&mint2={mint_b}"
            "&poolType=all&poolSortField=default&sortType=desc&pageSize=100&page=1"
        )

    @classmethod
    def raydium_pool_url(cls, address: str) -> str:
        return f"{cls.RAYDIUM_BASE_URL}/pools/info/ids?ids={address}"


@dataclass(frozen=True)
class CoinGeckoAPI:
    """CoinGecko simple-price endpoint (free tier, no key)."""

    BASE_URL: str = "https://api.coingecko.com/api/v3"
    TIMEOUT_SECONDS: int = 10
    CACHE_TTL_SECONDS: int = 60

    # Symbol → CoinGecko id: immutable mapping
    TOKEN_IDS = MappingProxyType(
        {
            "SOL": "solana",
            "USDC": "usd-coin",
            "USDT": "tether",
            "JUP": "jupiter-exchange-solana",
            "RAY": "raydium",
            "ORCA": "orca",
            "BONK": "bonk",
            "WIF": "dogwifcoin",
            "JTO": "jito-governance-token",
            "PYTH": "pyth-network",
            "MSOL": "msol",
            "JITOSOL": "jito-staked-sol",
            "BSOL": "blazestake-staked-sol",
            "W": "wormhole",
            "TNSR": "tensor",
        }
    )

    @classmethod
    def get_simple_price_url(cls, ids: list[str]) -> str:
        return f"{cls.BASE_URL}/simple/price?ids={','.join(ids)}&vs_currencies=usd"


@dataclass(frozen=True)
class SolanaRPC:
    """Solana JSON-RPC endpoint and the on-chain opt-in program."""

    DEFAULT_URL: str = "https://api.mainnet-beta.solana.com"
    TIMEOUT_SECONDS: int = 10
    OPTIN_PROGRAM_ID: str = "2ro3VBKvqtc86DJVMnZETHMGAtjYFipZwdMFgtZGWscx"
    OPTIN_SEED: bytes = b"rebalance"


@dataclass(frozen=True)
class AdvisoryAPI:
    """OpenAI-compatible chat completions endpoint used for advisory opinions."""

    DEFAULT_BASE_URL: str = "https://integrate.api.nvidia.com/v1"
    DEFAULT_MODEL: str = "moonshotai/kimi-k2.5"
    TEMPERATURE: float = 0.3
    MAX_TOKENS: int = 300


# ── Policy ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FeeConfig:
    """Protocol fee rules, in basis points."""

    deposit_fee_bps: int = 10  # 0.1% of deposits
    performance_fee_bps: int = 500  # 5% of claimed fees
    agent_gas_reserve_bps: int = 200  # 2% of the performance fee
    treasury_address: str = ""

    def __post_init__(self):
        for name in ("deposit_fee_bps", "performance_fee_bps", "agent_gas_reserve_bps"):
            bps = getattr(self, name)
            if not 0 <= bps <= BPS_DENOMINATOR:
                raise ValueError(f"{name} must be within 0..{BPS_DENOMINATOR}, got {bps}")


@dataclass(frozen=True)
class PolicyConfig:
    """Thresholds used by the decision engine.

    The migration thresholds (7-day break-even, $0.50/day, $50k TVL) and the
    gas estimates are operational defaults, not derived values.
    """

    check_interval_seconds: float = 60.0
    call_timeout_seconds: float = 10.0

    # Cost-benefit
    min_target_tvl_usd: float = 50_000.0
    max_break_even_days: float = 7.0
    min_net_benefit_per_day_usd: float = 0.5
    migration_tx_cost_sol: float = 0.01  # two transactions' worth

    # In-pool rebalance
    gas_safety_multiple: float = 1.5
    default_sol_price_usd: float = 150.0

    # Triggers
    yield_shortfall_ratio: float = 0.8
    time_based_window_seconds: float = 24 * 3600.0
    min_days_for_yield_estimate: float = 0.1

    # Calculator inputs
    default_volatility: float = 0.05
    default_target_daily_yield: float = 0.4
    price_history_size: int = 60

    # Migration
    migration_candidates: int = 5
    min_migration_value_usd: float = 10.0
    default_cross_pool_allowed: bool = False

    def __post_init__(self):
        if self.check_interval_seconds <= 0:
            raise ValueError("check_interval_seconds must be positive")
        if self.call_timeout_seconds <= 0:
            raise ValueError("call_timeout_seconds must be positive")
        if self.max_break_even_days <= 0:
            raise ValueError("max_break_even_days must be positive")


@dataclass(frozen=True)
class AgentConfig:
    """Everything the agent reads from the environment."""

    fees: FeeConfig = field(default_factory=FeeConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    rpc_url: str = SolanaRPC.DEFAULT_URL
    advisory_api_key: Optional[str] = None
    advisory_base_url: str = AdvisoryAPI.DEFAULT_BASE_URL
    advisory_model: str = AdvisoryAPI.DEFAULT_MODEL

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "AgentConfig":
        """Load configuration from ``.env`` and the process environment.

        Raises:
            ValueError: if a numeric variable is present but malformed.
        """
        load_dotenv(env_file or Path.cwd() / ".env", override=False)

        fees = FeeConfig(
            deposit_fee_bps=_env_int("DEPOSIT_FEE_BPS", 10),
            performance_fee_bps=_env_int("PERFORMANCE_FEE_BPS", 500),
            agent_gas_reserve_bps=_env_int("AGENT_GAS_RESERVE_BPS", 200),
            treasury_address=os.environ.get("TREASURY_ADDRESS", ""),
        )
        policy = replace(
            PolicyConfig(),
            check_interval_seconds=_env_float("CHECK_INTERVAL_SECONDS", 60.0),
            call_timeout_seconds=_env_float("CALL_TIMEOUT_SECONDS", 10.0),
            default_sol_price_usd=_env_float("SOL_PRICE_USD", 150.0),
            default_cross_pool_allowed=_env_bool("ALLOW_CROSS_POOL", False),
        )
        return cls(
            fees=fees,
            policy=policy,
            rpc_url=os.environ.get("SOLANA_RPC_URL", SolanaRPC.DEFAULT_URL),
            advisory_api_key=os.environ.get("NVIDIA_API_KEY") or None,
            advisory_base_url=os.environ.get("AI_BASE_URL", AdvisoryAPI.DEFAULT_BASE_URL),
            advisory_model=os.environ.get("AI_MODEL", AdvisoryAPI.DEFAULT_MODEL),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


# Unified configuration
class LPAgentConfig:
    """Unified endpoint configuration."""

    venues = VenueAPI()
    coingecko = CoinGeckoAPI()
    solana = SolanaRPC()
    advisory = AdvisoryAPI()


# Global instance
config = LPAgentConfig()
