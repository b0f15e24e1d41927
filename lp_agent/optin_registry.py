"""
Opt-In Registry — may the agent rebalance this position?
=========================================================

Read-only view of the on-chain ``RebalanceConfig`` accounts written by the
owner through the rebalance program. Two layouts exist:

  v2  per position  PDA ["rebalance", owner, position_mint]   93 bytes
  v1  owner-wide    PDA ["rebalance", owner]                  61 bytes

A position-level account takes precedence over an owner-wide one. No
account means "not opted in".

Neither layout stores a cross-pool flag; ``cross_pool_allowed`` comes from
the registry's configured default (``policy.default_cross_pool_allowed``).
"""

import abc
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from solders.pubkey import Pubkey

from lp_agent.central_config import AgentConfig, config
from lp_agent.logging_utils import get_logger
from lp_agent.rpc_helpers import AccountDecodeError, AccountLayout, get_account_info

logger = get_logger(__name__)


class OptInDecodeError(AccountDecodeError):
    """A RebalanceConfig account could not be decoded."""


REBALANCE_CONFIG_V1 = AccountLayout(
    name="RebalanceConfig",
    version=1,
    fields=(
        ("owner", "32s"),
        ("enabled", "?"),
        ("max_slippage_bps", "H"),
        ("min_yield_improvement_bps", "H"),
        ("created_at", "q"),
        ("updated_at", "q"),
    ),
)

REBALANCE_CONFIG_V2 = AccountLayout(
    name="RebalanceConfig",
    version=2,
    fields=(
        ("owner", "32s"),
        ("position_mint", "32s"),
        ("enabled", "?"),
        ("max_slippage_bps", "H"),
        ("min_yield_improvement_bps", "H"),
        ("created_at", "q"),
        ("updated_at", "q"),
    ),
)


@dataclass(frozen=True)
class OptInStatus:
    enabled: bool
    cross_pool_allowed: bool
    max_slippage_bps: int = 0
    min_yield_improvement_bps: int = 0


def decode_rebalance_config(data: bytes, layout: AccountLayout) -> Dict[str, object]:
    """Decode a RebalanceConfig account, converting pubkeys to base58."""
    try:
        fields = layout.decode(data)
    except AccountDecodeError as e:
        raise OptInDecodeError(str(e)) from e
    for key in ("owner", "position_mint"):
        if key in fields:
            fields[key] = str(Pubkey.from_bytes(fields[key]))
    return fields


def find_config_address(
    owner: str,
    position_mint: Optional[str] = None,
    program_id: str = config.solana.OPTIN_PROGRAM_ID,
) -> Pubkey:
    """PDA of the position-level (or owner-wide, without a mint) config."""
    seeds = [config.solana.OPTIN_SEED, bytes(Pubkey.from_string(owner))]
    if position_mint is not None:
        seeds.append(bytes(Pubkey.from_string(position_mint)))
    pda, _bump = Pubkey.find_program_address(seeds, Pubkey.from_string(program_id))
    return pda


class OptInRegistry(abc.ABC):
    @abc.abstractmethod
    async def lookup(self, owner: str, position_id: str) -> Optional[OptInStatus]:
        """Opt-in status, or None when the owner never opted in."""


class StaticOptInRegistry(OptInRegistry):
    """In-memory registry (dry runs, tests, positions files)."""

    def __init__(self, entries: Optional[Dict[Tuple[str, str], OptInStatus]] = None):
        self._entries = dict(entries or {})

    def set(self, owner: str, position_id: str, status: OptInStatus) -> None:
        self._entries[(owner, position_id)] = status

    async def lookup(self, owner: str, position_id: str) -> Optional[OptInStatus]:
        return self._entries.get((owner, position_id))


class OnChainOptInRegistry(OptInRegistry):
    """Reads RebalanceConfig PDAs over Solana JSON-RPC."""

    def __init__(
        self,
        rpc_url: str = config.solana.DEFAULT_URL,
        program_id: str = config.solana.OPTIN_PROGRAM_ID,
        cross_pool_allowed: bool = False,
        timeout: float = config.solana.TIMEOUT_SECONDS,
    ):
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.cross_pool_allowed = cross_pool_allowed
        self.timeout = timeout

    @classmethod
    def from_config(cls, agent_config: AgentConfig) -> "OnChainOptInRegistry":
        return cls(
            rpc_url=agent_config.rpc_url,
            cross_pool_allowed=agent_config.policy.default_cross_pool_allowed,
        )

    async def lookup(self, owner: str, position_id: str) -> Optional[OptInStatus]:
        """
        Raises:
            RuntimeError: on RPC failure (transient, retried next cycle).
            OptInDecodeError: if an account exists but is malformed.
        """
        try:
            position_pda = find_config_address(owner, position_id, self.program_id)
            owner_pda = find_config_address(owner, None, self.program_id)
        except ValueError:
            logger.warning("owner %s / position %s are not valid pubkeys; treating as not opted in",
                           owner, position_id)
            return None

        data = await get_account_info(self.rpc_url, str(position_pda), self.timeout)
        layout = REBALANCE_CONFIG_V2
        if data is None:
            data = await get_account_info(self.rpc_url, str(owner_pda), self.timeout)
            layout = REBALANCE_CONFIG_V1
        if data is None:
            return None

        fields = decode_rebalance_config(data, layout)
        if fields["owner"] != owner:
            raise OptInDecodeError(f"config at {layout.name} v{layout.version} belongs to {fields['owner']}")
        return OptInStatus(
            enabled=bool(fields["enabled"]),
            cross_pool_allowed=self.cross_pool_allowed,
            max_slippage_bps=int(fields["max_slippage_bps"]),
            min_yield_improvement_bps=int(fields["min_yield_improvement_bps"]),
        )
