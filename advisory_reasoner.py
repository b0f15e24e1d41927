#!/usr/bin/env python3
"""
Advisory Reasoner — optional language-model opinion on a decision
==================================================================

Sends a market snapshot to an OpenAI-compatible ``/chat/completions``
endpoint and parses a strict JSON answer:

    {"action": "rebalance" | "wait", "confidence": 0.0–1.0, "reasoning": "…"}

The opinion only annotates the deterministic verdict. Any failure
(no API key, network error, timeout, non-2xx, malformed or off-schema
reply) yields "no opinion" and is never raised to the caller.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lp_agent.central_config import AgentConfig, config
from lp_agent.logging_utils import get_logger
from lp_agent.models import PoolInfo, Position

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are an autonomous DeFi agent managing concentrated liquidity positions on Solana.

Your job: decide whether to REBALANCE now or WAIT, based on market data.

Decision framework:
- REBALANCE: price has left the range AND volatility is settling AND gas cost is <1% of position value
- WAIT: price just spiked (high 1h change) and may revert, OR gas cost is too high relative to position, OR volatility is too high for a new range to hold

Key principles:
- Never rebalance during high volatility spikes (wait for price to settle)
- Gas costs matter more for small positions
- Frequent rebalancing destroys returns through fees
- When in doubt, WAIT. Patience beats reactivity in LP management.

Respond ONLY with a JSON object:
{"action": "rebalance" or "wait", "confidence": number between 0 and 1, "reasoning": "2-3 sentences"}"""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class AdvisoryResponse(BaseModel):
    """The only reply shape accepted from the advisory service."""

    model_config = ConfigDict(extra="forbid")

    action: Literal["rebalance", "wait"]
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = Field(..., min_length=1, max_length=600)

    @field_validator("reasoning")
    @classmethod
    def strip_reasoning(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reasoning must not be blank")
        return v


@dataclass(frozen=True)
class AdvisoryOpinion:
    action: Optional[str] = None
    confidence: Optional[float] = None
    reasoning: str = "no opinion"

    @property
    def has_opinion(self) -> bool:
        return self.action is not None

    def summary(self) -> str:
        if not self.has_opinion:
            return f"advisory: {self.reasoning}"
        return f"advisory: {self.action} ({self.confidence:.0%}): {self.reasoning}"


def no_opinion(cause: str) -> AdvisoryOpinion:
    return AdvisoryOpinion(reasoning=f"no opinion: {cause}")


@dataclass(frozen=True)
class MarketContext:
    current_price: float
    price_change_1h: float  # percent
    price_change_24h: float  # percent
    volatility_24h: float  # fraction
    pool_tvl: float
    pool_volume_24h: float
    pool_fee_bps: float
    current_yield_24h: float  # percent per day
    gas_estimate_sol: float
    position_value_usd: float
    sol_price_usd: float = 150.0


def parse_response(content: str) -> AdvisoryResponse:
    """Parse a model reply, tolerating a surrounding markdown fence.

    Raises:
        ValueError: (incl. pydantic ValidationError) if the reply is not
            exactly the expected JSON object.
    """
    text = content.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    return AdvisoryResponse.model_validate_json(text)


class AdvisoryReasoner:
    """Optional second opinion; safe to share across concurrent evaluations."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = config.advisory.DEFAULT_BASE_URL,
        model: str = config.advisory.DEFAULT_MODEL,
        timeout: float = 10.0,
        cache_ttl_seconds: float = 300.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: Dict[Tuple[str, str], Tuple[AdvisoryOpinion, float]] = {}

    @classmethod
    def from_config(cls, agent_config: AgentConfig) -> "AdvisoryReasoner":
        return cls(
            api_key=agent_config.advisory_api_key,
            base_url=agent_config.advisory_base_url,
            model=agent_config.advisory_model,
            timeout=agent_config.policy.call_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def analyze_rebalance(
        self, position: Position, context: MarketContext, trigger: str
    ) -> AdvisoryOpinion:
        if not self.is_configured:
            return no_opinion("advisory service not configured")

        key = (position.id, trigger)
        cached = self._cache.get(key)
        if cached and time.monotonic() - cached[1] < self.cache_ttl_seconds:
            return cached[0]

        opinion = await self._ask(self._rebalance_prompt(position, context, trigger))
        if opinion.has_opinion:
            self._cache[key] = (opinion, time.monotonic())
            logger.info("advisory for %s: %s (%.0f%%)", position.id, opinion.action,
                        (opinion.confidence or 0) * 100)
        return opinion

    async def analyze_migration(
        self,
        position: Position,
        current_pool: PoolInfo,
        candidate_pool: PoolInfo,
        migration_cost_usd: float,
    ) -> AdvisoryOpinion:
        if not self.is_configured:
            return no_opinion("advisory service not configured")
        prompt = (
            "MIGRATION ANALYSIS\n"
            f"Position: {position.id}\n"
            f"Current pool: {current_pool.pair_label} on {current_pool.dex.value}\n"
            f"- TVL: ${current_pool.tvl:,.0f}\n- 24h APR: {current_pool.apr_24h:.2f}%\n"
            f"- Fee: {current_pool.fee_bps:g}bps\n"
            f"Candidate pool: {candidate_pool.pair_label} on {candidate_pool.dex.value}\n"
            f"- TVL: ${candidate_pool.tvl:,.0f}\n- 24h APR: {candidate_pool.apr_24h:.2f}%\n"
            f"- Fee: {candidate_pool.fee_bps:g}bps\n"
            f"Migration cost: ${migration_cost_usd:.2f} (gas + slippage)\n\n"
            "Answer \"rebalance\" to migrate now or \"wait\" to stay."
        )
        return await self._ask(prompt)

    def clear_cache(self) -> None:
        self._cache.clear()

    # ── internals ──

    async def _ask(self, prompt: str) -> AdvisoryOpinion:
        try:
            content = await asyncio.wait_for(self._post(prompt), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("advisory request timed out after %.1fs", self.timeout)
            return no_opinion("timeout")
        except httpx.HTTPError as e:
            logger.warning("advisory request failed: %s", e)
            return no_opinion("network error")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("advisory reply unusable: %s", e)
            return no_opinion("unexpected reply envelope")

        try:
            parsed = parse_response(content)
        except ValueError as e:
            logger.warning("advisory reply off-schema: %s", str(e).splitlines()[0])
            return no_opinion("malformed response")
        return AdvisoryOpinion(parsed.action, parsed.confidence, parsed.reasoning)

    async def _post(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": config.advisory.TEMPERATURE,
            "max_tokens": config.advisory.MAX_TOKENS,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        content = data["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise TypeError("message content is not text")
        return content

    @staticmethod
    def _rebalance_prompt(position: Position, ctx: MarketContext, trigger: str) -> str:
        gas_pct = (
            ctx.gas_estimate_sol * ctx.sol_price_usd / ctx.position_value_usd * 100
            if ctx.position_value_usd > 0 else 0.0
        )
        target = position.strategy.target_daily_yield
        target_label = f"{target:.4f}%" if target is not None else "not set"
        return f"""REBALANCE DECISION REQUIRED

Position: {position.id}
DEX: {position.dex.value}
Range: [{position.lower_price:.6f}, {position.upper_price:.6f}]
Current Price: {ctx.current_price:.6f}
Trigger: {trigger}

MARKET DATA:
- Price change (1h): {ctx.price_change_1h:+.2f}%
- Price change (24h): {ctx.price_change_24h:+.2f}%
- 24h volatility: {ctx.volatility_24h * 100:.2f}%
- Pool TVL: ${ctx.pool_tvl:,.0f}
- Pool 24h volume: ${ctx.pool_volume_24h:,.0f}
- Pool fee rate: {ctx.pool_fee_bps:g}bps
- Current daily yield: {ctx.current_yield_24h:.4f}%

COSTS:
- Estimated gas: {ctx.gas_estimate_sol:.4f} SOL
- Position value: ${ctx.position_value_usd:,.2f}
- Gas as % of position: {gas_pct:.3f}%

USER STRATEGY:
- Target daily yield: {target_label}
- Min rebalance interval: {position.strategy.min_rebalance_interval}s

Should the agent rebalance now or wait?"""

