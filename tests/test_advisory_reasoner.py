"""
Test Suite — Advisory Reasoner
===============================

Strict reply parsing and degradation to "no opinion" on every failure
path. The chat-completions endpoint is mocked at ``httpx.AsyncClient``.

Run:  python -m pytest tests/test_advisory_reasoner.py -v
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from advisory_reasoner import (
    AdvisoryOpinion,
    AdvisoryReasoner,
    MarketContext,
    no_opinion,
    parse_response,
)
from lp_agent.central_config import AgentConfig
from lp_agent.models import DexType, Position, StrategyConfig


@pytest.fixture
def position() -> Position:
    return Position(
        id="pos-1",
        owner="owner-1",
        dex=DexType.ORCA,
        pool_address="Pool1111",
        lower_price=95.0,
        upper_price=105.0,
        token_a_amount=10.0,
        token_b_amount=1_000.0,
        strategy=StrategyConfig(target_daily_yield=0.4),
    )


@pytest.fixture
def context() -> MarketContext:
    return MarketContext(
        current_price=108.0,
        price_change_1h=1.2,
        price_change_24h=-3.5,
        volatility_24h=0.05,
        pool_tvl=2_000_000,
        pool_volume_24h=800_000,
        pool_fee_bps=30,
        current_yield_24h=0.0,
        gas_estimate_sol=0.005,
        position_value_usd=2_080,
    )


def _reply(content: str) -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.raise_for_status = MagicMock()
    resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


def _run_with_client(reasoner, position, context, post, trigger="price_exit"):
    with patch("advisory_reasoner.httpx.AsyncClient") as MockClient:
        mock_client = AsyncMock()
        mock_client.post = post
        MockClient.return_value.__aenter__ = AsyncMock(return_value=mock_client)
        MockClient.return_value.__aexit__ = AsyncMock(return_value=False)
        opinion = asyncio.run(reasoner.analyze_rebalance(position, context, trigger))
    return opinion, MockClient


# ── Parsing ──────────────────────────────────────────────────────────────

class TestParseResponse:
    def test_plain_json(self):
        parsed = parse_response('{"action": "wait", "confidence": 0.7, "reasoning": "Spike may revert."}')
        assert parsed.action == "wait"
        assert parsed.confidence == 0.7

    def test_fenced_json(self):
        content = 'Here you go:\n```json\n{"action": "rebalance", "confidence": 0.9, "reasoning": "Settled."}\n```'
        assert parse_response(content).action == "rebalance"

    @pytest.mark.parametrize(
        "content",
        [
            "rebalance now",
            '{"action": "hold", "confidence": 0.5, "reasoning": "x"}',
            '{"action": "wait", "confidence": 1.5, "reasoning": "x"}',
            '{"action": "wait", "confidence": 0.5, "reasoning": "   "}',
            '{"action": "wait", "confidence": 0.5}',
            '{"action": "wait", "confidence": 0.5, "reasoning": "x", "extra": 1}',
        ],
    )
    def test_off_schema_rejected(self, content):
        with pytest.raises(ValueError):
            parse_response(content)


class TestOpinion:
    def test_no_opinion_summary(self):
        assert no_opinion("timeout").summary() == "advisory: no opinion: timeout"
        assert not no_opinion("timeout").has_opinion

    def test_opinion_summary(self):
        opinion = AdvisoryOpinion("rebalance", 0.8, "Price settled.")
        assert opinion.summary() == "advisory: rebalance (80%): Price settled."


# ── Service calls ────────────────────────────────────────────────────────

class TestAnalyzeRebalance:
    def test_not_configured_makes_no_request(self, position, context):
        reasoner = AdvisoryReasoner(api_key=None)
        with patch("advisory_reasoner.httpx.AsyncClient") as MockClient:
            opinion = asyncio.run(reasoner.analyze_rebalance(position, context, "price_exit"))
        MockClient.assert_not_called()
        assert not opinion.has_opinion
        assert "not configured" in opinion.reasoning

    def test_valid_reply(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key")
        post = AsyncMock(return_value=_reply('{"action": "rebalance", "confidence": 0.85, "reasoning": "Volatility settled."}'))
        opinion, _ = _run_with_client(reasoner, position, context, post)
        assert opinion.action == "rebalance"
        assert opinion.confidence == pytest.approx(0.85)

        url = post.call_args.args[0]
        body = post.call_args.kwargs["json"]
        headers = post.call_args.kwargs["headers"]
        assert url.endswith("/chat/completions")
        assert body["messages"][0]["role"] == "system"
        assert "Trigger: price_exit" in body["messages"][1]["content"]
        assert headers["Authorization"] == "Bearer key"

    def test_timeout_degrades_to_no_opinion(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key", timeout=0.05)

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        start = time.monotonic()
        opinion, _ = _run_with_client(reasoner, position, context, AsyncMock(side_effect=hang))
        assert time.monotonic() - start < 2
        assert not opinion.has_opinion
        assert opinion.reasoning == "no opinion: timeout"

    def test_httpx_timeout(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key")
        post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        opinion, _ = _run_with_client(reasoner, position, context, post)
        assert opinion.reasoning == "no opinion: timeout"

    def test_http_error(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key")
        resp = _reply("{}")
        resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            "500", request=MagicMock(), response=MagicMock()
        )
        opinion, _ = _run_with_client(reasoner, position, context, AsyncMock(return_value=resp))
        assert opinion.reasoning == "no opinion: network error"

    def test_unexpected_envelope(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key")
        resp = _reply("")
        resp.json.return_value = {"error": "overloaded"}
        opinion, _ = _run_with_client(reasoner, position, context, AsyncMock(return_value=resp))
        assert opinion.reasoning == "no opinion: unexpected reply envelope"

    def test_malformed_reply(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key")
        post = AsyncMock(return_value=_reply("I would probably rebalance."))
        opinion, _ = _run_with_client(reasoner, position, context, post)
        assert opinion.reasoning == "no opinion: malformed response"

    def test_opinion_cached_per_position_and_trigger(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key")
        post = AsyncMock(return_value=_reply('{"action": "wait", "confidence": 0.6, "reasoning": "Spike."}'))
        _run_with_client(reasoner, position, context, post)
        opinion, _ = _run_with_client(reasoner, position, context, post)
        assert opinion.action == "wait"
        assert post.await_count == 1

        reasoner.clear_cache()
        _run_with_client(reasoner, position, context, post)
        assert post.await_count == 2

    def test_failures_not_cached(self, position, context):
        reasoner = AdvisoryReasoner(api_key="key")
        post = AsyncMock(return_value=_reply("garbage"))
        _run_with_client(reasoner, position, context, post)
        _run_with_client(reasoner, position, context, post)
        assert post.await_count == 2


class TestFromConfig:
    def test_uses_agent_config(self):
        cfg = AgentConfig(advisory_api_key="secret", advisory_model="m", advisory_base_url="http://llm/v1/")
        reasoner = AdvisoryReasoner.from_config(cfg)
        assert reasoner.is_configured
        assert reasoner.model == "m"
        assert reasoner.base_url == "http://llm/v1"
        assert reasoner.timeout == cfg.policy.call_timeout_seconds


def test_prompt_is_json_serializable(position, context):
    prompt = AdvisoryReasoner._rebalance_prompt(position, context, "price_exit")
    assert "Target daily yield: 0.4000%" in prompt
    json.dumps({"content": prompt})
