"""
Test Suite — Position Monitor
==============================

Scheduler behaviour against in-memory venue adapters: triggers, policy
gates (opt-in, cooldown, lock), dispatch outcomes, migration, fee
collection, advisory annotation and the start/stop lifecycle.

All tests are offline. The clock is fixed unless a test moves it.

Run:  python -m pytest tests/test_position_monitor.py -v
"""

import asyncio
import copy
from decimal import Decimal
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from advisory_reasoner import AdvisoryOpinion, AdvisoryReasoner
from fee_accountant import FeeAccountant
from lp_agent.activity_log import ActivityType
from lp_agent.central_config import PolicyConfig
from lp_agent.dex_registry import AdapterError, AdapterRegistry, DexAdapter
from lp_agent.models import (
    DexType,
    PoolInfo,
    Position,
    PositionConfigError,
    PositionStatus,
    RebalanceTrigger,
    StrategyConfig,
    TxResult,
)
from lp_agent.optin_registry import OptInStatus, StaticOptInRegistry
from pool_aggregator import Aggregator
from position_monitor import PositionMonitor
from yield_calculator import YieldCalcInput, YieldCalculator

NOW = 1_700_000_000.0
OWNER = "owner-1"
KEY = (OWNER, "pos-1")


# ── Fakes ────────────────────────────────────────────────────────────────


class FakeAdapter(DexAdapter):
    """In-memory venue: one pool, scripted write results."""

    def __init__(self, dex: DexType, pool: PoolInfo, gas: float = 0.005):
        self.dex_type = dex
        self.pool = pool
        self.gas = gas
        self.pool_reads = 0
        self.read_error: Optional[Exception] = None
        self.write_delay = 0.0
        self.calls: List[tuple] = []
        self.completed = 0
        self.rebalance_result = TxResult(success=True, signature="sig-rebalance")
        self.close_result = TxResult(success=True, signature="sig-close")
        self.create_result = TxResult(success=True, signature="sig-create")
        self.collect_result = TxResult(success=True, signature="sig-collect")

    async def find_pools(self, token_a, token_b):
        return [self.pool]

    async def get_pool_info(self, pool_address):
        self.pool_reads += 1
        if self.read_error is not None:
            raise self.read_error
        if pool_address != self.pool.address:
            raise AdapterError(f"unknown pool {pool_address}")
        return self.pool

    async def _write(self, name, params, result):
        self.calls.append((name, params))
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self.completed += 1
        return result

    async def create_position(self, params):
        return await self._write("create", params, self.create_result)

    async def close_position(self, params):
        return await self._write("close", params, self.close_result)

    async def collect_fees(self, params):
        return await self._write("collect", params, self.collect_result)

    async def rebalance(self, params):
        return await self._write("rebalance", params, self.rebalance_result)

    async def get_position(self, position_id):
        return None

    async def get_positions(self, owner):
        return []

    def estimate_gas(self, operation):
        return self.gas

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]


def make_pool(address="PoolOrca", dex=DexType.ORCA, price=108.0, apr=10.0, tvl=1_000_000) -> PoolInfo:
    return PoolInfo(
        dex=dex,
        address=address,
        token_a_mint="So11111111111111111111111111111111111111112",
        token_b_mint="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        token_a_symbol="SOL",
        token_b_symbol="USDC",
        current_price=price,
        fee_bps=30,
        tvl=tvl,
        volume_24h=500_000,
        apr_24h=apr,
    )


def make_position(**overrides) -> Position:
    fields = dict(
        id="pos-1",
        owner=OWNER,
        dex=DexType.ORCA,
        pool_address="PoolOrca",
        lower_price=95.0,
        upper_price=105.0,
        liquidity=1_000.0,
        token_a_amount=50.0,
        token_b_amount=5_000.0,
        created_at=NOW - 3600,
        strategy=StrategyConfig(),
    )
    fields.update(overrides)
    return Position(**fields)


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def orca() -> FakeAdapter:
    return FakeAdapter(DexType.ORCA, make_pool())


@pytest.fixture
def opt_in() -> StaticOptInRegistry:
    registry = StaticOptInRegistry()
    registry.set(OWNER, "pos-1", OptInStatus(enabled=True, cross_pool_allowed=False))
    return registry


def build_monitor(adapters, opt_in, **kwargs) -> PositionMonitor:
    kwargs.setdefault("clock", Clock())
    return PositionMonitor(AdapterRegistry(list(adapters)), opt_in, **kwargs)


def messages(monitor: PositionMonitor, type_: Optional[ActivityType] = None) -> List[str]:
    return [a.message for a in monitor.activity.get_all() if type_ is None or a.type == type_]


# ── Registration ─────────────────────────────────────────────────────────


class TestRegistration:
    def test_invalid_range_rejected(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        with pytest.raises(PositionConfigError):
            monitor.add_position(make_position(lower_price=110.0))

    def test_invalid_strategy_rejected(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        with pytest.raises(PositionConfigError):
            monitor.add_position(make_position(strategy=StrategyConfig(target_daily_yield=-1)))

    def test_unregistered_venue_rejected(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        with pytest.raises(PositionConfigError):
            monitor.add_position(make_position(dex=DexType.RAYDIUM))

    def test_remove_position(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position())
        assert monitor.remove_position(OWNER, "pos-1") is True
        assert monitor.remove_position(OWNER, "pos-1") is False
        assert monitor.get_positions() == []


# ── Triggers ─────────────────────────────────────────────────────────────


class TestNoTrigger:
    def test_cycle_only_touches_last_checked(self, orca, opt_in):
        orca.pool = make_pool(price=100.0)
        monitor = build_monitor([orca], opt_in)
        position = make_position()
        monitor.add_position(position)
        before = copy.deepcopy(position.to_dict())

        decisions = asyncio.run(monitor.run_cycle())

        after = position.to_dict()
        assert decisions == []
        assert after.pop("last_checked_at") == NOW
        before.pop("last_checked_at")
        assert after == before
        assert orca.calls == []
        assert len(monitor.activity) == 0
        assert len(monitor.reasoning) == 0

    def test_price_reentering_range_restores_active(self, orca, opt_in):
        orca.pool = make_pool(price=100.0)
        monitor = build_monitor([orca], opt_in)
        position = make_position(status=PositionStatus.OUT_OF_RANGE)
        monitor.add_position(position)
        asyncio.run(monitor.run_cycle())
        assert position.status == PositionStatus.ACTIVE


class TestTriggerDetection:
    def test_time_based(self, orca, opt_in):
        orca.pool = make_pool(price=100.0)
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position(created_at=NOW - 2 * 86_400))
        decision = asyncio.run(monitor.evaluate_position(KEY))
        assert decision.trigger == RebalanceTrigger.TIME_BASED

    def test_time_window_restarts_after_each_verdict(self, orca, opt_in):
        orca.pool = make_pool(price=100.0)
        clock = Clock()
        monitor = build_monitor([orca], opt_in, clock=clock)
        monitor.add_position(
            make_position(created_at=NOW - 25 * 3600, token_a_amount=0.01, token_b_amount=1.0)
        )

        for _ in range(5):
            asyncio.run(monitor.run_cycle())
            clock.now += 60

        entries = monitor.reasoning.get_all()
        assert [e.trigger for e in entries] == ["time_based"]
        assert entries[0].should_rebalance is False
        assert orca.calls == []

        clock.now = NOW + 24 * 3600 + 1
        asyncio.run(monitor.run_cycle())
        assert [e.trigger for e in monitor.reasoning.get_all()] == ["time_based", "time_based"]

    def test_yield_shortfall(self, orca, opt_in):
        orca.pool = make_pool(price=100.0)
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(
            make_position(
                created_at=NOW - 12 * 3600,
                unclaimed_fees_b=1.0,
                strategy=StrategyConfig(target_daily_yield=0.4),
            )
        )
        decision = asyncio.run(monitor.evaluate_position(KEY))
        assert decision.trigger == RebalanceTrigger.YIELD_TARGET

    def test_yield_needs_history(self, orca, opt_in):
        """Under 0.1 day of data no yield estimate is made."""
        orca.pool = make_pool(price=100.0)
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(
            make_position(created_at=NOW - 600, strategy=StrategyConfig(target_daily_yield=0.4))
        )
        assert asyncio.run(monitor.evaluate_position(KEY)) is None

    def test_manual_request_consumed(self, orca, opt_in):
        orca.pool = make_pool(price=100.0)
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position())
        monitor.request_manual_check(OWNER, "pos-1")

        decision = asyncio.run(monitor.evaluate_position(KEY))
        assert decision.trigger == RebalanceTrigger.MANUAL
        assert decision.should_rebalance is True
        assert orca.call_names() == ["rebalance"]
        assert KEY not in monitor._manual_requests


# ── Scenario A: price exit routes to an in-pool rebalance ────────────────


class TestPriceExit:
    def test_rebalances_in_pool_when_no_better_pool(self, orca):
        opt_in = StaticOptInRegistry()
        opt_in.set(OWNER, "pos-1", OptInStatus(enabled=True, cross_pool_allowed=True))
        registry = AdapterRegistry([orca])
        monitor = PositionMonitor(registry, opt_in, aggregator=Aggregator(registry), clock=Clock())
        position = make_position()
        monitor.add_position(position)

        decision = asyncio.run(monitor.evaluate_position(KEY))

        expected = YieldCalculator.calculate(
            YieldCalcInput(0.4, 108.0, 0.05, 30, 500_000, 1_000_000)
        )
        assert decision.trigger == RebalanceTrigger.PRICE_EXIT
        assert decision.should_rebalance is True
        assert decision.is_migration is False
        assert decision.new_lower_price == pytest.approx(expected.recommended_lower)
        assert decision.new_upper_price == pytest.approx(expected.recommended_upper)
        assert decision.new_lower_price < 108.0 < decision.new_upper_price
        assert decision.risk_score == 70

        assert orca.call_names() == ["rebalance"]
        params = orca.calls[0][1]
        assert params.new_lower_price == decision.new_lower_price
        assert params.slippage_bps == position.strategy.max_slippage_bps

        assert position.status == PositionStatus.ACTIVE
        assert position.lower_price == decision.new_lower_price
        assert position.last_rebalance_at == NOW
        assert messages(monitor, ActivityType.PRICE_ALERT)
        assert messages(monitor, ActivityType.MIGRATION_CHECK)
        assert monitor.reasoning.get_all()[0].should_rebalance is True

    def test_small_position_economically_rejected(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        position = make_position(token_a_amount=0.01, token_b_amount=1.0)
        monitor.add_position(position)

        decision = asyncio.run(monitor.evaluate_position(KEY))

        assert decision.should_rebalance is False
        assert orca.calls == []
        assert position.status == PositionStatus.OUT_OF_RANGE
        assert monitor.reasoning.get_all()[0].should_rebalance is False


# ── Gates ────────────────────────────────────────────────────────────────


class TestGates:
    def test_not_opted_in(self, orca):
        monitor = build_monitor([orca], StaticOptInRegistry())
        position = make_position()
        monitor.add_position(position)

        assert asyncio.run(monitor.evaluate_position(KEY)) is None
        assert orca.calls == []
        assert position.status == PositionStatus.OUT_OF_RANGE
        assert any("not enabled" in m for m in messages(monitor))

    def test_opt_in_disabled_entry(self, orca):
        registry = StaticOptInRegistry()
        registry.set(OWNER, "pos-1", OptInStatus(enabled=False, cross_pool_allowed=False))
        monitor = build_monitor([orca], registry)
        monitor.add_position(make_position())
        assert asyncio.run(monitor.evaluate_position(KEY)) is None
        assert orca.calls == []

    def test_auto_rebalance_off(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position(strategy=StrategyConfig(auto_rebalance=False)))
        assert asyncio.run(monitor.evaluate_position(KEY)) is None
        assert orca.calls == []

    def test_cooldown_dominates_trigger(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position(created_at=NOW - 7200, last_rebalance_at=NOW - 600))

        assert asyncio.run(monitor.evaluate_position(KEY)) is None
        assert orca.calls == []
        skipped = [m for m in messages(monitor) if "cooldown" in m]
        assert len(skipped) == 1
        assert "price_exit" in skipped[0]

    def test_cooldown_elapsed(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position(created_at=NOW - 7200, last_rebalance_at=NOW - 3601))
        decision = asyncio.run(monitor.evaluate_position(KEY))
        assert decision.should_rebalance is True

    def test_held_lock_skips(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position())

        async def scenario():
            lock = monitor._lock_for(KEY)
            async with lock:
                return await monitor.evaluate_position(KEY)

        assert asyncio.run(scenario()) is None
        assert orca.calls == []
        assert any("in flight" in m for m in messages(monitor))

    def test_concurrent_evaluations_dispatch_once(self, orca, opt_in):
        orca.write_delay = 0.05
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position())

        async def scenario():
            return await asyncio.gather(monitor.evaluate_position(KEY), monitor.evaluate_position(KEY))

        results = asyncio.run(scenario())
        assert orca.call_names() == ["rebalance"]
        assert sum(1 for r in results if r is not None) == 1

    def test_evaluation_finishing_during_slow_opt_in_lookup_dispatches_once(self, orca):
        class SlowSecondLookup(StaticOptInRegistry):
            lookups = 0

            async def lookup(self, owner, position_id):
                self.lookups += 1
                if self.lookups == 2:
                    await asyncio.sleep(0.05)
                return await super().lookup(owner, position_id)

        registry = SlowSecondLookup()
        registry.set(OWNER, "pos-1", OptInStatus(enabled=True, cross_pool_allowed=False))
        orca.write_delay = 0.01
        monitor = build_monitor([orca], registry)
        monitor.add_position(make_position(strategy=StrategyConfig(min_rebalance_interval=0)))

        async def scenario():
            return await asyncio.gather(monitor.evaluate_position(KEY), monitor.evaluate_position(KEY))

        results = asyncio.run(scenario())
        assert registry.lookups == 2
        assert orca.call_names() == ["rebalance"]
        assert sum(1 for r in results if r is not None) == 1
        assert any("superseded" in m for m in messages(monitor))

    def test_pending_and_closed_not_evaluated(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position(status=PositionStatus.PENDING))
        monitor.add_position(make_position(id="pos-2", status=PositionStatus.CLOSED))
        assert asyncio.run(monitor.run_cycle()) == []
        assert orca.pool_reads == 0


# ── Dispatch outcomes ────────────────────────────────────────────────────


class TestDispatch:
    def test_failure_restores_prior_status(self, orca, opt_in):
        orca.rebalance_result = TxResult(success=False, error="slippage exceeded")
        monitor = build_monitor([orca], opt_in)
        position = make_position()
        monitor.add_position(position)

        decision = asyncio.run(monitor.evaluate_position(KEY))

        assert decision.should_rebalance is True
        assert position.status == PositionStatus.OUT_OF_RANGE
        assert (position.lower_price, position.upper_price) == (95.0, 105.0)
        assert position.last_rebalance_at is None
        assert not monitor._lock_for(KEY).locked()
        assert any("slippage exceeded" in m for m in messages(monitor))

    def test_exception_contained_per_position(self, orca, opt_in):
        raydium = FakeAdapter(DexType.RAYDIUM, make_pool("PoolRay", DexType.RAYDIUM))
        raydium.read_error = AdapterError("raydium: HTTP 503")
        opt_in.set(OWNER, "pos-2", OptInStatus(enabled=True, cross_pool_allowed=False))
        monitor = build_monitor([orca, raydium], opt_in)
        monitor.add_position(make_position())
        monitor.add_position(make_position(id="pos-2", dex=DexType.RAYDIUM, pool_address="PoolRay"))

        decisions = asyncio.run(monitor.run_cycle())

        assert [d.trigger for d in decisions] == [RebalanceTrigger.PRICE_EXIT]
        assert orca.call_names() == ["rebalance"]
        failed = [a for a in monitor.activity.get_all() if a.details.get("success") is False]
        assert failed and "HTTP 503" in failed[0].message
        assert monitor.get_position(OWNER, "pos-2").status == PositionStatus.ACTIVE

    def test_fees_collected_before_rebalance(self, orca, opt_in):
        accountant = FeeAccountant()
        monitor = build_monitor([orca], opt_in, fee_accountant=accountant)
        position = make_position(unclaimed_fees_a=1.0, unclaimed_fees_b=100.0)
        monitor.add_position(position)

        asyncio.run(monitor.evaluate_position(KEY))

        assert orca.call_names() == ["collect", "rebalance"]
        assert position.unclaimed_fees_a == 0.0 and position.unclaimed_fees_b == 0.0
        stats = accountant.get_stats()
        assert stats["total_performance_fees"] == Decimal("10.4")
        assert stats["total_gas_reserved"] == Decimal("0.208")
        assert messages(monitor, ActivityType.FEE_COLLECTION)

    def test_failed_collection_keeps_fees(self, orca, opt_in):
        orca.collect_result = TxResult(success=False, error="rpc")
        monitor = build_monitor([orca], opt_in)
        position = make_position(unclaimed_fees_b=100.0)
        monitor.add_position(position)
        asyncio.run(monitor.evaluate_position(KEY))
        assert position.unclaimed_fees_b == 100.0
        assert orca.call_names() == ["collect", "rebalance"]

    def test_collection_error_does_not_abort_rebalance(self, orca, opt_in):
        orca.collect_fees = AsyncMock(side_effect=RuntimeError("rpc down"))
        monitor = build_monitor([orca], opt_in)
        position = make_position(unclaimed_fees_b=100.0)
        monitor.add_position(position)

        asyncio.run(monitor.evaluate_position(KEY))

        assert orca.call_names() == ["rebalance"]
        assert position.unclaimed_fees_b == 100.0
        assert position.status == PositionStatus.ACTIVE
        assert not messages(monitor, ActivityType.FEE_COLLECTION)

    def test_owner_withdrawal_during_action_stays_closed(self, orca, opt_in):
        orca.write_delay = 0.05
        monitor = build_monitor([orca], opt_in)
        position = make_position()
        monitor.add_position(position)

        async def scenario():
            evaluation = asyncio.create_task(monitor.evaluate_position(KEY))
            await asyncio.sleep(0.01)
            monitor.mark_closed(OWNER, "pos-1")
            return await evaluation

        decision = asyncio.run(scenario())

        assert decision.should_rebalance is True
        assert orca.completed == 1
        assert position.status == PositionStatus.CLOSED
        assert (position.lower_price, position.upper_price) == (95.0, 105.0)
        assert position.last_rebalance_at is None
        assert any("after the position was closed" in m for m in messages(monitor))
        assert asyncio.run(monitor.run_cycle()) == []


class TestMigration:
    def _setup(self, orca, create_result=None):
        meteora = FakeAdapter(
            DexType.METEORA, make_pool("PoolMeteora", DexType.METEORA, price=108.2, apr=600.0, tvl=5_000_000)
        )
        meteora.create_result = create_result or TxResult(
            success=True,
            signature="sig-create",
            position=make_position(
                id="new-pos", dex=DexType.METEORA, pool_address="PoolMeteora",
                token_a_amount=49.0, token_b_amount=4_950.0,
            ),
        )
        opt_in = StaticOptInRegistry()
        opt_in.set(OWNER, "pos-1", OptInStatus(enabled=True, cross_pool_allowed=True))
        registry = AdapterRegistry([orca, meteora])
        monitor = PositionMonitor(registry, opt_in, aggregator=Aggregator(registry), clock=Clock())
        return monitor, meteora

    def test_close_then_create_on_better_pool(self, orca):
        monitor, meteora = self._setup(orca)
        monitor.add_position(make_position())

        decision = asyncio.run(monitor.evaluate_position(KEY))

        assert decision.is_migration
        assert decision.target_pool.address == "PoolMeteora"
        assert orca.call_names() == ["close"]
        assert meteora.call_names() == ["create"]
        assert monitor.get_position(OWNER, "pos-1") is None

        moved = monitor.get_position(OWNER, "new-pos")
        assert moved.dex == DexType.METEORA
        assert moved.pool_address == "PoolMeteora"
        assert moved.status == PositionStatus.ACTIVE
        assert moved.token_a_amount == 49.0
        # width ratio of [95, 105] kept, centered on the target price
        assert moved.upper_price - moved.lower_price == pytest.approx(108.2 * 0.1)
        assert messages(monitor, ActivityType.POSITION_OPENED)

    def test_failed_close_keeps_position(self, orca):
        orca.close_result = TxResult(success=False, error="close rejected")
        monitor, meteora = self._setup(orca)
        position = make_position()
        monitor.add_position(position)

        asyncio.run(monitor.evaluate_position(KEY))

        assert meteora.calls == []
        assert position.status == PositionStatus.OUT_OF_RANGE
        assert position.pool_address == "PoolOrca"

    def test_failed_reopen_marks_closed(self, orca):
        monitor, _ = self._setup(orca, create_result=TxResult(success=False, error="create rejected"))
        position = make_position()
        monitor.add_position(position)

        asyncio.run(monitor.evaluate_position(KEY))

        assert position.status == PositionStatus.CLOSED
        assert any("create rejected" in m for m in messages(monitor, ActivityType.POSITION_CLOSED))

    def test_migration_annotated_by_advisory(self, orca):
        monitor, meteora = self._setup(orca)
        reasoner = MagicMock()
        reasoner.analyze_migration = AsyncMock(return_value=AdvisoryOpinion("rebalance", 0.7, "Deeper pool."))
        reasoner.analyze_rebalance = AsyncMock(return_value=AdvisoryOpinion("wait", 0.9, "Spike."))
        monitor.reasoner = reasoner
        position = make_position()
        monitor.add_position(position)

        decision = asyncio.run(monitor.evaluate_position(KEY))

        assert decision.is_migration
        assert "advisory: rebalance (70%)" in decision.reason
        reasoner.analyze_rebalance.assert_not_awaited()
        args = reasoner.analyze_migration.call_args.args
        assert args[0] is position
        assert args[1].address == "PoolOrca"
        assert args[2].address == "PoolMeteora"
        assert args[3] > 0
        assert meteora.call_names() == ["create"]

    def test_cross_pool_not_allowed(self, orca):
        monitor, meteora = self._setup(orca)
        monitor.opt_in.set(OWNER, "pos-1", OptInStatus(enabled=True, cross_pool_allowed=False))
        monitor.add_position(make_position())

        decision = asyncio.run(monitor.evaluate_position(KEY))

        assert not decision.is_migration
        assert meteora.calls == []
        assert orca.call_names() == ["rebalance"]


# ── Advisory annotation (Scenario E) ─────────────────────────────────────


class TestAdvisory:
    def test_timeout_keeps_deterministic_verdict(self, orca, opt_in):
        reasoner = AdvisoryReasoner(api_key="key", timeout=0.05)
        monitor = build_monitor([orca], opt_in, reasoner=reasoner)
        monitor.add_position(make_position())

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        with patch("advisory_reasoner.httpx.AsyncClient") as MockClient:
            mock_client = AsyncMock()
            mock_client.post = AsyncMock(side_effect=hang)
            MockClient.return_value.__aenter__ = AsyncMock(return_value=mock_client)
            MockClient.return_value.__aexit__ = AsyncMock(return_value=False)
            decision = asyncio.run(asyncio.wait_for(monitor.evaluate_position(KEY), timeout=2))

        assert decision.should_rebalance is True
        assert "no opinion" in decision.reason
        assert orca.call_names() == ["rebalance"]

    def test_opinion_annotates_only(self, orca, opt_in):
        reasoner = MagicMock()
        reasoner.analyze_rebalance = AsyncMock(return_value=AdvisoryOpinion("wait", 0.9, "Spike may revert."))
        monitor = build_monitor([orca], opt_in, reasoner=reasoner)
        monitor.add_position(make_position())

        decision = asyncio.run(monitor.evaluate_position(KEY))

        assert decision.should_rebalance is True
        assert "advisory: wait (90%)" in decision.reason
        context = reasoner.analyze_rebalance.call_args.args[1]
        assert context.current_price == 108.0
        assert context.position_value_usd == pytest.approx(50 * 108 + 5_000)


# ── Reporting ────────────────────────────────────────────────────────────


class TestReporting:
    def test_status_report(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position())
        asyncio.run(monitor.run_cycle())

        (row,) = monitor.status_report()
        assert row["status"] == "active"
        assert row["last_checked_at"] == NOW
        assert row["last_decision"]["trigger"] == "price_exit"
        assert row["last_decision"]["should_rebalance"] is True

    def test_mark_closed_is_terminal(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        monitor.add_position(make_position())
        monitor.mark_closed(OWNER, "pos-1")

        assert asyncio.run(monitor.run_cycle()) == []
        assert orca.calls == []
        with pytest.raises(PositionConfigError):
            monitor.request_manual_check(OWNER, "pos-1")
        assert messages(monitor, ActivityType.POSITION_CLOSED)

    def test_unknown_position(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in)
        with pytest.raises(KeyError):
            monitor.mark_closed(OWNER, "missing")


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLifecycle:
    def test_start_runs_immediately_then_on_interval(self, orca, opt_in):
        orca.pool = make_pool(price=100.0)
        policy = PolicyConfig(check_interval_seconds=0.05)
        monitor = build_monitor([orca], opt_in, policy=policy)
        monitor.add_position(make_position())

        async def scenario():
            await monitor.start()
            assert monitor.is_running
            await asyncio.sleep(0.13)
            await monitor.stop()
            reads_at_stop = orca.pool_reads
            await asyncio.sleep(0.12)
            return reads_at_stop

        reads_at_stop = asyncio.run(scenario())
        assert reads_at_stop >= 2
        assert orca.pool_reads == reads_at_stop
        assert not monitor.is_running
        assert messages(monitor, ActivityType.AGENT_STARTED)
        assert messages(monitor, ActivityType.AGENT_STOPPED)

    def test_stop_lets_inflight_action_finish(self, orca, opt_in):
        orca.write_delay = 0.2
        policy = PolicyConfig(check_interval_seconds=10)
        monitor = build_monitor([orca], opt_in, policy=policy)
        position = make_position()
        monitor.add_position(position)

        async def scenario():
            await monitor.start()
            await asyncio.sleep(0.05)
            await monitor.stop()
            status_after_stop = position.status
            await monitor.wait_idle()
            return status_after_stop

        status_after_stop = asyncio.run(scenario())
        assert status_after_stop == PositionStatus.PENDING
        assert orca.completed == 1
        assert position.status == PositionStatus.ACTIVE
        assert position.last_rebalance_at == NOW

    def test_start_twice_is_noop(self, orca, opt_in):
        monitor = build_monitor([orca], opt_in, policy=PolicyConfig(check_interval_seconds=10))

        async def scenario():
            await monitor.start()
            first = monitor._task
            await monitor.start()
            second = monitor._task
            await monitor.stop()
            return first is second

        assert asyncio.run(scenario())
