#!/usr/bin/env python3
"""
Position Monitor — the rebalancing scheduler
=============================================

Runs a recurring evaluation cycle over every tracked position:

  1. fetch the pool snapshot from the position's venue adapter
  2. detect a trigger (price exit, manual request, time window, yield shortfall)
  3. gate: opt-in registry → min rebalance interval → per-position lock
  4. decide: range calculator + in-pool economics, optionally a cross-pool
     migration via the aggregator and cost-benefit analyzer
  5. annotate with the advisory reasoner (never changes the verdict)
  6. dispatch: collect fees, then rebalance in place or close → create

State machine per position:
  active ⇄ out_of_range      (price leaves / re-enters the range)
  active|out_of_range → pending → active       (successful action)
  pending → prior status                       (failed action)
  * → closed                                   (terminal)

Positions are evaluated concurrently within a cycle; a position's record
is only mutated by the evaluation holding its lock. Reads (pool data,
prices, opt-in) are bounded by ``policy.call_timeout_seconds``. Writes are
never timed out or cancelled, including by ``stop()``.
"""

import asyncio
import math
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from advisory_reasoner import AdvisoryReasoner, MarketContext
from fee_accountant import FeeAccountant
from migration_analyzer import analyze_in_pool_rebalance, best_migration
from pool_aggregator import Aggregator
from yield_calculator import (
    YieldCalcInput,
    YieldCalculator,
    calculate_risk_score,
    recenter_range,
)
from lp_agent.activity_log import ActivityFeed, ActivityType, ReasoningFeed
from lp_agent.central_config import PolicyConfig
from lp_agent.dex_registry import (
    AdapterRegistry,
    ClosePositionParams,
    CollectFeesParams,
    CreatePositionParams,
    DexAdapter,
    RebalanceParams,
)
from lp_agent.logging_utils import get_logger
from lp_agent.models import (
    PoolInfo,
    Position,
    PositionConfigError,
    PositionStatus,
    RebalanceDecision,
    RebalanceTrigger,
    TxResult,
)
from lp_agent.optin_registry import OptInRegistry, OptInStatus
from lp_agent.price_oracle import PriceOracle
from lp_agent.stablecoins import is_stablecoin_pair, stablecoin_side

logger = get_logger(__name__)

PositionKey = Tuple[str, str]  # (owner, position id)

SECONDS_PER_DAY = 86_400.0
_INACTIVE = (PositionStatus.PENDING, PositionStatus.CLOSED)


class PositionMonitor:
    """
    Scheduler and sole writer of the in-memory position table.

    Collaborators are injected; ``aggregator``, ``reasoner``, ``oracle``
    and ``fee_accountant`` are optional. Without an aggregator no
    migration is considered; without an oracle the policy's default SOL
    price is used.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        opt_in: OptInRegistry,
        *,
        policy: Optional[PolicyConfig] = None,
        activity: Optional[ActivityFeed] = None,
        reasoning: Optional[ReasoningFeed] = None,
        aggregator: Optional[Aggregator] = None,
        reasoner: Optional[AdvisoryReasoner] = None,
        oracle: Optional[PriceOracle] = None,
        fee_accountant: Optional[FeeAccountant] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.opt_in = opt_in
        self.policy = policy or PolicyConfig()
        self.activity = activity if activity is not None else ActivityFeed()
        self.reasoning = reasoning if reasoning is not None else ReasoningFeed()
        self.aggregator = aggregator
        self.reasoner = reasoner
        self.oracle = oracle
        self.fee_accountant = fee_accountant or FeeAccountant()
        self.clock = clock

        self._positions: Dict[PositionKey, Position] = {}
        self._locks: Dict[PositionKey, asyncio.Lock] = {}
        self._last_decisions: Dict[PositionKey, RebalanceDecision] = {}
        self._manual_requests: Set[PositionKey] = set()
        self._evaluation_counts: Dict[PositionKey, int] = {}
        self._time_checked_at: Dict[PositionKey, float] = {}
        self._price_history: Dict[str, Deque[Tuple[float, float]]] = {}

        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._inflight: Set[asyncio.Task] = set()

    # ── Position table ───────────────────────────────────────────────────

    def add_position(self, position: Position) -> None:
        """
        Start tracking a position.

        Raises:
            PositionConfigError: if the position or its strategy is invalid,
                or no adapter is registered for its venue.
        """
        position.validate()
        if not self.registry.has(position.dex):
            raise PositionConfigError(
                f"position {position.id}: no adapter registered for {position.dex.value}"
            )
        key = position.key
        if key in self._positions:
            logger.info("replacing tracked position %s", position.id)
        self._positions[key] = position
        self._locks.setdefault(key, asyncio.Lock())
        logger.info("tracking %s position %s (%s)", position.dex.value, position.id, position.pool_address)

    def remove_position(self, owner: str, position_id: str) -> bool:
        key = (owner, position_id)
        if key not in self._positions:
            return False
        del self._positions[key]
        self._last_decisions.pop(key, None)
        self._manual_requests.discard(key)
        self._evaluation_counts.pop(key, None)
        self._time_checked_at.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
        return True

    def mark_closed(self, owner: str, position_id: str) -> None:
        """Record an owner withdrawal observed outside the agent. Terminal."""
        position = self._require(owner, position_id)
        position.status = PositionStatus.CLOSED
        self._manual_requests.discard(position.key)
        self.activity.push(
            ActivityType.POSITION_CLOSED,
            f"Position {position.id} closed by owner",
            {"position_id": position.id, "owner": owner},
        )

    def request_manual_check(self, owner: str, position_id: str) -> None:
        """Ask for a ``manual`` rebalance on the next evaluation of this position."""
        position = self._require(owner, position_id)
        if position.status == PositionStatus.CLOSED:
            raise PositionConfigError(f"position {position_id} is closed")
        self._manual_requests.add(position.key)

    def get_position(self, owner: str, position_id: str) -> Optional[Position]:
        return self._positions.get((owner, position_id))

    def get_positions(self) -> List[Position]:
        return list(self._positions.values())

    def get_last_decision(self, owner: str, position_id: str) -> Optional[RebalanceDecision]:
        return self._last_decisions.get((owner, position_id))

    def status_report(self) -> List[Dict[str, Any]]:
        """Read-only snapshot for the outer API: position, status, last decision."""
        report = []
        for key, position in self._positions.items():
            decision = self._last_decisions.get(key)
            report.append({
                "position": position.to_dict(),
                "status": position.status.value,
                "last_checked_at": position.last_checked_at,
                "last_decision": None if decision is None else {
                    "should_rebalance": decision.should_rebalance,
                    "trigger": decision.trigger.value,
                    "reason": decision.reason,
                    "new_lower_price": decision.new_lower_price,
                    "new_upper_price": decision.new_upper_price,
                    "target_pool": decision.target_pool.address if decision.target_pool else None,
                    "estimated_gas_cost": decision.estimated_gas_cost,
                    "estimated_benefit": decision.estimated_benefit,
                    "risk_score": decision.risk_score,
                },
            })
        return report

    def _require(self, owner: str, position_id: str) -> Position:
        position = self._positions.get((owner, position_id))
        if position is None:
            raise KeyError(f"position {position_id} of {owner} is not tracked")
        return position

    def _lock_for(self, key: PositionKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Run a cycle now, then every ``policy.check_interval_seconds``."""
        if self.is_running:
            return
        self._stop_requested = False
        self._task = asyncio.create_task(self._run_loop())
        self.activity.push(
            ActivityType.AGENT_STARTED,
            f"Monitoring {len(self._positions)} positions every {self.policy.check_interval_seconds:g}s",
        )
        logger.info("monitor started (interval %.0fs)", self.policy.check_interval_seconds)

    async def stop(self) -> None:
        """Cancel future cycles. A cycle already dispatched runs to completion."""
        self._stop_requested = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.activity.push(ActivityType.AGENT_STOPPED, "Monitor stopped")
        logger.info("monitor stopped (%d cycles still in flight)", len(self._inflight))

    async def wait_idle(self) -> None:
        """Wait for in-flight cycles (e.g. after ``stop()``)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run_loop(self) -> None:
        while not self._stop_requested:
            cycle = asyncio.create_task(self.run_cycle())
            self._inflight.add(cycle)
            cycle.add_done_callback(self._inflight.discard)
            try:
                # Cancelling the loop must not cancel the cycle itself
                await asyncio.shield(cycle)
            except Exception:
                logger.exception("evaluation cycle failed")
            if self._stop_requested:
                break
            await asyncio.sleep(self.policy.check_interval_seconds)

    # ── Cycle ────────────────────────────────────────────────────────────

    async def run_cycle(self) -> List[RebalanceDecision]:
        """Evaluate every eligible position concurrently. Never raises."""
        keys = [k for k, p in self._positions.items() if p.status not in _INACTIVE]
        results = await asyncio.gather(*(self._evaluate_guarded(k) for k in keys))
        return [d for d in results if d is not None]

    async def _evaluate_guarded(self, key: PositionKey) -> Optional[RebalanceDecision]:
        try:
            return await self.evaluate_position(key)
        except Exception as e:
            logger.exception("evaluation of position %s failed", key[1])
            self.activity.push(
                ActivityType.REBALANCE_CHECK,
                f"Check failed for {key[1]}: {e}",
                {"position_id": key[1], "error": str(e), "success": False},
            )
            return None

    async def evaluate_position(self, key: PositionKey) -> Optional[RebalanceDecision]:
        """
        One evaluation of one position.

        Returns the decision when the position reached the decision step
        (acted on or not), None when it was skipped before that.
        """
        position = self._positions.get(key)
        if position is None or position.status in _INACTIVE:
            return None

        # An evaluation completing under the lock after this point supersedes this one
        seen_evaluations = self._evaluation_counts.get(key, 0)

        adapter = self.registry.get(position.dex)
        pool = await self._read(adapter.get_pool_info(position.pool_address))
        now = self.clock()
        price = pool.current_price
        self._record_price(pool.address, now, price)

        lock = self._lock_for(key)
        trigger = self._detect_trigger(position, price, now)

        if not lock.locked():
            position.status = (
                PositionStatus.ACTIVE if position.in_range(price) else PositionStatus.OUT_OF_RANGE
            )
        position.last_checked_at = now
        if trigger is None:
            return None

        logger.info("position %s: trigger %s at price %.6f", position.id, trigger.value, price)
        if trigger == RebalanceTrigger.PRICE_EXIT:
            self.activity.push(
                ActivityType.PRICE_ALERT,
                f"Price {price:.6f} outside range [{position.lower_price:.6f}, {position.upper_price:.6f}]",
                {"position_id": position.id, "price": price},
            )

        # Gate 1: opt-in
        opt_in = await self._opt_in_status(position)
        if opt_in is None:
            self._skip(position, trigger, "auto-rebalance not enabled for this position")
            return None

        # Gate 2: cooldown (dominates every trigger)
        if position.last_rebalance_at is not None:
            elapsed = now - position.last_rebalance_at
            interval = position.strategy.min_rebalance_interval
            if elapsed < interval:
                self._skip(
                    position, trigger,
                    f"cooldown: {elapsed:.0f}s since last rebalance, minimum {interval}s",
                )
                return None

        # Gate 3: at most one action in flight per position
        if lock.locked():
            self._skip(position, trigger, "another action is in flight for this position")
            return None

        async with lock:
            if (
                self._positions.get(key) is not position
                or self._evaluation_counts.get(key, 0) != seen_evaluations
                or position.status in _INACTIVE
            ):
                self._skip(position, trigger, "superseded by a concurrent evaluation")
                return None
            if trigger == RebalanceTrigger.MANUAL:
                self._manual_requests.discard(key)
            try:
                return await self._decide_and_act(key, position, adapter, pool, trigger, opt_in, now)
            finally:
                # position.key differs from key after a migration re-keyed the record
                done = position.key
                self._evaluation_counts[done] = self._evaluation_counts.get(done, 0) + 1

    async def _decide_and_act(
        self,
        key: PositionKey,
        position: Position,
        adapter: DexAdapter,
        pool: PoolInfo,
        trigger: RebalanceTrigger,
        opt_in: OptInStatus,
        now: float,
    ) -> RebalanceDecision:
        decision = await self._decide(position, pool, adapter, trigger, opt_in, now)
        self._last_decisions[key] = decision
        if trigger == RebalanceTrigger.TIME_BASED:
            self._time_checked_at[key] = now
        self.reasoning.log(
            position_id=position.id,
            trigger=trigger.value,
            should_rebalance=decision.should_rebalance,
            reason=decision.reason,
            estimated_benefit=decision.estimated_benefit,
            estimated_cost=decision.estimated_gas_cost,
            risk_score=decision.risk_score,
        )
        if decision.should_rebalance:
            await self._dispatch(key, position, adapter, pool, decision)
        else:
            self.activity.push(
                ActivityType.REBALANCE_CHECK,
                f"No action for {position.id}: {decision.reason}",
                {"position_id": position.id, "trigger": trigger.value},
            )
        return decision

    # ── Triggers & gates ─────────────────────────────────────────────────

    def _detect_trigger(self, position: Position, price: float, now: float) -> Optional[RebalanceTrigger]:
        if not position.in_range(price):
            return RebalanceTrigger.PRICE_EXIT
        if position.key in self._manual_requests:
            return RebalanceTrigger.MANUAL

        since = position.last_rebalance_at if position.last_rebalance_at is not None else position.created_at
        since = max(since, self._time_checked_at.get(position.key, since))
        if now - since > self.policy.time_based_window_seconds:
            return RebalanceTrigger.TIME_BASED

        target = position.strategy.target_daily_yield
        if target is not None:
            current = self._current_yield(position, price, now)
            if current is not None and current < target * self.policy.yield_shortfall_ratio:
                return RebalanceTrigger.YIELD_TARGET
        return None

    def _current_yield(self, position: Position, price: float, now: float) -> Optional[float]:
        """Realized daily yield (%) from unclaimed fees; None with too little history."""
        since = position.last_rebalance_at if position.last_rebalance_at is not None else position.created_at
        days = (now - since) / SECONDS_PER_DAY
        value = position.value_in_quote(price)
        if days < self.policy.min_days_for_yield_estimate or value <= 0:
            return None
        return position.fees_in_quote(price) / value / days * 100

    async def _opt_in_status(self, position: Position) -> Optional[OptInStatus]:
        if not position.strategy.auto_rebalance:
            return None
        status = await self._read(self.opt_in.lookup(position.owner, position.id))
        if status is None or not status.enabled:
            return None
        return status

    def _skip(self, position: Position, trigger: RebalanceTrigger, reason: str) -> None:
        logger.info("position %s: %s trigger skipped: %s", position.id, trigger.value, reason)
        self.activity.push(
            ActivityType.REBALANCE_CHECK,
            f"{trigger.value} trigger for {position.id} skipped: {reason}",
            {"position_id": position.id, "trigger": trigger.value, "skipped": True},
        )

    # ── Decision ─────────────────────────────────────────────────────────

    async def _decide(
        self,
        position: Position,
        pool: PoolInfo,
        adapter: DexAdapter,
        trigger: RebalanceTrigger,
        opt_in: OptInStatus,
        now: float,
    ) -> RebalanceDecision:
        price = pool.current_price
        sol_price = await self._sol_price()
        value_usd = await self._position_value_usd(position, pool, sol_price)
        volatility = self._volatility(pool.address)
        target = position.strategy.target_daily_yield or self.policy.default_target_daily_yield

        calc = YieldCalculator.calculate(
            YieldCalcInput(
                target_daily_yield=target,
                current_price=price,
                volatility_24h=volatility,
                pool_fee_bps=pool.fee_bps,
                volume_24h=pool.volume_24h,
                tvl=pool.tvl,
            ),
            sol_price_usd=sol_price,
        )
        current_yield = 0.0
        if position.in_range(price):
            current_yield = self._current_yield(position, price, now) or 0.0

        gas = adapter.estimate_gas("rebalance")
        economics = analyze_in_pool_rebalance(
            current_yield, calc.estimated_daily_yield, value_usd, gas, sol_price, self.policy
        )
        risk = calculate_risk_score(price, position.lower_price, position.upper_price,
                                    position.last_rebalance_at, now)

        if trigger == RebalanceTrigger.MANUAL:
            should, reason = True, f"manual rebalance requested; {economics.reason}"
        else:
            should, reason = economics.justified, economics.reason

        decision = RebalanceDecision(
            should_rebalance=should,
            trigger=trigger,
            reason=f"{trigger.value}: {reason}",
            new_lower_price=calc.recommended_lower,
            new_upper_price=calc.recommended_upper,
            estimated_gas_cost=gas,
            estimated_benefit=economics.daily_benefit_usd,
            risk_score=risk,
        )

        if opt_in.cross_pool_allowed:
            in_pool_net = (
                economics.daily_benefit_usd - economics.cost_usd / self.policy.max_break_even_days
                if economics.justified else -math.inf
            )
            await self._consider_migration(position, pool, decision, value_usd, sol_price, in_pool_net)

        if self.reasoner is not None and not decision.is_migration:
            context = MarketContext(
                current_price=price,
                price_change_1h=self._price_change(pool.address, 3600, now),
                price_change_24h=self._price_change(pool.address, SECONDS_PER_DAY, now),
                volatility_24h=volatility,
                pool_tvl=pool.tvl,
                pool_volume_24h=pool.volume_24h,
                pool_fee_bps=pool.fee_bps,
                current_yield_24h=current_yield,
                gas_estimate_sol=decision.estimated_gas_cost,
                position_value_usd=value_usd,
                sol_price_usd=sol_price,
            )
            opinion = await self.reasoner.analyze_rebalance(position, context, trigger.value)
            decision.reason = f"{decision.reason} | {opinion.summary()}"

        return decision

    async def _consider_migration(
        self,
        position: Position,
        pool: PoolInfo,
        decision: RebalanceDecision,
        value_usd: float,
        sol_price: float,
        in_pool_net: float,
    ) -> None:
        if self.aggregator is None:
            return
        if value_usd < self.policy.min_migration_value_usd:
            logger.debug("position %s: $%.2f too small to migrate", position.id, value_usd)
            return

        pools = await self.aggregator.find_pools_for_pair(pool.token_a_mint, pool.token_b_mint)
        candidates = [p for p in pools if p.address != pool.address][: self.policy.migration_candidates]
        best = best_migration(pool, candidates, value_usd, sol_price, self.policy)
        target = next((p for p in candidates if best and p.address == best.target_pool_address), None)

        self.activity.push(
            ActivityType.MIGRATION_CHECK,
            best.reason if best else f"No profitable migration among {len(candidates)} candidate pools",
            {"position_id": position.id, "candidates": len(candidates)},
        )
        if best is None or target is None or best.net_benefit_per_day <= in_pool_net:
            return

        new_range = recenter_range(position.lower_price, position.upper_price, target.current_price)
        migrate_gas = (
            self.registry.get(position.dex).estimate_gas("close")
            + self.registry.get(target.dex).estimate_gas("create")
        )
        decision.should_rebalance = True
        decision.target_pool = target
        decision.new_lower_price = new_range["lower"]
        decision.new_upper_price = new_range["upper"]
        decision.estimated_gas_cost = migrate_gas
        decision.estimated_benefit = best.net_benefit_per_day
        decision.reason = f"{decision.trigger.value}: {best.reason}"
        if self.reasoner is not None:
            opinion = await self.reasoner.analyze_migration(position, pool, target, best.migration_cost)
            decision.reason = f"{decision.reason} | {opinion.summary()}"

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def _dispatch(
        self,
        key: PositionKey,
        position: Position,
        adapter: DexAdapter,
        pool: PoolInfo,
        decision: RebalanceDecision,
    ) -> None:
        prior_status = position.status
        position.status = PositionStatus.PENDING
        try:
            await self._collect_fees(position, adapter, pool.current_price)
            if decision.is_migration:
                result = await self._migrate(key, position, adapter, decision)
            else:
                result = await adapter.rebalance(
                    RebalanceParams(
                        position_id=position.id,
                        owner=position.owner,
                        new_lower_price=decision.new_lower_price,
                        new_upper_price=decision.new_upper_price,
                        slippage_bps=position.strategy.max_slippage_bps,
                    )
                )
                if result.success and position.status == PositionStatus.PENDING:
                    self._apply_range(position, decision, result)
        except BaseException:
            if position.status == PositionStatus.PENDING:
                position.status = prior_status
            raise

        if result.success and position.status != PositionStatus.PENDING:
            # Closed while the action was in flight; closed is terminal
            logger.warning("position %s was closed during the %s; keeping it closed (%s)",
                           position.id, "migration" if decision.is_migration else "rebalance",
                           result.signature)
            self.activity.push(
                ActivityType.REBALANCE_CHECK,
                f"Action on {position.id} confirmed after the position was closed",
                {"position_id": position.id, "signature": result.signature, "success": True,
                 "trigger": decision.trigger.value},
            )
            return

        if result.success:
            position.status = PositionStatus.ACTIVE
            position.last_rebalance_at = self.clock()
            action = "Migrated" if decision.is_migration else "Rebalanced"
            logger.info("%s position %s → [%.6f, %.6f] (%s)", action.lower(), position.id,
                        position.lower_price, position.upper_price, result.signature)
            self.activity.push(
                ActivityType.REBALANCE_CHECK,
                f"{action} {position.id} to [{position.lower_price:.6f}, {position.upper_price:.6f}]",
                {"position_id": position.id, "signature": result.signature, "success": True,
                 "trigger": decision.trigger.value},
            )
            return

        if position.status == PositionStatus.PENDING:
            position.status = prior_status
        logger.warning("action on position %s failed: %s", position.id, result.error)
        self.activity.push(
            ActivityType.REBALANCE_CHECK,
            f"Rebalance of {position.id} failed: {result.error}",
            {"position_id": position.id, "error": result.error, "success": False,
             "trigger": decision.trigger.value},
        )

    async def _collect_fees(self, position: Position, adapter: DexAdapter, price: float) -> None:
        if position.unclaimed_fees_a <= 0 and position.unclaimed_fees_b <= 0:
            return
        try:
            result = await adapter.collect_fees(CollectFeesParams(position.id, position.owner))
        except Exception as e:
            logger.warning("fee collection for %s raised: %s", position.id, e)
            return
        if not result.success:
            logger.warning("fee collection for %s failed: %s", position.id, result.error)
            return

        split = self.fee_accountant.calculate_performance_fee(position.fees_in_quote(price))
        self.fee_accountant.record_performance(split)
        position.unclaimed_fees_a = 0.0
        position.unclaimed_fees_b = 0.0
        self.activity.push(
            ActivityType.FEE_COLLECTION,
            f"Collected fees for {position.id}: {split.amount} (performance fee {split.total_fee})",
            {
                "position_id": position.id,
                "signature": result.signature,
                "claimed": str(split.amount),
                "to_user": str(split.to_user),
                "to_treasury": str(split.to_treasury),
                "to_agent_gas": str(split.to_agent_gas),
            },
        )

    async def _migrate(
        self, key: PositionKey, position: Position, adapter: DexAdapter, decision: RebalanceDecision
    ) -> TxResult:
        target = decision.target_pool
        closed = await adapter.close_position(
            ClosePositionParams(position.id, position.owner, 100.0, position.strategy.max_slippage_bps)
        )
        if not closed.success:
            return closed

        created = await self.registry.get(target.dex).create_position(
            CreatePositionParams(
                pool_address=target.address,
                owner=position.owner,
                lower_price=decision.new_lower_price,
                upper_price=decision.new_upper_price,
                token_a_amount=position.token_a_amount,
                token_b_amount=position.token_b_amount,
                slippage_bps=position.strategy.max_slippage_bps,
            )
        )
        if not created.success:
            # Liquidity is withdrawn and no new position exists
            position.status = PositionStatus.CLOSED
            self.activity.push(
                ActivityType.POSITION_CLOSED,
                f"Position {position.id} closed but re-open on {target.dex.value} failed: {created.error}",
                {"position_id": position.id, "target_pool": target.address, "error": created.error},
            )
            return created

        old_id = position.id
        position.dex = target.dex
        position.pool_address = target.address
        self._apply_range(position, decision, created)
        if created.position is not None and created.position.id != old_id:
            position.id = created.position.id
            self._rekey(key, position.key)
        self.activity.push(
            ActivityType.POSITION_OPENED,
            f"Position {old_id} migrated to {target.dex.value} pool {target.address[:8]} as {position.id}",
            {"old_position_id": old_id, "position_id": position.id, "target_pool": target.address},
        )
        return created

    @staticmethod
    def _apply_range(position: Position, decision: RebalanceDecision, result: TxResult) -> None:
        position.lower_price = decision.new_lower_price
        position.upper_price = decision.new_upper_price
        if result.position is not None:
            position.liquidity = result.position.liquidity
            position.token_a_amount = result.position.token_a_amount
            position.token_b_amount = result.position.token_b_amount

    def _rekey(self, old: PositionKey, new: PositionKey) -> None:
        self._positions[new] = self._positions.pop(old)
        self._locks[new] = self._locks.pop(old)
        for table in (self._last_decisions, self._evaluation_counts, self._time_checked_at):
            if old in table:
                table[new] = table.pop(old)

    # ── Market inputs ────────────────────────────────────────────────────

    async def _read(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.policy.call_timeout_seconds)

    async def _sol_price(self) -> float:
        if self.oracle is None:
            return self.policy.default_sol_price_usd
        try:
            price = await self._read(self.oracle.get_price("SOL"))
        except asyncio.TimeoutError:
            logger.warning("SOL price lookup timed out; using default")
            price = 0.0
        return price if price > 0 else self.policy.default_sol_price_usd

    async def _position_value_usd(self, position: Position, pool: PoolInfo, sol_price: float) -> float:
        price = pool.current_price
        value_in_quote = position.value_in_quote(price)
        side = stablecoin_side(pool.token_a_symbol, pool.token_b_symbol)
        if side == 1 or is_stablecoin_pair(pool.token_a_symbol, pool.token_b_symbol):
            return value_in_quote
        if side == 0:
            return value_in_quote / price if price > 0 else 0.0
        if pool.token_b_symbol.upper() in ("SOL", "WSOL"):
            return value_in_quote * sol_price
        if self.oracle is not None:
            try:
                quote_usd = await self._read(self.oracle.get_price(pool.token_b_symbol))
            except asyncio.TimeoutError:
                logger.warning("%s price lookup timed out", pool.token_b_symbol)
                quote_usd = 0.0
            return value_in_quote * quote_usd
        return 0.0

    def _record_price(self, pool_address: str, now: float, price: float) -> None:
        history = self._price_history.get(pool_address)
        if history is None:
            history = self._price_history[pool_address] = deque(maxlen=self.policy.price_history_size)
        if history and history[-1][0] == now:
            return
        history.append((now, price))

    def _volatility(self, pool_address: str) -> float:
        """Daily volatility (fraction) scaled from per-sample returns."""
        history = self._price_history.get(pool_address) or ()
        sigma = YieldCalculator.estimate_volatility([p for _, p in history])
        if sigma is None:
            return self.policy.default_volatility
        span = history[-1][0] - history[0][0]
        if span <= 0:
            return self.policy.default_volatility
        mean_step = span / (len(history) - 1)
        return sigma * math.sqrt(SECONDS_PER_DAY / mean_step)

    def _price_change(self, pool_address: str, window_seconds: float, now: float) -> float:
        """Percent change from the oldest sample inside the window to the latest."""
        history = self._price_history.get(pool_address)
        if not history:
            return 0.0
        inside = [p for t, p in history if now - t <= window_seconds]
        if len(inside) < 2 or inside[0] <= 0:
            return 0.0
        return (inside[-1] - inside[0]) / inside[0] * 100
