"""
Activity & Reasoning Feeds — bounded, newest-first observability sinks
=======================================================================

The monitor writes here; the outer API/CLI reads. Neither feed is
consulted for decisions. Inserting beyond capacity evicts the oldest
entry.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

MAX_ACTIVITIES = 100
MAX_DECISIONS = 50


class ActivityType(str, Enum):
    REBALANCE_CHECK = "rebalance_check"
    FEE_COLLECTION = "fee_collection"
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    PRICE_ALERT = "price_alert"
    HEALTH_CHECK = "health_check"
    MIGRATION_CHECK = "migration_check"
    AGENT_STARTED = "agent_started"
    AGENT_STOPPED = "agent_stopped"


@dataclass(frozen=True)
class Activity:
    timestamp: float
    type: ActivityType
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReasoningEntry:
    timestamp: float
    position_id: str
    trigger: str
    should_rebalance: bool
    reason: str
    estimated_benefit: Optional[float] = None
    estimated_cost: Optional[float] = None
    risk_score: Optional[int] = None


class ActivityFeed:
    """Typed events with a message and optional structured details."""

    def __init__(self, capacity: int = MAX_ACTIVITIES):
        self._entries: Deque[Activity] = deque(maxlen=capacity)

    def push(self, type: ActivityType, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self._entries.append(Activity(time.time(), ActivityType(type), message, dict(details or {})))

    def get_all(self) -> List[Activity]:
        return list(reversed(self._entries))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ReasoningFeed:
    """One record per decision the engine reaches."""

    def __init__(self, capacity: int = MAX_DECISIONS):
        self._entries: Deque[ReasoningEntry] = deque(maxlen=capacity)

    def log(
        self,
        position_id: str,
        trigger: str,
        should_rebalance: bool,
        reason: str,
        estimated_benefit: Optional[float] = None,
        estimated_cost: Optional[float] = None,
        risk_score: Optional[int] = None,
    ) -> None:
        self._entries.append(
            ReasoningEntry(
                timestamp=time.time(),
                position_id=position_id,
                trigger=trigger,
                should_rebalance=should_rebalance,
                reason=reason,
                estimated_benefit=estimated_benefit,
                estimated_cost=estimated_cost,
                risk_score=risk_score,
            )
        )

    def get_all(self) -> List[ReasoningEntry]:
        return list(reversed(self._entries))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
