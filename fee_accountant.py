#!/usr/bin/env python3
"""
Fee Accountant — deposit and performance fee splits
====================================================

Revenue model:
  - Deposit fee     : deposit_fee_bps of each deposit → treasury
  - Performance fee : performance_fee_bps of claimed LP fees, of which
                      agent_gas_reserve_bps stays with the agent for gas
                      and the rest goes to the treasury

All arithmetic is ``decimal.Decimal`` in a 50-digit context, so every
split sums exactly to its input. With a ``quantum`` (smallest unit, e.g.
Decimal(1) for lamports), fee shares are floored to that unit and the
remainder stays with the position/user.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Dict, Optional, Union

from lp_agent.central_config import BPS_DENOMINATOR, FeeConfig
from lp_agent.models import FeeSplit

Number = Union[Decimal, int, float, str]

_PRECISION = 50


def to_decimal(value: Number) -> Decimal:
    """Exact Decimal for ints/strings; floats go through their repr (0.1 → 0.1)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


class FeeAccountant:
    def __init__(self, fee_config: Optional[FeeConfig] = None, quantum: Optional[Decimal] = None):
        self.config = fee_config or FeeConfig()
        self.quantum = quantum
        self._total_deposit_fees = Decimal(0)
        self._total_performance_fees = Decimal(0)
        self._total_gas_reserved = Decimal(0)

    def _share(self, amount: Decimal, bps: int) -> Decimal:
        fee = amount * bps / BPS_DENOMINATOR
        if self.quantum is not None:
            fee = fee.quantize(self.quantum, rounding=ROUND_DOWN)
        return fee

    @staticmethod
    def _checked(amount: Number) -> Decimal:
        try:
            value = to_decimal(amount)
        except InvalidOperation as e:
            raise ValueError(f"not a number: {amount!r}") from e
        if not value.is_finite() or value < 0:
            raise ValueError(f"amount must be a finite non-negative number, got {amount}")
        return value

    def calculate_deposit_fee(self, amount: Number) -> FeeSplit:
        """Split a deposit: ``to_position + to_treasury == amount``."""
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            value = self._checked(amount)
            fee = self._share(value, self.config.deposit_fee_bps)
            return FeeSplit(
                amount=value,
                total_fee=fee,
                to_position=value - fee,
                to_treasury=fee,
            )

    def calculate_performance_fee(self, claimed_amount: Number) -> FeeSplit:
        """Split claimed fees: ``to_user + to_treasury + to_agent_gas == claimed_amount``."""
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            value = self._checked(claimed_amount)
            total_fee = self._share(value, self.config.performance_fee_bps)
            to_agent_gas = self._share(total_fee, self.config.agent_gas_reserve_bps)
            return FeeSplit(
                amount=value,
                total_fee=total_fee,
                to_user=value - total_fee,
                to_treasury=total_fee - to_agent_gas,
                to_agent_gas=to_agent_gas,
            )

    # ── Running totals ──

    def record_deposit(self, split: FeeSplit) -> None:
        self._total_deposit_fees += split.to_treasury

    def record_performance(self, split: FeeSplit) -> None:
        self._total_performance_fees += split.total_fee
        self._total_gas_reserved += split.to_agent_gas

    def get_stats(self) -> Dict[str, object]:
        return {
            "total_deposit_fees": self._total_deposit_fees,
            "total_performance_fees": self._total_performance_fees,
            "total_gas_reserved": self._total_gas_reserved,
            "config": {
                "deposit_fee_bps": self.config.deposit_fee_bps,
                "performance_fee_bps": self.config.performance_fee_bps,
                "agent_gas_reserve_bps": self.config.agent_gas_reserve_bps,
                "treasury_address": self.config.treasury_address,
            },
        }
