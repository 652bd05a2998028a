"""Split a sell into slices whose individual price impact stays under a bound."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000
FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000
DEFAULT_MAX_SLICES = 50


@dataclass(frozen=True)
class OrderPlan:
    slices: list[int] = field(default_factory=list)
    min_out_per_slice: list[int] = field(default_factory=list)
    expected_out_per_slice: list[int] = field(default_factory=list)
    capped: bool = False

    @property
    def total(self) -> int:
        return sum(self.slices)

    @property
    def min_out_total(self) -> int:
        return sum(self.min_out_per_slice)

    def __bool__(self) -> bool:
        return bool(self.slices)


def amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """Constant-product output after the 0.3% pool fee, rounded down like the pair contract."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    amount_in_with_fee = amount_in * FEE_NUMERATOR
    return (amount_in_with_fee * reserve_out) // (reserve_in * FEE_DENOMINATOR + amount_in_with_fee)


def price_impact_bps(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """Shortfall of the realised output versus the mid price, in basis points (fee included)."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    ideal = amount_in * reserve_out // reserve_in
    if ideal <= 0:
        return 0
    out = amount_out(amount_in, reserve_in, reserve_out)
    return (ideal - out) * BPS_DENOMINATOR // ideal


def apply_safety(expected_out: int, safety_bps: int) -> int:
    safety = max(0, min(BPS_DENOMINATOR, int(safety_bps)))
    return expected_out * (BPS_DENOMINATOR - safety) // BPS_DENOMINATOR


def _split_evenly(total: int, parts: int) -> list[int]:
    base, remainder = divmod(total, parts)
    return [base + (1 if i < remainder else 0) for i in range(parts)]


def plan(
    total: int,
    reserve_in: int,
    reserve_out: int,
    max_slippage_bps: int,
    *,
    safety_bps: int = 50,
    max_slices: int = DEFAULT_MAX_SLICES,
) -> OrderPlan:
    """Partition `total` into near-equal slices sized to `max_slippage_bps` of `reserve_in`.

    Each slice's minimum output is priced against the plan-time reserves; the
    executor re-prices against live reserves before sending each one.
    """
    total = int(total)
    if total <= 0:
        return OrderPlan()

    if reserve_in <= 0 or reserve_out <= 0:
        logger.warning("SLICE_PLAN reserves_invalid r_in=%s r_out=%s total=%s", reserve_in, reserve_out, total)
        return OrderPlan(slices=[total], min_out_per_slice=[0], expected_out_per_slice=[0])

    bps = max(1, min(BPS_DENOMINATOR, int(max_slippage_bps)))
    slice_cap = max(1, int(max_slices))
    approx_slice = max(1, reserve_in * bps // BPS_DENOMINATOR)
    wanted = -(-total // approx_slice)
    parts = max(1, min(wanted, slice_cap, total))
    capped = wanted > slice_cap
    if capped:
        logger.warning(
            "SLICE_PLAN cap_binding wanted=%s cap=%s total=%s r_in=%s bps=%s",
            wanted,
            slice_cap,
            total,
            reserve_in,
            bps,
        )

    slices = _split_evenly(total, parts)
    expected = [amount_out(s, reserve_in, reserve_out) for s in slices]
    min_outs = [apply_safety(e, safety_bps) for e in expected]
    logger.debug("SLICE_PLAN total=%s slices=%s approx=%s min_out_total=%s", total, parts, approx_slice, sum(min_outs))
    return OrderPlan(slices=slices, min_out_per_slice=min_outs, expected_out_per_slice=expected, capped=capped)
