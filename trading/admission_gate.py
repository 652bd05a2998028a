"""Multi-criterion admission gate for sell and mint decisions.

Every criterion whose inputs are present is evaluated and every failing one is
reported, so a rejected cycle logs the complete set of reasons. Ratios are kept
as integers scaled by 1e6; floats appear only in log output.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from market.feeds import CycleInfo
from market.models import FP_SCALE, PriceQuote
from trading.ledger import LedgerState
from trading.mint_cost import FeeReading, MintCostEstimate, cycle_burn_cap

logger = logging.getLogger(__name__)

PPM = 1_000_000

NO_INVENTORY = "no_inventory"
BELOW_TAKE_PROFIT = "below_take_profit"
DISCOUNT_INSUFFICIENT = "discount_insufficient"
EDGE_BELOW_MINIMUM = "edge_below_minimum"
EFFICIENCY_LOW = "efficiency_low"
COST_ABOVE_MAX = "cost_above_max"
FEE_BELOW_WINDOW = "fee_below_window"
FEE_ABOVE_WINDOW = "fee_above_window"
CYCLE_NOT_EARLY = "cycle_not_early"
CYCLE_LATE_WEAK = "cycle_late_weak"
CYCLE_NEAR_CAP = "cycle_near_cap"
MINT_RATE_BELOW_FLOOR = "mint_rate_below_floor"
CYCLE_CAP_EXCEEDED = "cycle_cap_exceeded"
COOLDOWN = "cooldown"

# Thresholds that loosen after sustained waiting; everything else is fixed.
RELAXABLE_REASONS = frozenset({EFFICIENCY_LOW, COST_ABOVE_MAX, FEE_ABOVE_WINDOW})


def _ppm(value: float) -> int:
    return int(round(float(value) * PPM))


@dataclass(frozen=True)
class GateConfig:
    take_profit: float = 0.12
    target_discount: float = 0.2
    min_abs_edge_wei: int = 0
    max_cost_per_unit_wei: int | None = None
    min_efficiency_percent: float = 99.0
    fee_min_wei: int | None = None
    fee_max_wei: int | None = None
    fee_hard_ceiling_wei: int | None = None
    fee_check_interval_seconds: float = 60.0
    fee_max_wait_seconds: float = 180.0
    max_progress: float = 0.3
    min_blocks_left: int = 250
    b_wait: int = 40
    u_weak: float = 0.6
    e_high: float = 0.9
    cycle_alpha: float = 0.9
    max_cycle_share: float | None = None
    rate_floor: int | None = None
    edge_warn_wei: int = 0
    edge_weak_streak: int = 3
    cooldown_minutes: float = 30.0
    relax_after_cycles: int = 5
    relax_step_percent: float = 10.0
    relax_max_percent: float = 50.0

    @classmethod
    def from_settings(cls, settings: Any) -> "GateConfig":
        return cls(
            take_profit=settings.take_profit,
            target_discount=settings.target_discount,
            min_abs_edge_wei=settings.min_abs_edge_wei,
            max_cost_per_unit_wei=settings.max_cost_per_unit_wei,
            min_efficiency_percent=settings.min_efficiency_percent,
            fee_min_wei=settings.fee_min_wei,
            fee_max_wei=settings.fee_max_wei,
            fee_hard_ceiling_wei=settings.fee_hard_ceiling_wei,
            fee_check_interval_seconds=settings.fee_check_interval_seconds,
            fee_max_wait_seconds=settings.fee_max_wait_seconds,
            max_progress=settings.max_progress,
            min_blocks_left=settings.min_blocks_left,
            b_wait=settings.b_wait,
            u_weak=settings.u_weak,
            e_high=settings.e_high,
            cycle_alpha=settings.cycle_alpha,
            max_cycle_share=settings.max_cycle_share,
            rate_floor=settings.rate_floor,
            edge_warn_wei=settings.edge_warn_wei,
            edge_weak_streak=settings.edge_weak_streak,
            cooldown_minutes=settings.cooldown_minutes,
            relax_after_cycles=settings.relax_after_cycles,
            relax_step_percent=settings.relax_step_percent,
            relax_max_percent=settings.relax_max_percent,
        )


@dataclass(frozen=True)
class EffectiveThresholds:
    relax_percent: float
    fee_max_wei: int | None
    max_cost_per_unit_wei: int | None
    min_efficiency_ppm: int


@dataclass(frozen=True)
class GateDecision:
    accept: bool
    reasons: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_reasons(cls, reasons: list[str], details: dict[str, Any]) -> "GateDecision":
        return cls(accept=not reasons, reasons=tuple(reasons), details=details)


def take_profit_trigger_fp(wac_fp: int, take_profit: float) -> int:
    """Price at which a sale clears cost basis by `take_profit`; the multiplier is floored to 1e-6."""
    multiplier_ppm = int((1.0 + float(take_profit)) * PPM)
    return wac_fp * multiplier_ppm // PPM


class AdmissionGate:
    def __init__(self, cfg: GateConfig, *, clock: Callable[[], float] = time.time) -> None:
        self.cfg = cfg
        self._clock = clock
        self._wait_cycles = 0
        self._edge_history: deque[int] = deque(maxlen=max(5, int(cfg.edge_weak_streak)))
        self._cooldown_until = 0.0

    # relaxation -------------------------------------------------------------

    @property
    def wait_cycles(self) -> int:
        return self._wait_cycles

    def relax_percent(self) -> float:
        after = max(1, int(self.cfg.relax_after_cycles))
        if self._wait_cycles < after:
            return 0.0
        steps = self._wait_cycles - after + 1
        return min(float(self.cfg.relax_max_percent), steps * float(self.cfg.relax_step_percent))

    def effective_thresholds(self) -> EffectiveThresholds:
        pct = self.relax_percent()
        factor_ppm = PPM + _ppm(pct / 100.0)

        fee_max = self.cfg.fee_max_wei
        if fee_max is not None:
            fee_max = fee_max * factor_ppm // PPM
            if self.cfg.fee_hard_ceiling_wei is not None:
                fee_max = min(fee_max, self.cfg.fee_hard_ceiling_wei)
        max_cost = self.cfg.max_cost_per_unit_wei
        if max_cost is not None:
            max_cost = max_cost * factor_ppm // PPM
        min_eff = _ppm(self.cfg.min_efficiency_percent / 100.0) * PPM // factor_ppm
        return EffectiveThresholds(
            relax_percent=pct,
            fee_max_wei=fee_max,
            max_cost_per_unit_wei=max_cost,
            min_efficiency_ppm=min_eff,
        )

    def _note_outcome(self, reasons: list[str]) -> None:
        if not reasons:
            if self._wait_cycles:
                logger.info("GATE_RELAX reset after=%s cycles", self._wait_cycles)
            self._wait_cycles = 0
        elif set(reasons) <= RELAXABLE_REASONS:
            self._wait_cycles += 1

    # cooldown ---------------------------------------------------------------

    def cooldown_remaining(self) -> float:
        return max(0.0, self._cooldown_until - self._clock())

    def in_cooldown(self) -> bool:
        return self.cooldown_remaining() > 0

    def record_realized_edge(self, edge_wei: int) -> bool:
        """Track the edge of a completed acquisition; returns True when it starts a cooldown."""
        self._edge_history.append(int(edge_wei))
        needed = max(1, int(self.cfg.edge_weak_streak))
        recent = list(self._edge_history)[-needed:]
        weak = len(recent) == needed and all(e < self.cfg.edge_warn_wei for e in recent)
        if not weak or self.cfg.cooldown_minutes <= 0:
            return False
        self._cooldown_until = self._clock() + float(self.cfg.cooldown_minutes) * 60.0
        logger.warning(
            "GATE_COOLDOWN start minutes=%s recent_edges=%s warn=%s",
            self.cfg.cooldown_minutes,
            recent,
            self.cfg.edge_warn_wei,
        )
        return True

    # criteria ---------------------------------------------------------------

    def _check_take_profit(self, quote: PriceQuote, ledger: LedgerState, reasons: list[str], details: dict) -> None:
        if ledger.inventory_quantity <= 0:
            reasons.append(NO_INVENTORY)
            return
        trigger = take_profit_trigger_fp(ledger.effective_cost_fp, self.cfg.take_profit)
        details["take_profit_trigger_fp"] = trigger
        if quote.value_fp < trigger:
            reasons.append(BELOW_TAKE_PROFIT)

    def _check_cost(
        self,
        estimate: MintCostEstimate,
        market_fp: int,
        limits: EffectiveThresholds,
        reasons: list[str],
        details: dict,
    ) -> None:
        cost = estimate.cost_per_unit_fp
        ceiling = market_fp * (PPM - _ppm(self.cfg.target_discount)) // PPM
        edge = market_fp - cost
        details.update(
            cost_per_unit_fp=cost,
            discount_ceiling_fp=ceiling,
            edge_fp=edge,
            efficiency_ppm=estimate.efficiency_ppm,
            min_efficiency_ppm=limits.min_efficiency_ppm,
        )
        if estimate.minted_estimate <= 0 or cost > ceiling:
            reasons.append(DISCOUNT_INSUFFICIENT)
        if edge <= self.cfg.min_abs_edge_wei:
            reasons.append(EDGE_BELOW_MINIMUM)
        if estimate.efficiency_ppm < limits.min_efficiency_ppm:
            reasons.append(EFFICIENCY_LOW)
        if limits.max_cost_per_unit_wei is not None and cost > limits.max_cost_per_unit_wei:
            reasons.append(COST_ABOVE_MAX)

    def fee_in_window(self, fee: FeeReading, limits: EffectiveThresholds | None = None) -> str | None:
        limits = limits or self.effective_thresholds()
        if self.cfg.fee_min_wei is not None and fee.boosted_fee_wei < self.cfg.fee_min_wei:
            return FEE_BELOW_WINDOW
        if limits.fee_max_wei is not None and fee.boosted_fee_wei > limits.fee_max_wei:
            return FEE_ABOVE_WINDOW
        return None

    def _check_cycle(
        self,
        cycle: CycleInfo,
        mint_rate: int | None,
        estimate: MintCostEstimate | None,
        reasons: list[str],
        details: dict,
    ) -> None:
        if mint_rate is not None and self.cfg.rate_floor is not None and mint_rate < self.cfg.rate_floor:
            reasons.append(MINT_RATE_BELOW_FLOOR)
        if cycle.progress is not None and cycle.blocks_left is not None:
            progress_ppm = _ppm(cycle.progress)
            early_ok = progress_ppm <= _ppm(self.cfg.max_progress) and cycle.blocks_left >= self.cfg.min_blocks_left
            late_weak = cycle.blocks_left < self.cfg.b_wait and progress_ppm < _ppm(self.cfg.u_weak)
            near_cap = progress_ppm >= _ppm(self.cfg.e_high)
            details.update(cycle_progress=cycle.progress, cycle_blocks_left=cycle.blocks_left)
            if not early_ok:
                reasons.append(CYCLE_NOT_EARLY)
            if late_weak:
                reasons.append(CYCLE_LATE_WEAK)
            if near_cap:
                reasons.append(CYCLE_NEAR_CAP)
        if estimate is not None and mint_rate:
            cap = cycle_burn_cap(
                cycle.remaining,
                mint_rate,
                alpha=self.cfg.cycle_alpha,
                max_cycle_share=self.cfg.max_cycle_share,
            )
            details["cycle_burn_cap_wei"] = cap
            if cap is not None and estimate.estimated_burn_wei > cap:
                reasons.append(CYCLE_CAP_EXCEEDED)

    # entry points -----------------------------------------------------------

    def evaluate(
        self,
        quote: PriceQuote,
        ledger: LedgerState,
        cost_estimate: MintCostEstimate | None = None,
        gas_estimate: FeeReading | None = None,
        cycle_info: CycleInfo | None = None,
        *,
        market_price_fp: int | None = None,
        mint_rate: int | None = None,
        check_take_profit: bool = True,
    ) -> GateDecision:
        reasons: list[str] = []
        limits = self.effective_thresholds()
        market_fp = market_price_fp or quote.value_fp
        details: dict[str, Any] = {
            "price_fp": quote.value_fp,
            "market_price_fp": market_fp,
            "source": quote.source.value,
            "relax_percent": limits.relax_percent,
        }

        if check_take_profit:
            self._check_take_profit(quote, ledger, reasons, details)
        if cost_estimate is not None:
            self._check_cost(cost_estimate, market_fp, limits, reasons, details)
        if gas_estimate is not None:
            details["fee_wei"] = gas_estimate.boosted_fee_wei
            fee_reason = self.fee_in_window(gas_estimate, limits)
            if fee_reason:
                reasons.append(fee_reason)
        if cycle_info is not None or mint_rate is not None:
            self._check_cycle(cycle_info or CycleInfo(), mint_rate, cost_estimate, reasons, details)
        if self.in_cooldown():
            details["cooldown_remaining_s"] = round(self.cooldown_remaining(), 1)
            reasons.append(COOLDOWN)

        if cost_estimate is not None or gas_estimate is not None:
            self._note_outcome(reasons)

        decision = GateDecision.from_reasons(reasons, details)
        logger.info(
            "GATE_DECISION accept=%s reasons=%s price=%.10f market=%.10f relax=%.0f%%",
            decision.accept,
            ",".join(decision.reasons) or "-",
            quote.value_fp / FP_SCALE,
            market_fp / FP_SCALE,
            limits.relax_percent,
        )
        return decision

    def evaluate_mint(
        self,
        quote: PriceQuote,
        ledger: LedgerState,
        cost_estimate: MintCostEstimate | None,
        gas_estimate: FeeReading | None,
        cycle_info: CycleInfo | None = None,
        *,
        market_price_fp: int | None = None,
        mint_rate: int | None = None,
    ) -> GateDecision:
        return self.evaluate(
            quote,
            ledger,
            cost_estimate,
            gas_estimate,
            cycle_info,
            market_price_fp=market_price_fp,
            mint_rate=mint_rate,
            check_take_profit=False,
        )

    async def wait_for_fee_window(
        self,
        read_fee: Callable[[], Awaitable[FeeReading]],
        *,
        stop_event: asyncio.Event | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> FeeReading | None:
        """Poll the fee level until it enters the window or the wait budget runs out."""
        deadline = monotonic() + max(0.0, float(self.cfg.fee_max_wait_seconds))
        interval = max(0.01, float(self.cfg.fee_check_interval_seconds))
        while True:
            fee = await read_fee()
            reason = self.fee_in_window(fee)
            if reason is None:
                return fee
            remaining = deadline - monotonic()
            logger.info(
                "FEE_WINDOW wait reason=%s fee_gwei=%.3f remaining=%.0fs",
                reason,
                fee.boosted_fee_wei / 1e9,
                max(0.0, remaining),
            )
            if remaining <= 0:
                return None
            delay = min(interval, remaining)
            if stop_event is None:
                await asyncio.sleep(delay)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                return None
            except asyncio.TimeoutError:
                pass
