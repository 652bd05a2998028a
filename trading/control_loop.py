"""Scheduler that turns quotes into gated, sliced, settled sells (and optional mints)."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from market.feeds import CycleInfo
from market.models import FP_SCALE, PoolSnapshot, PriceQuote
from market.price_oracle import PriceOracle
from trading import order_slicer
from trading.admission_gate import AdmissionGate, GateDecision
from trading.errors import (
    AutotraderError,
    CorruptLedger,
    InsufficientFunds,
    InsufficientInventory,
    QuoteUnavailable,
    ReceiptTimeout,
    SimulationRevert,
    StaleQuote,
    TransientIOError,
)
from trading.ledger import LedgerState, LedgerStore, PendingSettlement, PendingSettlementStore, realized_pnl
from trading.mint_cost import FeeReading, choose_mint_size, cycle_burn_cap
from trading.order_slicer import OrderPlan

logger = logging.getLogger(__name__)

MIN_POLL_SECONDS = 5.0
HARD_FAILURES = (SimulationRevert, InsufficientFunds, InsufficientInventory)


class LoopState(str, Enum):
    IDLE = "idle"
    QUOTING = "quoting"
    GATING = "gating"
    SLICING = "slicing"
    EXECUTING = "executing"
    SETTLING = "settling"
    BACKOFF = "backoff"
    COOLDOWN = "cooldown"


@dataclass
class TradeReceipt:
    tx_hashes: list[str] = field(default_factory=list)
    sold_quantity: int = 0
    received_base: int = 0
    filled_slices: int = 0
    requested_slices: int = 0
    confirmed: bool = True
    dry_run: bool = False
    unconfirmed: list[tuple[str, int]] = field(default_factory=list)
    aborted_reason: str = ""

    @property
    def partial(self) -> bool:
        return self.filled_slices < self.requested_slices


class TradeExecutor(Protocol):
    def submit_trade(self, plan: OrderPlan) -> TradeReceipt: ...

    def get_receipt_status(self, tx_hash: str) -> bool | None: ...


class FeeSource(Protocol):
    def get_current_fee_level(self) -> int: ...

    def quote_mint_rate(self) -> int: ...


class MintSubmitter(Protocol):
    def submit_mint(self, size_bytes: int) -> tuple[int, int]: ...


class DecisionSink(Protocol):
    def write(self, row: dict[str, Any]) -> None: ...


class BackoffPolicy:
    """Delay after failures: doubles from the poll interval up to a ceiling, reset on success."""

    def __init__(self, base_seconds: float, ceiling_seconds: float = 600.0) -> None:
        self.base_seconds = max(MIN_POLL_SECONDS, float(base_seconds))
        self.ceiling_seconds = max(self.base_seconds, float(ceiling_seconds))
        self.current_seconds = self.base_seconds
        self.failures = 0

    def on_failure(self) -> float:
        self.failures += 1
        self.current_seconds = min(self.current_seconds * 2, self.ceiling_seconds)
        return self.current_seconds

    def reset(self) -> None:
        self.failures = 0
        self.current_seconds = self.base_seconds


@dataclass(frozen=True)
class LoopConfig:
    poll_seconds: float = 30.0
    backoff_max_seconds: float = 600.0
    call_timeout_seconds: float = 30.0
    slippage_bps: int = 100
    min_out_safety_bps: int = 50
    max_slices: int = 50
    trade_size: int = 0
    chunk_pct: float = 0.2
    min_trade_size: int = 10**18
    dry_run: bool = True
    stop_on_failure: bool = False
    pending_max_age_seconds: float = 3600.0
    mint_enabled: bool = False
    gas_price_multiplier: float = 1.5
    mint_size_kb: int = 0
    mint_min_size_kb: int = 25
    mint_max_size_kb: int = 100
    mint_size_step_kb: int = 25
    mint_max_burn_wei: int | None = None
    cycle_alpha: float = 0.9
    max_cycle_share: float | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "LoopConfig":
        return cls(
            poll_seconds=settings.poll_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
            call_timeout_seconds=settings.call_timeout_seconds,
            slippage_bps=settings.slippage_bps,
            min_out_safety_bps=settings.min_out_safety_bps,
            max_slices=settings.max_slices,
            trade_size=settings.trade_size,
            chunk_pct=settings.chunk_pct,
            min_trade_size=settings.min_trade_size,
            dry_run=settings.dry_run,
            stop_on_failure=settings.stop_on_failure,
            pending_max_age_seconds=settings.pending_max_age_seconds,
            mint_enabled=settings.mint_enabled,
            gas_price_multiplier=settings.gas_price_multiplier,
            mint_size_kb=settings.mint_size_kb,
            mint_min_size_kb=settings.mint_min_size_kb,
            mint_max_size_kb=settings.mint_max_size_kb,
            mint_size_step_kb=settings.mint_size_step_kb,
            mint_max_burn_wei=settings.mint_max_eth_per_tx_wei,
            cycle_alpha=settings.cycle_alpha,
            max_cycle_share=settings.max_cycle_share,
        )


@dataclass
class CycleOutcome:
    state: LoopState
    reason: str
    delay_seconds: float
    path: tuple[LoopState, ...] = ()
    sold: int = 0
    decision: GateDecision | None = None


def sell_amount(inventory: int, *, trade_size: int, chunk_pct: float, min_trade_size: int) -> int:
    """Quantity to offer this cycle, never more than what is held; 0 when holdings are below `min_trade_size`."""
    if inventory <= 0 or inventory < min_trade_size:
        return 0
    if trade_size > 0:
        return min(trade_size, inventory)
    chunk = inventory * int(round(chunk_pct * 1_000_000)) // 1_000_000
    return min(max(chunk, min_trade_size), inventory)


class ControlLoop:
    def __init__(
        self,
        cfg: LoopConfig,
        *,
        oracle: PriceOracle,
        ledger: LedgerStore,
        gate: AdmissionGate,
        executor: TradeExecutor | None,
        token_address: str,
        pending: PendingSettlementStore | None = None,
        fee_source: FeeSource | None = None,
        mint_submitter: MintSubmitter | None = None,
        cycle_info_source: Callable[[], Awaitable[CycleInfo | None]] | None = None,
        decision_sink: DecisionSink | None = None,
        reserves_reader: Callable[[], PoolSnapshot] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self.oracle = oracle
        self.ledger = ledger
        self.gate = gate
        self.executor = executor
        self.token_address = token_address
        self.pending = pending
        self.fee_source = fee_source
        self.mint_submitter = mint_submitter
        self.cycle_info_source = cycle_info_source
        self.decision_sink = decision_sink
        self.reserves_reader = reserves_reader
        self._clock = clock
        self.poll_seconds = max(MIN_POLL_SECONDS, float(cfg.poll_seconds))
        self.backoff = BackoffPolicy(self.poll_seconds, cfg.backoff_max_seconds)
        self.state = LoopState.IDLE
        self.cycle = 0
        self.stop_event = asyncio.Event()
        self._path: list[LoopState] = []

    # plumbing ---------------------------------------------------------------

    def request_stop(self) -> None:
        self.stop_event.set()

    def _enter(self, state: LoopState) -> None:
        self.state = state
        self._path.append(state)

    async def _call(self, fn: Callable[..., Any], *args: Any, timeout: float | None = None) -> Any:
        limit = self.cfg.call_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=limit)
        except asyncio.TimeoutError as exc:
            name = getattr(fn, "__name__", repr(fn))
            raise TransientIOError(f"{name} timed out after {limit:.0f}s") from exc

    def _emit(self, stage: str, decision: str, reasons: list[str] | tuple[str, ...], **fields: Any) -> None:
        if self.decision_sink is None:
            return
        row = {"cycle": self.cycle, "decision_stage": stage, "decision": decision, "reasons": list(reasons)}
        row.update(fields)
        self.decision_sink.write(row)

    def _finish(self, state: LoopState, reason: str, delay: float, **extra: Any) -> CycleOutcome:
        self._enter(state)
        return CycleOutcome(state=state, reason=reason, delay_seconds=delay, path=tuple(self._path), **extra)

    def _idle(self, reason: str, **extra: Any) -> CycleOutcome:
        return self._finish(LoopState.IDLE, reason, self.poll_seconds, **extra)

    def _fail(self, reason: str, exc: BaseException | None = None) -> CycleOutcome:
        delay = self.backoff.on_failure()
        if exc is not None and isinstance(exc, HARD_FAILURES) and self.cfg.stop_on_failure:
            logger.error("LOOP_STOP_ON_FAILURE reason=%s err=%s", reason, exc)
            self.request_stop()
        return self._finish(LoopState.BACKOFF, reason, delay)

    # settlement ------------------------------------------------------------

    async def _reconcile_pending(self) -> bool:
        """Settle deferred sells from chain receipts; True when nothing remains outstanding."""
        if self.pending is None or self.executor is None:
            return True
        rows = await asyncio.to_thread(self.pending.load)
        if not rows:
            return True
        keep: list[PendingSettlement] = []
        for row in rows:
            statuses = [await self._call(self.executor.get_receipt_status, h) for h in row.tx_hashes]
            if any(s is False for s in statuses):
                logger.warning("SETTLEMENT_DROPPED txs=%s reason=reverted", ",".join(row.tx_hashes))
                self._emit("settle", "drop", ["simulation_revert"], tx_hashes=row.tx_hashes, quantity=row.quantity)
                continue
            if all(s is True for s in statuses):
                try:
                    await asyncio.to_thread(self.ledger.apply_sell, row.quantity)
                except InsufficientInventory as exc:
                    logger.error("SETTLEMENT_INCONSISTENT qty=%s available=%s", exc.requested, exc.available)
                    self._emit("settle", "drop", [exc.reason], tx_hashes=row.tx_hashes, quantity=row.quantity)
                    continue
                logger.info("SETTLEMENT_RECONCILED qty=%s txs=%s", row.quantity, ",".join(row.tx_hashes))
                self._emit("settle", "apply", ["reconciled"], tx_hashes=row.tx_hashes, quantity=row.quantity)
                continue
            age = self._clock() - row.created_ts
            max_age = self.cfg.pending_max_age_seconds
            if max_age > 0 and age > max_age:
                # No receipt after the window: treated as dropped from the mempool, ledger untouched.
                logger.warning(
                    "SETTLEMENT_EXPIRED txs=%s qty=%s age=%.0fs max_age=%.0fs",
                    ",".join(row.tx_hashes),
                    row.quantity,
                    age,
                    max_age,
                )
                self._emit("settle", "drop", ["settlement_expired"], tx_hashes=row.tx_hashes, quantity=row.quantity)
                continue
            keep.append(row)
        await asyncio.to_thread(self.pending.replace, keep)
        return not keep

    async def _defer(self, entries: list[tuple[str, int]]) -> None:
        if not entries:
            return
        if self.pending is None:
            logger.error("SETTLEMENT_UNTRACKED entries=%s", entries)
            return
        for tx_hash, quantity in entries:
            entry = PendingSettlement(tx_hashes=[tx_hash], quantity=quantity, created_ts=self._clock())
            await asyncio.to_thread(self.pending.add, entry)

    # cycle -----------------------------------------------------------------

    async def run_cycle(self) -> CycleOutcome:
        self.cycle += 1
        self._path = []
        self._enter(LoopState.IDLE)
        outcome = await self._cycle()
        outcome.path = tuple(self._path)
        logger.info(
            "LOOP_CYCLE n=%s state=%s reason=%s next_in=%.0fs path=%s",
            self.cycle,
            outcome.state.value,
            outcome.reason,
            outcome.delay_seconds,
            ">".join(s.value for s in outcome.path),
        )
        return outcome

    async def _cycle(self) -> CycleOutcome:
        try:
            settled = await self._reconcile_pending()
        except TransientIOError as exc:
            logger.warning("SETTLEMENT_CHECK transient err=%s", exc)
            return self._idle("transient_io")
        if not settled:
            return self._idle("settlement_pending")

        if self.gate.in_cooldown():
            remaining = self.gate.cooldown_remaining()
            self._emit("gate", "skip", ["cooldown"], cooldown_remaining_s=round(remaining, 1))
            return self._finish(LoopState.COOLDOWN, "cooldown", max(self.poll_seconds, remaining))

        self._enter(LoopState.QUOTING)
        try:
            quote = await self._call(self.oracle.quote)
        except (QuoteUnavailable, TransientIOError) as exc:
            logger.warning("LOOP_QUOTE_FAILED err=%s", exc)
            self._emit("quote", "skip", ["quote_unavailable"], error=str(exc))
            return self._fail("quote_unavailable", exc)

        ledger_state = await asyncio.to_thread(self.ledger.read)

        outcome = await self._sell_leg(quote, ledger_state)
        if outcome.state is LoopState.BACKOFF or self.stop_event.is_set():
            return outcome

        transient = outcome.reason == "transient_io"
        if self.cfg.mint_enabled and self.fee_source is not None:
            mint_outcome = await self._mint_leg(quote)
            if mint_outcome is None:
                self.state = outcome.state
            elif mint_outcome.state is LoopState.BACKOFF:
                return mint_outcome
            else:
                transient = transient or mint_outcome.reason == "transient_io"
                mint_outcome.sold = outcome.sold
                mint_outcome.decision = outcome.decision
                outcome = mint_outcome
        if outcome.state is LoopState.IDLE and not transient:
            self.backoff.reset()
        return outcome

    async def _sell_leg(self, quote: PriceQuote, ledger_state: LedgerState) -> CycleOutcome:
        self._enter(LoopState.GATING)
        market_fp = self.oracle.market_price_fp(quote.value_fp)
        decision = self.gate.evaluate(quote, ledger_state, market_price_fp=market_fp)
        common = {
            "price_fp": quote.value_fp,
            "market_price_fp": market_fp,
            "wac_fp": ledger_state.weighted_avg_cost_fp,
            "inventory": ledger_state.inventory_quantity,
            "price_source": quote.source.value,
        }
        if not decision.accept:
            self._emit("gate", "reject", decision.reasons, **common)
            return self._idle(decision.reasons[0], decision=decision)

        amount = sell_amount(
            ledger_state.inventory_quantity,
            trade_size=self.cfg.trade_size,
            chunk_pct=self.cfg.chunk_pct,
            min_trade_size=self.cfg.min_trade_size,
        )
        self._enter(LoopState.SLICING)
        if amount <= 0:
            logger.info(
                "SELL_SKIP inventory=%s min_trade_size=%s",
                ledger_state.inventory_quantity,
                self.cfg.min_trade_size,
            )
            self._emit("slice", "skip", ["below_min_trade_size"], min_trade_size=self.cfg.min_trade_size, **common)
            return self._idle("below_min_trade_size", decision=decision)
        snapshot = quote.snapshot
        if snapshot is None:
            if self.reserves_reader is None:
                self._emit("slice", "skip", ["quote_unavailable"], **common)
                return self._fail("quote_unavailable")
            try:
                snapshot = await self._call(self.reserves_reader)
            except Exception as exc:
                logger.warning("LOOP_RESERVES_FAILED err=%s", exc)
                return self._fail("quote_unavailable", exc)
        reserve_in, reserve_out = snapshot.oriented(self.token_address)
        plan = order_slicer.plan(
            amount,
            reserve_in,
            reserve_out,
            self.cfg.slippage_bps,
            safety_bps=self.cfg.min_out_safety_bps,
            max_slices=self.cfg.max_slices,
        )
        logger.info(
            "SELL_PLAN amount=%s slices=%s min_out_total=%s capped=%s",
            amount,
            len(plan.slices),
            plan.min_out_total,
            plan.capped,
        )

        self._enter(LoopState.EXECUTING)
        if self.cfg.dry_run or self.executor is None:
            logger.info("SELL_DRY_RUN amount=%s expected_out=%s (no ledger write)", amount, sum(plan.expected_out_per_slice))
            self._emit("execute", "dry_run", [], amount=amount, slices=len(plan.slices), **common)
            return self._idle("dry_run", decision=decision)

        try:
            receipt: TradeReceipt = await asyncio.to_thread(self.executor.submit_trade, plan)
        except TransientIOError as exc:
            logger.warning("SELL_TRANSIENT err=%s", exc)
            self._emit("execute", "retry", [exc.reason], amount=amount, error=str(exc), **common)
            return self._idle("transient_io", decision=decision)
        except ReceiptTimeout as exc:
            self._enter(LoopState.SETTLING)
            await self._defer([(exc.tx_hash, exc.quantity or amount)])
            self._emit("settle", "defer", [exc.reason], tx_hashes=[exc.tx_hash], amount=amount, **common)
            return self._idle("receipt_timeout", decision=decision)
        except StaleQuote as exc:
            logger.warning("SELL_STALE err=%s", exc)
            self._emit("execute", "abort", [exc.reason], amount=amount, **common)
            return self._idle("stale_quote", decision=decision)
        except AutotraderError as exc:
            logger.error("SELL_FAILED reason=%s err=%s", exc.reason, exc)
            self._emit("execute", "fail", [exc.reason], amount=amount, error=str(exc), **common)
            return self._fail(exc.reason, exc)
        except Exception as exc:
            logger.exception("SELL_FAILED unexpected")
            self._emit("execute", "fail", ["unexpected"], amount=amount, error=str(exc), **common)
            return self._fail("unexpected", exc)

        return await self._settle_sell(receipt, quote, ledger_state, decision, common)

    async def _settle_sell(
        self,
        receipt: TradeReceipt,
        quote: PriceQuote,
        ledger_state: LedgerState,
        decision: GateDecision,
        common: dict[str, Any],
    ) -> CycleOutcome:
        self._enter(LoopState.SETTLING)
        await self._defer(receipt.unconfirmed)
        if receipt.sold_quantity > 0:
            try:
                await asyncio.to_thread(self.ledger.apply_sell, receipt.sold_quantity)
            except InsufficientInventory as exc:
                logger.error("SETTLEMENT_INCONSISTENT qty=%s available=%s", exc.requested, exc.available)
                self._emit("settle", "fail", [exc.reason], tx_hashes=receipt.tx_hashes, **common)
                return self._fail(exc.reason, exc)
            sale_fp = receipt.received_base * FP_SCALE // receipt.sold_quantity
            pnl = realized_pnl(sale_fp, ledger_state.effective_cost_fp, receipt.sold_quantity)
            logger.info(
                "SELL_SETTLED qty=%s received=%s slices=%s/%s pnl_eth=%.8f",
                receipt.sold_quantity,
                receipt.received_base,
                receipt.filled_slices,
                receipt.requested_slices,
                pnl / FP_SCALE,
            )
        reasons = [receipt.aborted_reason] if receipt.aborted_reason else []
        if receipt.unconfirmed:
            reasons.append("receipt_timeout")
        self._emit(
            "settle",
            "sold" if receipt.sold_quantity else "none",
            reasons,
            tx_hashes=receipt.tx_hashes,
            quantity=receipt.sold_quantity,
            received_base=receipt.received_base,
            **common,
        )
        if receipt.aborted_reason in ("simulation_revert", "insufficient_funds"):
            return self._fail(receipt.aborted_reason)
        return self._idle(reasons[0] if reasons else "sold", decision=decision, sold=receipt.sold_quantity)

    async def _read_fee(self) -> FeeReading:
        base_fee = await self._call(self.fee_source.get_current_fee_level)
        return FeeReading.from_base_fee(base_fee, self.cfg.gas_price_multiplier)

    async def _mint_leg(self, quote: PriceQuote) -> CycleOutcome | None:
        """Run the acquisition side; None when it neither minted nor failed."""
        self._enter(LoopState.GATING)
        try:
            fee = await self._read_fee()
            if self.gate.fee_in_window(fee) is not None:
                waited = await self.gate.wait_for_fee_window(self._read_fee, stop_event=self.stop_event)
                if waited is not None:
                    fee = waited
            mint_rate = int(await self._call(self.fee_source.quote_mint_rate))
            cycle = await self.cycle_info_source() if self.cycle_info_source is not None else None
        except TransientIOError as exc:
            logger.warning("MINT_INPUTS transient err=%s", exc)
            return self._idle("transient_io")

        cap = cycle_burn_cap(
            cycle.remaining if cycle else None,
            mint_rate,
            alpha=self.cfg.cycle_alpha,
            max_cycle_share=self.cfg.max_cycle_share,
            per_tx_cap_wei=self.cfg.mint_max_burn_wei,
        )
        size_kwargs = dict(
            fixed_kb=self.cfg.mint_size_kb,
            min_kb=self.cfg.mint_min_size_kb,
            max_kb=self.cfg.mint_max_size_kb,
            step_kb=self.cfg.mint_size_step_kb,
        )
        estimate = choose_mint_size(fee, mint_rate, max_burn_wei=cap, **size_kwargs)
        if estimate is None:
            # Nothing fits under the cap; let the gate report why with the smallest candidate.
            estimate = choose_mint_size(fee, mint_rate, **size_kwargs)
        if estimate is None:
            self._emit("mint_gate", "reject", ["discount_insufficient"], mint_rate=mint_rate)
            return None

        ledger_state = await asyncio.to_thread(self.ledger.read)
        market_fp = self.oracle.market_price_fp(quote.value_fp)
        decision = self.gate.evaluate_mint(
            quote,
            ledger_state,
            estimate,
            fee,
            cycle,
            market_price_fp=market_fp,
            mint_rate=mint_rate,
        )
        if not decision.accept:
            self._emit("mint_gate", "reject", decision.reasons, cost_per_unit_fp=estimate.cost_per_unit_fp)
            return None

        self._enter(LoopState.EXECUTING)
        if self.cfg.dry_run or self.mint_submitter is None:
            label = "dry_run" if self.cfg.dry_run else "advisory"
            logger.info(
                "MINT_%s size=%s burn=%s minted_est=%s",
                label.upper(),
                estimate.size_bytes,
                estimate.estimated_burn_wei,
                estimate.minted_estimate,
            )
            self._emit("mint", label, [], size_bytes=estimate.size_bytes)
            return None
        try:
            minted, cost_paid = await asyncio.to_thread(self.mint_submitter.submit_mint, estimate.size_bytes)
        except TransientIOError as exc:
            logger.warning("MINT_TRANSIENT err=%s", exc)
            return self._idle("transient_io")
        except AutotraderError as exc:
            logger.error("MINT_FAILED reason=%s err=%s", exc.reason, exc)
            self._emit("mint", "fail", [exc.reason], error=str(exc))
            return self._fail(exc.reason, exc)

        self._enter(LoopState.SETTLING)
        if minted <= 0:
            logger.warning("MINT_EMPTY cost=%s", cost_paid)
            return None
        await asyncio.to_thread(self.ledger.apply_mint, minted, cost_paid)
        realized_cost_fp = cost_paid * FP_SCALE // minted
        self.gate.record_realized_edge(market_fp - realized_cost_fp)
        self._emit("mint", "minted", [], quantity=minted, cost_paid=cost_paid, realized_cost_fp=realized_cost_fp)
        return self._idle("minted")

    async def run(self) -> None:
        logger.info(
            "LOOP_START poll=%.0fs dry_run=%s mint=%s",
            self.poll_seconds,
            self.cfg.dry_run,
            bool(self.cfg.mint_enabled and self.fee_source),
        )
        while not self.stop_event.is_set():
            try:
                outcome = await self.run_cycle()
            except CorruptLedger:
                raise
            except Exception:
                logger.exception("Control loop error")
                outcome = self._fail("unexpected")
            if self.stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=outcome.delay_seconds)
            except asyncio.TimeoutError:
                pass
        self.state = LoopState.IDLE
        logger.info("LOOP_STOP cycles=%s", self.cycle)
