from __future__ import annotations

import unittest

from market.feeds import CycleInfo
from market.models import PriceQuote, PriceSource
from trading.admission_gate import AdmissionGate, GateConfig, take_profit_trigger_fp
from trading.ledger import LedgerState
from trading.mint_cost import BYTES_PER_KB, FeeReading, estimate_mint_cost

E18 = 10**18
GWEI = 10**9


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _quote(value_fp: int) -> PriceQuote:
    return PriceQuote(value_fp=value_fp, source=PriceSource.RESERVE_FALLBACK)


def _estimate(size_kb: int = 100, mint_rate: int = 100):
    fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI)
    return estimate_mint_cost(size_kb * BYTES_PER_KB, fee, mint_rate), fee


class TakeProfitTests(unittest.TestCase):
    def setUp(self) -> None:
        self.gate = AdmissionGate(GateConfig(take_profit=0.12))
        self.ledger = LedgerState(inventory_quantity=100 * E18, weighted_avg_cost_fp=E18)

    def test_trigger_price(self) -> None:
        self.assertEqual(take_profit_trigger_fp(E18, 0.12), 112 * 10**16)

    def test_quote_above_trigger_accepts(self) -> None:
        decision = self.gate.evaluate(_quote(115 * 10**16), self.ledger)
        self.assertTrue(decision.accept)
        self.assertEqual(decision.reasons, ())

    def test_quote_at_trigger_accepts(self) -> None:
        self.assertTrue(self.gate.evaluate(_quote(112 * 10**16), self.ledger).accept)

    def test_quote_below_trigger_rejects(self) -> None:
        decision = self.gate.evaluate(_quote(110 * 10**16), self.ledger)
        self.assertFalse(decision.accept)
        self.assertEqual(decision.reasons, ("below_take_profit",))

    def test_no_inventory_rejects(self) -> None:
        decision = self.gate.evaluate(_quote(10 * E18), LedgerState())
        self.assertEqual(decision.reasons, ("no_inventory",))


class MintCriteriaTests(unittest.TestCase):
    def test_discounted_efficient_mint_accepts(self) -> None:
        estimate, fee = _estimate()
        gate = AdmissionGate(GateConfig())
        decision = gate.evaluate_mint(
            _quote(estimate.cost_per_unit_fp * 2),
            LedgerState(),
            estimate,
            fee,
        )
        self.assertTrue(decision.accept, decision.reasons)
        self.assertEqual(decision.details["edge_fp"], estimate.cost_per_unit_fp)

    def test_market_price_drives_discount_and_edge(self) -> None:
        estimate, fee = _estimate()
        gate = AdmissionGate(GateConfig())
        decision = gate.evaluate_mint(
            _quote(estimate.cost_per_unit_fp * 2),
            LedgerState(),
            estimate,
            fee,
            market_price_fp=estimate.cost_per_unit_fp,
        )
        self.assertEqual(decision.reasons, ("discount_insufficient", "edge_below_minimum"))

    def test_small_payload_is_inefficient(self) -> None:
        estimate, fee = _estimate(size_kb=25)
        gate = AdmissionGate(GateConfig(min_efficiency_percent=99.0))
        decision = gate.evaluate_mint(_quote(estimate.cost_per_unit_fp * 2), LedgerState(), estimate, fee)
        self.assertEqual(decision.reasons, ("efficiency_low",))

    def test_cost_ceiling(self) -> None:
        estimate, fee = _estimate()
        gate = AdmissionGate(GateConfig(max_cost_per_unit_wei=estimate.cost_per_unit_fp - 1))
        decision = gate.evaluate_mint(_quote(estimate.cost_per_unit_fp * 2), LedgerState(), estimate, fee)
        self.assertEqual(decision.reasons, ("cost_above_max",))

    def test_fee_window_bounds(self) -> None:
        fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI)
        high = AdmissionGate(GateConfig(fee_max_wei=12 * GWEI))
        low = AdmissionGate(GateConfig(fee_min_wei=20 * GWEI))
        self.assertEqual(high.fee_in_window(fee), "fee_above_window")
        self.assertEqual(low.fee_in_window(fee), "fee_below_window")
        self.assertIsNone(AdmissionGate(GateConfig()).fee_in_window(fee))

    def test_cycle_timing(self) -> None:
        gate = AdmissionGate(GateConfig())
        quote = _quote(E18)

        def reasons(cycle: CycleInfo) -> tuple[str, ...]:
            return gate.evaluate_mint(quote, LedgerState(), None, None, cycle).reasons

        self.assertEqual(reasons(CycleInfo(progress=0.1, blocks_left=400)), ())
        self.assertEqual(reasons(CycleInfo(progress=0.5, blocks_left=300)), ("cycle_not_early",))
        self.assertEqual(
            reasons(CycleInfo(progress=0.2, blocks_left=30)),
            ("cycle_not_early", "cycle_late_weak"),
        )
        self.assertEqual(reasons(CycleInfo(progress=0.95, blocks_left=300)), ("cycle_not_early", "cycle_near_cap"))
        self.assertEqual(reasons(CycleInfo()), ())

    def test_mint_rate_floor(self) -> None:
        gate = AdmissionGate(GateConfig(rate_floor=10))
        decision = gate.evaluate_mint(_quote(E18), LedgerState(), None, None, mint_rate=5)
        self.assertEqual(decision.reasons, ("mint_rate_below_floor",))

    def test_burn_above_cycle_room(self) -> None:
        estimate, fee = _estimate()
        gate = AdmissionGate(GateConfig(cycle_alpha=1.0))
        cycle = CycleInfo(minted=0, target=estimate.estimated_burn_wei * 100 // 2)
        decision = gate.evaluate_mint(
            _quote(estimate.cost_per_unit_fp * 2),
            LedgerState(),
            estimate,
            fee,
            cycle,
            mint_rate=100,
        )
        self.assertEqual(decision.reasons, ("cycle_cap_exceeded",))


class RelaxationTests(unittest.TestCase):
    def test_fee_ceiling_relaxes_after_waiting(self) -> None:
        gate = AdmissionGate(
            GateConfig(fee_max_wei=12 * GWEI, relax_after_cycles=2, relax_step_percent=10.0, relax_max_percent=50.0)
        )
        fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=13 * GWEI)
        quote = _quote(E18)
        self.assertFalse(gate.evaluate_mint(quote, LedgerState(), None, fee).accept)
        self.assertEqual(gate.wait_cycles, 1)
        self.assertFalse(gate.evaluate_mint(quote, LedgerState(), None, fee).accept)
        self.assertEqual(gate.relax_percent(), 10.0)
        self.assertEqual(gate.effective_thresholds().fee_max_wei, 13_200_000_000)
        self.assertTrue(gate.evaluate_mint(quote, LedgerState(), None, fee).accept)
        self.assertEqual(gate.wait_cycles, 0)

    def test_hard_ceiling_caps_relaxation(self) -> None:
        gate = AdmissionGate(
            GateConfig(
                fee_max_wei=12 * GWEI,
                fee_hard_ceiling_wei=12_500_000_000,
                relax_after_cycles=1,
                relax_step_percent=50.0,
                relax_max_percent=50.0,
            )
        )
        fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=13 * GWEI)
        for _ in range(3):
            decision = gate.evaluate_mint(_quote(E18), LedgerState(), None, fee)
            self.assertEqual(decision.reasons, ("fee_above_window",))
        self.assertEqual(gate.effective_thresholds().fee_max_wei, 12_500_000_000)

    def test_relaxation_is_capped(self) -> None:
        gate = AdmissionGate(GateConfig(relax_after_cycles=1, relax_step_percent=20.0, relax_max_percent=30.0))
        gate._wait_cycles = 10
        self.assertEqual(gate.relax_percent(), 30.0)

    def test_non_relaxable_rejection_does_not_count(self) -> None:
        estimate, fee = _estimate()
        gate = AdmissionGate(GateConfig())
        gate.evaluate_mint(_quote(E18), LedgerState(), estimate, fee, market_price_fp=estimate.cost_per_unit_fp)
        self.assertEqual(gate.wait_cycles, 0)


class CooldownTests(unittest.TestCase):
    def test_three_weak_edges_start_cooldown(self) -> None:
        clock = FakeClock()
        gate = AdmissionGate(
            GateConfig(edge_warn_wei=10**15, edge_weak_streak=3, cooldown_minutes=30),
            clock=clock,
        )
        ledger = LedgerState(inventory_quantity=100 * E18, weighted_avg_cost_fp=E18)
        self.assertFalse(gate.record_realized_edge(10))
        self.assertFalse(gate.record_realized_edge(20))
        self.assertTrue(gate.record_realized_edge(30))
        self.assertTrue(gate.in_cooldown())

        decision = gate.evaluate(_quote(2 * E18), ledger)
        self.assertFalse(decision.accept)
        self.assertEqual(decision.reasons, ("cooldown",))

        clock.now += 31 * 60
        self.assertFalse(gate.in_cooldown())
        self.assertTrue(gate.evaluate(_quote(2 * E18), ledger).accept)

    def test_strong_edge_breaks_streak(self) -> None:
        gate = AdmissionGate(GateConfig(edge_warn_wei=10**15, edge_weak_streak=3), clock=FakeClock())
        gate.record_realized_edge(1)
        gate.record_realized_edge(10**16)
        self.assertFalse(gate.record_realized_edge(1))
        self.assertFalse(gate.in_cooldown())


class FeeWaitTests(unittest.IsolatedAsyncioTestCase):
    async def test_wait_returns_first_reading_inside_window(self) -> None:
        gate = AdmissionGate(GateConfig(fee_max_wei=12 * GWEI, fee_check_interval_seconds=0.01, fee_max_wait_seconds=5))
        readings = [
            FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI),
            FeeReading(base_fee_wei=6 * GWEI, boosted_fee_wei=9 * GWEI),
        ]

        async def read_fee() -> FeeReading:
            return readings.pop(0)

        fee = await gate.wait_for_fee_window(read_fee)
        self.assertEqual(fee.boosted_fee_wei, 9 * GWEI)

    async def test_wait_gives_up_when_budget_spent(self) -> None:
        gate = AdmissionGate(GateConfig(fee_max_wei=12 * GWEI, fee_max_wait_seconds=0))

        async def read_fee() -> FeeReading:
            return FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI)

        self.assertIsNone(await gate.wait_for_fee_window(read_fee))


if __name__ == "__main__":
    unittest.main()
