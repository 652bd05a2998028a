from __future__ import annotations

import unittest

from trading.mint_cost import (
    BYTES_PER_KB,
    FeeReading,
    candidate_sizes,
    choose_mint_size,
    cycle_burn_cap,
    estimate_mint_cost,
)

GWEI = 10**9


class MintCostTests(unittest.TestCase):
    def test_fee_reading_applies_multiplier(self) -> None:
        fee = FeeReading.from_base_fee(10 * GWEI, 1.5)
        self.assertEqual(fee.base_fee_wei, 10 * GWEI)
        self.assertEqual(fee.boosted_fee_wei, 15 * GWEI)
        self.assertEqual(FeeReading.from_base_fee(10 * GWEI, 0.5).boosted_fee_wei, 10 * GWEI)

    def test_estimate_for_25kb_payload(self) -> None:
        fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI)
        est = estimate_mint_cost(25 * BYTES_PER_KB, fee, 100)
        self.assertEqual(est.data_gas, (25_600 - 160) * 40)
        self.assertEqual(est.total_gas, est.data_gas + 21_000)
        self.assertEqual(est.estimated_burn_wei, est.total_gas * 15 * GWEI)
        self.assertEqual(est.input_wei, est.data_gas * 10 * GWEI)
        self.assertEqual(est.minted_estimate, est.input_wei * 100)
        self.assertEqual(est.cost_per_unit_fp, est.estimated_burn_wei * 10**18 // est.minted_estimate)
        self.assertEqual(est.efficiency_ppm, est.data_gas * 1_000_000 // est.total_gas)
        self.assertAlmostEqual(est.efficiency_percent, 97.978, places=2)

    def test_zero_mint_rate_has_no_unit_cost(self) -> None:
        fee = FeeReading(base_fee_wei=GWEI, boosted_fee_wei=GWEI)
        est = estimate_mint_cost(10 * BYTES_PER_KB, fee, 0)
        self.assertEqual(est.minted_estimate, 0)
        self.assertEqual(est.cost_per_unit_fp, 0)

    def test_candidate_sizes_inclusive(self) -> None:
        self.assertEqual(candidate_sizes(25, 100, 25), [25 * 1024, 50 * 1024, 75 * 1024, 100 * 1024])

    def test_choose_prefers_larger_payload_without_cap(self) -> None:
        fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI)
        best = choose_mint_size(fee, 100, min_kb=25, max_kb=100, step_kb=25)
        self.assertEqual(best.size_bytes, 100 * BYTES_PER_KB)

    def test_choose_respects_burn_cap(self) -> None:
        fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI)
        fifty = estimate_mint_cost(50 * BYTES_PER_KB, fee, 100)
        best = choose_mint_size(fee, 100, min_kb=25, max_kb=100, step_kb=25, max_burn_wei=fifty.estimated_burn_wei)
        self.assertEqual(best.size_bytes, 50 * BYTES_PER_KB)
        self.assertIsNone(choose_mint_size(fee, 100, min_kb=25, max_kb=100, step_kb=25, max_burn_wei=1))

    def test_fixed_size_overrides_search(self) -> None:
        fee = FeeReading(base_fee_wei=10 * GWEI, boosted_fee_wei=15 * GWEI)
        self.assertEqual(choose_mint_size(fee, 100, fixed_kb=30).size_bytes, 30 * BYTES_PER_KB)

    def test_cycle_burn_cap(self) -> None:
        self.assertEqual(cycle_burn_cap(10**24, 10**6, alpha=0.9), 9 * 10**17)
        self.assertEqual(cycle_burn_cap(10**24, 10**6, alpha=0.9, per_tx_cap_wei=10**17), 10**17)
        self.assertEqual(cycle_burn_cap(None, 10**6, per_tx_cap_wei=5), 5)
        self.assertIsNone(cycle_burn_cap(None, 10**6))


if __name__ == "__main__":
    unittest.main()
