from __future__ import annotations

import json
import os
import tempfile
import unittest

from trading.errors import CorruptLedger, InsufficientInventory
from trading.ledger import (
    LedgerState,
    LedgerStore,
    PendingSettlement,
    PendingSettlementStore,
    apply_mint,
    apply_sell,
    blend_cost,
    parse_ledger_payload,
    read_ledger,
    realized_pnl,
)

E18 = 10**18


class LedgerStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "ledger.json")
        self.store = LedgerStore(self.path, lock_timeout_seconds=0.5)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_file_is_created_with_zero_state(self) -> None:
        state = self.store.read()
        self.assertEqual(state, LedgerState(0, 0))
        with open(self.path, "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f), {"inventoryFCT": "0", "wacEthPerFCT": "0"})

    def test_weighted_average_after_two_mints(self) -> None:
        self.store.apply_mint(100 * E18, 2 * 10**16)
        state = self.store.apply_mint(300 * E18, 12 * 10**16)
        self.assertEqual(state.inventory_quantity, 400 * E18)
        self.assertEqual(state.weighted_avg_cost_fp, 35 * 10**13)

    def test_split_mints_match_single_mint(self) -> None:
        other = LedgerStore(os.path.join(self._tmp.name, "other.json"))
        self.store.apply_mint(100 * E18, 2 * 10**16)
        split = self.store.apply_mint(300 * E18, 12 * 10**16)
        single = other.apply_mint(400 * E18, 14 * 10**16)
        self.assertEqual(split, single)

    def test_sell_keeps_wac_and_selling_to_zero_preserves_it(self) -> None:
        self.store.apply_mint(10 * E18, 5 * 10**15)
        wac = self.store.read().weighted_avg_cost_fp
        state = self.store.apply_sell(4 * E18)
        self.assertEqual(state.inventory_quantity, 6 * E18)
        self.assertEqual(state.weighted_avg_cost_fp, wac)
        state = self.store.apply_sell(6 * E18)
        self.assertEqual(state.inventory_quantity, 0)
        self.assertEqual(state.weighted_avg_cost_fp, wac)
        self.assertEqual(state.effective_cost_fp, 0)

    def test_mint_after_flat_position_starts_fresh_cost(self) -> None:
        self.store.apply_mint(10 * E18, 5 * 10**15)
        self.store.apply_sell(10 * E18)
        state = self.store.apply_mint(2 * E18, 4 * 10**15)
        self.assertEqual(state.weighted_avg_cost_fp, 2 * 10**15)

    def test_oversell_raises_and_leaves_file_untouched(self) -> None:
        self.store.apply_mint(3 * E18, 10**15)
        with self.assertRaises(InsufficientInventory) as ctx:
            self.store.apply_sell(4 * E18)
        self.assertEqual(ctx.exception.requested, 4 * E18)
        self.assertEqual(ctx.exception.available, 3 * E18)
        self.assertEqual(self.store.read().inventory_quantity, 3 * E18)

    def test_non_positive_quantities_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.apply_mint(0, 1)
        with self.assertRaises(ValueError):
            self.store.apply_sell(0)

    def test_invalid_json_is_corrupt(self) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(CorruptLedger):
            self.store.read()

    def test_negative_or_float_fields_are_corrupt(self) -> None:
        with self.assertRaises(CorruptLedger):
            parse_ledger_payload({"inventoryFCT": "-1", "wacEthPerFCT": "0"})
        with self.assertRaises(CorruptLedger):
            parse_ledger_payload({"inventoryFCT": 1.5, "wacEthPerFCT": "0"})
        with self.assertRaises(CorruptLedger):
            parse_ledger_payload({"inventoryFCT": "1"})
        with self.assertRaises(CorruptLedger):
            parse_ledger_payload(["inventoryFCT"])

    def test_plain_integer_fields_are_accepted(self) -> None:
        state = parse_ledger_payload({"inventoryFCT": 7, "wacEthPerFCT": " 12 "})
        self.assertEqual(state, LedgerState(7, 12))

    def test_path_level_helpers_share_the_file(self) -> None:
        apply_mint(self.path, 10 * E18, 10**16)
        apply_sell(self.path, 4 * E18)
        state = read_ledger(self.path)
        self.assertEqual(state.inventory_quantity, 6 * E18)
        self.assertEqual(state.weighted_avg_cost_fp, 10**15)
        self.assertEqual(self.store.read(), state)


class LedgerMathTests(unittest.TestCase):
    def test_blend_cost_from_empty(self) -> None:
        self.assertEqual(blend_cost(LedgerState(), 4 * E18, 10**16), 25 * 10**14)

    def test_realized_pnl_sign(self) -> None:
        self.assertEqual(realized_pnl(3 * 10**14, 2 * 10**14, 10 * E18), 10**15)
        self.assertEqual(realized_pnl(10**14, 2 * 10**14, 10 * E18), -(10**15))


class PendingSettlementStoreTests(unittest.TestCase):
    def test_add_load_replace(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = PendingSettlementStore(os.path.join(tmp_dir, "ledger.json.pending.json"))
            self.assertEqual(store.load(), [])
            store.add(PendingSettlement(tx_hashes=["0xaa"], quantity=5 * E18, created_ts=1.0))
            store.add(PendingSettlement(tx_hashes=["0xbb"], quantity=E18, created_ts=2.0))
            rows = store.load()
            self.assertEqual([r.tx_hashes for r in rows], [["0xaa"], ["0xbb"]])
            self.assertEqual(rows[0].quantity, 5 * E18)
            store.replace(rows[1:])
            self.assertEqual([r.quantity for r in store.load()], [E18])

    def test_malformed_file_is_corrupt(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "pending.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"pending": [{"quantity": "abc"}]}, f)
            with self.assertRaises(CorruptLedger):
                PendingSettlementStore(path).load()


if __name__ == "__main__":
    unittest.main()
