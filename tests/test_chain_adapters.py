from __future__ import annotations

import unittest

from web3.exceptions import ContractLogicError

from market.models import PoolSnapshot
from market.pair_reader import SWAP_TOPIC, SYNC_TOPIC, PairReader
from market.rpc import RotatingWeb3
from trading.errors import StaleQuote, TransientIOError
from trading.live_executor import reprice_slice
from trading.order_slicer import amount_out, apply_safety

E18 = 10**18
PAIR = "0x180eF813f5C3C00e37b002Dfe90035A8143CE233"
TOKEN0 = "0x1673540243e793b0e77c038d4a88448eff524dce"
TOKEN1 = "0x4200000000000000000000000000000000000006"


def _data(*values: int) -> str:
    return "0x" + "".join(f"{v:064x}" for v in values)


def _log(topic: str, tx: int, block: int, index: int, data: str) -> dict:
    return {
        "topics": [topic],
        "transactionHash": f"0x{tx:064x}",
        "blockNumber": block,
        "logIndex": index,
        "data": data,
    }


class ParseLogsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.reader = PairReader(["http://127.0.0.1:9"], PAIR, seconds_per_block=12.0)

    def test_swap_replaces_its_sync_and_carries_post_trade_reserves(self) -> None:
        rows = [
            _log(SYNC_TOPIC, 1, 100, 0, _data(5 * E18, 9_000 * E18)),
            _log(SYNC_TOPIC, 2, 101, 3, _data(6 * E18, 8_000 * E18)),
            _log(SWAP_TOPIC, 2, 101, 4, _data(E18, 0, 0, 1_000 * E18)),
        ]
        events = self.reader.parse_logs(rows, TOKEN0, TOKEN1, latest_number=102, latest_ts=10_000.0)
        self.assertEqual([e.kind for e in events], ["sync", "swap"])
        sync, swap = events
        self.assertEqual(sync.received_at, 10_000.0 - 24.0)
        self.assertEqual(sync.snapshot.reserve0, 5 * E18)
        self.assertEqual(swap.snapshot.oriented(TOKEN1), (8_000 * E18, 6 * E18))
        self.assertEqual((swap.amount_in, swap.amount_out, swap.token_in), (E18, 1_000 * E18, TOKEN0))

    def test_swap_direction_from_token1_side(self) -> None:
        rows = [
            _log(SYNC_TOPIC, 7, 50, 0, _data(4 * E18, 10_000 * E18)),
            _log(SWAP_TOPIC, 7, 50, 1, _data(0, 500 * E18, E18 // 2, 0)),
        ]
        (event,) = self.reader.parse_logs(rows, TOKEN0, TOKEN1, latest_number=50, latest_ts=1.0)
        self.assertEqual(event.token_in, TOKEN1)
        self.assertEqual((event.amount_in, event.amount_out), (500 * E18, E18 // 2))

    def test_unpaired_swap_and_unknown_topics_are_skipped(self) -> None:
        rows = [
            _log(SWAP_TOPIC, 9, 60, 1, _data(E18, 0, 0, E18)),
            _log("0x" + "ab" * 32, 9, 60, 2, _data(1, 2)),
            {"topics": [], "transactionHash": "0x00", "blockNumber": 1, "logIndex": 0},
        ]
        self.assertEqual(self.reader.parse_logs(rows, TOKEN0, TOKEN1, latest_number=60, latest_ts=1.0), [])


class RepriceSliceTests(unittest.TestCase):
    def test_returns_tighter_of_planned_and_fresh_minimum(self) -> None:
        snapshot = PoolSnapshot(1_000_000 * E18, 2_000 * E18, TOKEN1, TOKEN0)
        fresh = amount_out(100 * E18, 1_000_000 * E18, 2_000 * E18)
        self.assertEqual(reprice_slice(100 * E18, 1, snapshot, TOKEN1, 50), apply_safety(fresh, 50))
        self.assertEqual(reprice_slice(100 * E18, fresh, snapshot, TOKEN1, 50), fresh)

    def test_moved_reserves_raise_stale_quote(self) -> None:
        planned = amount_out(100 * E18, 1_000_000 * E18, 2_000 * E18)
        moved = PoolSnapshot(1_000_000 * E18, 1_500 * E18, TOKEN1, TOKEN0)
        with self.assertRaises(StaleQuote):
            reprice_slice(100 * E18, planned, moved, TOKEN1, 50)


class RotatingWeb3Tests(unittest.TestCase):
    def test_rotates_and_succeeds_on_next_provider(self) -> None:
        rpc = RotatingWeb3(["http://127.0.0.1:9", "http://127.0.0.1:10"], retry_delays=(0.0, 0.0))
        seen: list[int] = []

        def flaky(w3):
            seen.append(rpc.provider_index)
            if len(seen) == 1:
                raise ConnectionError("refused")
            return 42

        self.assertEqual(rpc.call(flaky, "eth_blockNumber"), 42)
        self.assertEqual(seen, [0, 1])

    def test_exhausted_retries_raise_transient(self) -> None:
        rpc = RotatingWeb3(["http://127.0.0.1:9"], retry_delays=(0.0,))

        def down(w3):
            raise ConnectionError("refused")

        with self.assertRaises(TransientIOError):
            rpc.call(down, "eth_blockNumber")

    def test_reverts_are_not_retried(self) -> None:
        rpc = RotatingWeb3(["http://127.0.0.1:9"], retry_delays=(0.0, 0.0))
        calls = []

        def revert(w3):
            calls.append(1)
            raise ContractLogicError("execution reverted")

        with self.assertRaises(ContractLogicError):
            rpc.call(revert, "eth_blockNumber")
        self.assertEqual(len(calls), 1)

    def test_requires_a_provider(self) -> None:
        with self.assertRaises(ValueError):
            RotatingWeb3(["", ""])


if __name__ == "__main__":
    unittest.main()
