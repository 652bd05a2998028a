from __future__ import annotations

import unittest

from market.models import PoolEvent, PoolSnapshot, PriceSource
from market.price_oracle import PriceOracle, swap_slippage_bps
from trading.errors import QuoteUnavailable
from trading.order_slicer import amount_out

E18 = 10**18
TOKEN = "0x4200000000000000000000000000000000000006"
BASE = "0x1673540243e793b0e77c038d4a88448eff524dce"
NOW = 1_800_000_000.0


def _snapshot(token_reserve: int, base_reserve: int) -> PoolSnapshot:
    return PoolSnapshot(token_reserve, base_reserve, TOKEN, BASE)


def _event(block: int, token_reserve: int, base_reserve: int, *, kind: str = "sync", age: float = 10.0) -> PoolEvent:
    return PoolEvent(
        kind=kind,
        block_number=block,
        log_index=1,
        tx_hash=f"0x{block:064x}",
        snapshot=_snapshot(token_reserve, base_reserve),
        received_at=NOW - age,
    )


class FakeReader:
    def __init__(self, *, events=None, reserves=None, events_error=None, reserves_error=None) -> None:
        self.events = list(events or [])
        self.reserves = reserves
        self.events_error = events_error
        self.reserves_error = reserves_error
        self.reserve_calls = 0

    def get_recent_swap_events(self, lookback_blocks: int):
        if self.events_error:
            raise self.events_error
        return list(self.events)

    def get_reserves(self):
        self.reserve_calls += 1
        if self.reserves_error:
            raise self.reserves_error
        return self.reserves


class PriceOracleTests(unittest.TestCase):
    def _oracle(self, reader: FakeReader, **kwargs) -> PriceOracle:
        return PriceOracle(reader, TOKEN, clock=lambda: NOW, **kwargs)

    def test_fresh_event_is_preferred_over_reserves(self) -> None:
        reader = FakeReader(
            events=[_event(10, 1_000 * E18, E18), _event(11, 1_000 * E18, 2 * E18)],
            reserves=_snapshot(1_000 * E18, 5 * E18),
        )
        quote = self._oracle(reader).quote()
        self.assertEqual(quote.source, PriceSource.EVENT_SYNC)
        self.assertEqual(quote.value_fp, 2 * 10**15)
        self.assertEqual(quote.block_number, 11)
        self.assertEqual(reader.reserve_calls, 0)

    def test_stale_events_fall_back_to_reserves(self) -> None:
        reader = FakeReader(
            events=[_event(10, 1_000 * E18, E18, age=5_000.0)],
            reserves=_snapshot(1_000 * E18, 3 * E18),
        )
        quote = self._oracle(reader, horizon_seconds=900).quote()
        self.assertEqual(quote.source, PriceSource.RESERVE_FALLBACK)
        self.assertEqual(quote.value_fp, 3 * 10**15)
        self.assertIsNotNone(quote.snapshot)

    def test_event_read_failure_still_quotes_from_reserves(self) -> None:
        reader = FakeReader(events_error=RuntimeError("rpc down"), reserves=_snapshot(4 * E18, E18))
        quote = self._oracle(reader).quote()
        self.assertEqual(quote.source, PriceSource.RESERVE_FALLBACK)
        self.assertEqual(quote.value_fp, E18 // 4)

    def test_no_source_raises_quote_unavailable(self) -> None:
        reader = FakeReader(events_error=RuntimeError("rpc down"), reserves_error=RuntimeError("still down"))
        with self.assertRaises(QuoteUnavailable):
            self._oracle(reader).quote()

    def test_empty_reserves_raise_quote_unavailable(self) -> None:
        reader = FakeReader(reserves=_snapshot(0, 0))
        with self.assertRaises(QuoteUnavailable):
            self._oracle(reader).quote()

    def test_override_skips_chain_reads(self) -> None:
        reader = FakeReader(reserves_error=RuntimeError("unused"))
        quote = self._oracle(reader, override_fp=7 * 10**14).quote()
        self.assertEqual(quote.source, PriceSource.OVERRIDE)
        self.assertEqual(quote.value_fp, 7 * 10**14)
        self.assertEqual(reader.reserve_calls, 0)

    def test_ema_smooths_successive_quotes(self) -> None:
        reader = FakeReader(reserves=_snapshot(1_000 * E18, E18))
        oracle = self._oracle(reader, ema_alpha=0.2)
        oracle.quote()
        self.assertEqual(oracle.ema_fp, 10**15)
        reader.reserves = _snapshot(1_000 * E18, 2 * E18)
        quote = oracle.quote()
        self.assertEqual(quote.value_fp, 2 * 10**15)
        self.assertEqual(oracle.ema_fp, 12 * 10**14)
        self.assertEqual(oracle.market_price_fp(quote.value_fp), 12 * 10**14)

    def test_market_price_falls_back_before_first_quote(self) -> None:
        oracle = self._oracle(FakeReader())
        self.assertIsNone(oracle.ema_fp)
        self.assertEqual(oracle.market_price_fp(5), 5)

    def test_ingest_deduplicates_and_bounds_window(self) -> None:
        oracle = self._oracle(FakeReader(), window_size=2)
        first = [_event(1, E18, E18), _event(2, E18, E18)]
        self.assertEqual(oracle.ingest(first), 2)
        self.assertEqual(oracle.ingest(first), 0)
        self.assertEqual(oracle.ingest([_event(3, E18, E18)]), 1)
        # Block 1 was evicted; it is older than the window and must not return.
        self.assertEqual(oracle.ingest([_event(1, E18, E18)]), 0)


class SwapSlippageTests(unittest.TestCase):
    def test_sync_events_have_no_slippage(self) -> None:
        self.assertIsNone(swap_slippage_bps(_event(1, E18, E18)))

    def test_swap_slippage_from_paired_reserves(self) -> None:
        amount_in = 10 * E18
        out = amount_out(amount_in, 1_000 * E18, E18)
        event = PoolEvent(
            kind="swap",
            block_number=5,
            log_index=2,
            tx_hash="0x05",
            snapshot=_snapshot(1_000 * E18 + amount_in, E18 - out),
            received_at=NOW,
            amount_in=amount_in,
            amount_out=out,
            token_in=TOKEN,
        )
        slippage = swap_slippage_bps(event)
        self.assertGreater(slippage, 120)
        self.assertLess(slippage, 135)


if __name__ == "__main__":
    unittest.main()
