"""Token/base-asset price discovery from pool events with a reserve-read fallback."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Callable, Iterable, Protocol

from market.models import FP_SCALE, PoolEvent, PoolSnapshot, PriceQuote, PriceSource
from trading.errors import QuoteUnavailable
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

PPM = 1_000_000


class PoolReader(Protocol):
    def get_reserves(self) -> PoolSnapshot: ...

    def get_recent_swap_events(self, lookback_blocks: int) -> list[PoolEvent]: ...


def swap_slippage_bps(event: PoolEvent) -> int | None:
    """Execution price shortfall versus the pre-swap mid price, from a swap and its paired sync."""
    if event.kind != "swap" or event.amount_in <= 0 or event.amount_out <= 0 or not event.token_in:
        return None
    try:
        post_in, post_out = event.snapshot.oriented(event.token_in)
    except ValueError:
        return None
    pre_in = post_in - event.amount_in
    pre_out = post_out + event.amount_out
    if pre_in <= 0 or pre_out <= 0:
        return None
    realised_vs_mid_bps = event.amount_out * pre_in * 10_000 // (event.amount_in * pre_out)
    return max(0, 10_000 - realised_vs_mid_bps)


class PriceOracle:
    """Resolves how much base asset one token unit is worth.

    Recent pool events are preferred; when none is newer than the horizon the
    oracle reads reserves directly. Successful non-override quotes also feed an
    exponential moving average that the admission gate uses as the market price.
    """

    def __init__(
        self,
        reader: PoolReader,
        token_address: str,
        *,
        lookback_blocks: int = 1000,
        horizon_seconds: float = 900.0,
        window_size: int = 64,
        ema_alpha: float = 0.2,
        override_fp: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.reader = reader
        self.token_address = normalize_address(token_address)
        self.lookback_blocks = max(1, int(lookback_blocks))
        self.horizon_seconds = max(1.0, float(horizon_seconds))
        self.ema_alpha_ppm = max(0, min(PPM, int(round(float(ema_alpha) * PPM))))
        self.override_fp = int(override_fp) if override_fp else None
        self._clock = clock
        self._window: deque[PoolEvent] = deque(maxlen=max(1, int(window_size)))
        self._seen: set[tuple[str, int]] = set()
        self._ema_fp: int | None = None
        self._lock = threading.Lock()

    @property
    def ema_fp(self) -> int | None:
        return self._ema_fp

    def market_price_fp(self, fallback_fp: int | None = None) -> int | None:
        return self._ema_fp if self._ema_fp else fallback_fp

    def ingest(self, events: Iterable[PoolEvent]) -> int:
        added = 0
        with self._lock:
            for event in sorted(events, key=lambda e: e.ordering):
                if event.key in self._seen:
                    continue
                if len(self._window) == self._window.maxlen:
                    if event.ordering <= self._window[0].ordering:
                        continue
                    self._seen.discard(self._window[0].key)
                self._window.append(event)
                self._seen.add(event.key)
                added += 1
        return added

    def refresh_events(self) -> int:
        events = self.reader.get_recent_swap_events(self.lookback_blocks)
        added = self.ingest(events)
        if added:
            logger.debug("PRICE_EVENTS_INGEST added=%s window=%s", added, len(self._window))
        return added

    def _freshest_event(self) -> PoolEvent | None:
        cutoff = self._clock() - self.horizon_seconds
        with self._lock:
            fresh = [e for e in self._window if e.received_at >= cutoff]
        if not fresh:
            return None
        return max(fresh, key=lambda e: e.ordering)

    def _update_ema(self, sample_fp: int) -> None:
        if self._ema_fp is None:
            self._ema_fp = sample_fp
            return
        self._ema_fp = (self.ema_alpha_ppm * sample_fp + (PPM - self.ema_alpha_ppm) * self._ema_fp) // PPM

    def _quote_from_event(self, event: PoolEvent) -> PriceQuote | None:
        try:
            value = event.snapshot.price_fp(self.token_address)
        except ValueError:
            logger.warning("PRICE_EVENT_FOREIGN_PAIR tx=%s token=%s", event.tx_hash, self.token_address)
            return None
        if value <= 0:
            return None
        source = PriceSource.EVENT_SWAP if event.kind == "swap" else PriceSource.EVENT_SYNC
        return PriceQuote(
            value_fp=value,
            source=source,
            slippage_bps=swap_slippage_bps(event),
            snapshot=event.snapshot,
            block_number=event.block_number,
        )

    def quote(self) -> PriceQuote:
        if self.override_fp:
            return PriceQuote(value_fp=self.override_fp, source=PriceSource.OVERRIDE)

        try:
            self.refresh_events()
        except Exception as exc:
            logger.warning("PRICE_EVENTS_UNAVAILABLE err=%s window=%s", exc, len(self._window))

        result: PriceQuote | None = None
        event = self._freshest_event()
        if event is not None:
            result = self._quote_from_event(event)

        if result is None:
            try:
                snapshot = self.reader.get_reserves()
            except Exception as exc:
                raise QuoteUnavailable(f"no fresh pool events and reserve read failed: {exc}") from exc
            try:
                value = snapshot.price_fp(self.token_address)
            except ValueError as exc:
                raise QuoteUnavailable(str(exc)) from exc
            if value <= 0:
                raise QuoteUnavailable(f"empty reserves r0={snapshot.reserve0} r1={snapshot.reserve1}")
            result = PriceQuote(value_fp=value, source=PriceSource.RESERVE_FALLBACK, snapshot=snapshot)

        self._update_ema(result.value_fp)
        logger.info(
            "PRICE_QUOTE source=%s price=%.10f ema=%.10f slippage_bps=%s",
            result.source.value,
            result.value_fp / FP_SCALE,
            (self._ema_fp or 0) / FP_SCALE,
            result.slippage_bps,
        )
        return result


async def watch_pool_events(
    oracle: PriceOracle,
    stop_event: asyncio.Event,
    *,
    interval_seconds: float = 15.0,
    timeout_seconds: float = 30.0,
) -> None:
    """Keep the oracle's event window warm between control-loop ticks."""
    logger.info("PRICE_WATCH start interval=%ss", interval_seconds)
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(asyncio.to_thread(oracle.refresh_events), timeout=timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("PRICE_WATCH poll_failed err=%s", exc)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("PRICE_WATCH stop")
