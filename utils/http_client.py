"""Resilient shared HTTP client with retry/backoff and per-source stats."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_count: int = 0

    def observe_latency(self, started: float) -> None:
        self.latency_total_ms += max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_count += 1


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        *,
        headers: dict[str, str] | None = None,
        retry_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        jitter_seconds: float = 0.25,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._attempts = max(1, int(retry_attempts))
        self._backoff_base = max(0.05, float(backoff_base_seconds))
        self._backoff_cap = max(self._backoff_base, float(backoff_max_seconds))
        self._jitter = max(0.0, float(jitter_seconds))
        self._session: aiohttp.ClientSession | None = None
        self._stats: dict[str, HttpSourceStats] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _stats_row(self, source: str) -> HttpSourceStats:
        key = str(source or "default").strip().lower() or "default"
        return self._stats.setdefault(key, HttpSourceStats())

    def snapshot_stats(self) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for source, row in self._stats.items():
            total = row.ok + row.fail
            out[source] = {
                "ok": row.ok,
                "fail": row.fail,
                "total": total,
                "rate_limited": row.rate_limited,
                "retries": row.retries,
                "error_percent": round((row.fail / total * 100.0) if total else 0.0, 2),
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
            }
        return out

    def _compute_delay(self, attempt: int, status: int, retry_after: float = 0.0) -> float:
        exp = min(self._backoff_cap, self._backoff_base * (2 ** max(0, attempt - 1)))
        if status == 429:
            exp = min(self._backoff_cap, max(exp, retry_after))
        return max(0.01, exp + random.uniform(0.0, self._jitter))

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
    ) -> HttpResult:
        stats = self._stats_row(source)
        for attempt in range(1, self._attempts + 1):
            status = 0
            retry_after = 0.0
            started = time.perf_counter()
            try:
                session = await self._get_session()
                async with session.get(url, params=params, headers=self._headers) as response:
                    stats.observe_latency(started)
                    status = int(response.status or 0)
                    if status == 200:
                        payload = await response.json(content_type=None)
                        stats.ok += 1
                        return HttpResult(ok=True, status=status, data=payload)
                    if status == 429:
                        stats.rate_limited += 1
                        try:
                            retry_after = float(response.headers.get("Retry-After", "0") or 0)
                        except ValueError:
                            retry_after = 0.0
                    retryable = status == 429 or 500 <= status <= 599
                    if not retryable or attempt >= self._attempts:
                        stats.fail += 1
                        return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                stats.observe_latency(started)
                if attempt >= self._attempts:
                    stats.fail += 1
                    return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")

            stats.retries += 1
            delay = self._compute_delay(attempt, status, retry_after)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                source,
                attempt,
                self._attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")
