from __future__ import annotations

import unittest

from aiohttp import web
from aiohttp import test_utils

from market.feeds import ETH_USD_FALLBACK, CycleInfo, fetch_cycle_info, fetch_eth_usd, parse_cycle_info
from utils.http_client import HttpResult, ResilientHttpClient


class FakeHttpClient:
    def __init__(self, result: HttpResult) -> None:
        self.result = result
        self.calls: list[tuple[str, str]] = []

    async def get_json(self, url: str, *, source: str = "default", params=None) -> HttpResult:
        self.calls.append((url, source))
        return self.result


class ParseCycleInfoTests(unittest.TestCase):
    def test_flat_payload(self) -> None:
        info = parse_cycle_info({"progress": 0.25, "blocksLeft": 320, "minted": "100", "target": "400"})
        self.assertEqual(info, CycleInfo(progress=0.25, blocks_left=320, minted=100, target=400))
        self.assertEqual(info.remaining, 300)

    def test_nested_percentage_payload(self) -> None:
        info = parse_cycle_info({"cycle": {"progress": 40, "blocksElapsed": 120}})
        self.assertAlmostEqual(info.progress, 0.4)
        self.assertEqual(info.blocks_left, 380)
        self.assertIsNone(info.remaining)

    def test_progress_derived_from_minted_and_target(self) -> None:
        info = parse_cycle_info({"minted": 50, "target": 200})
        self.assertAlmostEqual(info.progress, 0.25)

    def test_garbage_payload_is_empty(self) -> None:
        self.assertEqual(parse_cycle_info(["nope"]), CycleInfo())
        self.assertEqual(parse_cycle_info({"progress": "fast"}).progress, None)


class FeedFetchTests(unittest.IsolatedAsyncioTestCase):
    async def test_cycle_info_unavailable_returns_none(self) -> None:
        client = FakeHttpClient(HttpResult(ok=False, status=503, data=None, error="http_status_503"))
        self.assertIsNone(await fetch_cycle_info(client, "https://cycle.example"))
        self.assertEqual(client.calls, [("https://cycle.example", "cycle_info")])

    async def test_cycle_info_without_url_skips_request(self) -> None:
        client = FakeHttpClient(HttpResult(ok=True, status=200, data={}))
        self.assertIsNone(await fetch_cycle_info(client, ""))
        self.assertEqual(client.calls, [])

    async def test_eth_usd_parsed_and_fallback(self) -> None:
        ok = FakeHttpClient(HttpResult(ok=True, status=200, data={"priceInUSD": "3123.5"}))
        self.assertEqual(await fetch_eth_usd(ok, "https://price.example"), 3123.5)
        bad = FakeHttpClient(HttpResult(ok=True, status=200, data={"priceInUSD": "n/a"}))
        self.assertEqual(await fetch_eth_usd(bad, "https://price.example"), ETH_USD_FALLBACK)


class ResilientHttpClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.hits = 0

        async def flaky(request: web.Request) -> web.Response:
            self.hits += 1
            if self.hits == 1:
                return web.Response(status=503)
            return web.json_response({"progress": 0.1, "blocksLeft": 450})

        async def missing(request: web.Request) -> web.Response:
            return web.Response(status=404)

        app = web.Application()
        app.router.add_get("/cycle", flaky)
        app.router.add_get("/missing", missing)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.client = ResilientHttpClient(
            5.0,
            retry_attempts=3,
            backoff_base_seconds=0.05,
            backoff_max_seconds=0.05,
            jitter_seconds=0.0,
        )

    async def asyncTearDown(self) -> None:
        await self.client.close()
        await self.server.close()

    async def test_retries_server_errors(self) -> None:
        info = await fetch_cycle_info(self.client, str(self.server.make_url("/cycle")))
        self.assertEqual(info.blocks_left, 450)
        self.assertEqual(self.hits, 2)
        stats = self.client.snapshot_stats()["cycle_info"]
        self.assertEqual(stats["ok"], 1)
        self.assertEqual(stats["retries"], 1)

    async def test_client_errors_are_not_retried(self) -> None:
        result = await self.client.get_json(str(self.server.make_url("/missing")), source="telemetry")
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 404)
        self.assertEqual(self.client.snapshot_stats()["telemetry"]["fail"], 1)


if __name__ == "__main__":
    unittest.main()
