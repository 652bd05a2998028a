"""HTTP feeds: mint-cycle telemetry and the ETH/USD display price."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

ETH_USD_FALLBACK = 3500.0
CYCLE_LENGTH_BLOCKS = 500


@dataclass(frozen=True)
class CycleInfo:
    progress: float | None = None
    blocks_left: int | None = None
    minted: int | None = None
    target: int | None = None

    @property
    def remaining(self) -> int | None:
        if self.minted is None or self.target is None:
            return None
        return max(0, self.target - self.minted)


def _pick(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).split(".")[0])
    except ValueError:
        return None


def parse_cycle_info(payload: Any) -> CycleInfo:
    """Accept the telemetry JSON either flat or nested under `cycle`."""
    if not isinstance(payload, dict):
        return CycleInfo()
    row = payload.get("cycle") if isinstance(payload.get("cycle"), dict) else payload
    progress_raw = _pick(row, "progress", "cycleProgress")
    progress: float | None
    try:
        progress = float(progress_raw) if progress_raw is not None else None
    except (TypeError, ValueError):
        progress = None
    if progress is not None and progress > 1.0:
        # Some endpoints publish a percentage.
        progress = progress / 100.0
    minted = _as_int(_pick(row, "minted", "mintedFct", "fctMinted"))
    target = _as_int(_pick(row, "target", "targetFct", "fctTarget"))
    if progress is None and minted is not None and target:
        progress = minted / target
    blocks_left = _as_int(_pick(row, "blocksLeft", "blocks_left", "blocksRemaining"))
    if blocks_left is None:
        elapsed = _as_int(_pick(row, "blocksElapsed", "blocks_elapsed"))
        if elapsed is not None:
            blocks_left = max(0, CYCLE_LENGTH_BLOCKS - elapsed)
    return CycleInfo(progress=progress, blocks_left=blocks_left, minted=minted, target=target)


async def fetch_cycle_info(client: ResilientHttpClient, url: str) -> CycleInfo | None:
    if not url:
        return None
    result = await client.get_json(url, source="cycle_info")
    if not result.ok:
        logger.warning("CYCLE_INFO unavailable err=%s", result.error)
        return None
    info = parse_cycle_info(result.data)
    logger.debug("CYCLE_INFO progress=%s blocks_left=%s", info.progress, info.blocks_left)
    return info


async def fetch_eth_usd(client: ResilientHttpClient, url: str) -> float:
    """ETH/USD for log display only; never feeds a decision."""
    if not url:
        return ETH_USD_FALLBACK
    result = await client.get_json(url, source="eth_usd")
    if result.ok and isinstance(result.data, dict):
        try:
            price = float(result.data.get("priceInUSD", 0) or 0)
        except (TypeError, ValueError):
            price = 0.0
        if price > 0:
            return price
    logger.debug("ETH_USD fallback=%s err=%s", ETH_USD_FALLBACK, result.error)
    return ETH_USD_FALLBACK
