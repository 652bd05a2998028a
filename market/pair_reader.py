"""Reads reserves and Sync/Swap logs from a UniswapV2-style pair."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

from web3 import Web3

from market.models import PoolEvent, PoolSnapshot
from market.rpc import RotatingWeb3
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

PAIR_ABI: list[dict[str, Any]] = [
    {
        "name": "getReserves",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
    },
    {
        "name": "token0",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "token1",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

SYNC_TOPIC = "0x" + Web3.keccak(text="Sync(uint112,uint112)").hex().removeprefix("0x")
SWAP_TOPIC = "0x" + Web3.keccak(text="Swap(address,uint256,uint256,uint256,uint256,address)").hex().removeprefix("0x")

# Facet blocks follow L1 cadence.
DEFAULT_SECONDS_PER_BLOCK = 12.0
MAX_LOG_RANGE_BLOCKS = 5_000


def _as_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    text = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value)
    return text.lower().removeprefix("0x")


def _data_slots(data: Any) -> list[int]:
    clean = _as_hex(data)
    return [int(clean[i : i + 64], 16) for i in range(0, len(clean) - len(clean) % 64, 64)]


class PairReader:
    def __init__(
        self,
        rpc_urls: Sequence[str],
        pair_address: str,
        *,
        timeout_seconds: float = 10.0,
        seconds_per_block: float = DEFAULT_SECONDS_PER_BLOCK,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rpc = RotatingWeb3(rpc_urls, timeout_seconds=timeout_seconds, label="facet")
        self.pair_address = Web3.to_checksum_address(pair_address)
        self.seconds_per_block = float(seconds_per_block)
        self._clock = clock
        self._tokens: tuple[str, str] | None = None

    def _pair(self, w3: Web3):
        return w3.eth.contract(address=self.pair_address, abi=PAIR_ABI)

    def tokens(self) -> tuple[str, str]:
        if self._tokens is None:
            token0 = self.rpc.call(lambda w3: self._pair(w3).functions.token0().call(), "token0")
            token1 = self.rpc.call(lambda w3: self._pair(w3).functions.token1().call(), "token1")
            self._tokens = (normalize_address(token0), normalize_address(token1))
        return self._tokens

    def get_reserves(self) -> PoolSnapshot:
        token0, token1 = self.tokens()
        reserve0, reserve1, _ = self.rpc.call(
            lambda w3: self._pair(w3).functions.getReserves().call(),
            "getReserves",
        )
        return PoolSnapshot(int(reserve0), int(reserve1), token0, token1)

    def get_recent_swap_events(self, lookback_blocks: int) -> list[PoolEvent]:
        """Sync and Swap logs from the last `lookback_blocks`, swaps carrying their paired reserves."""
        token0, token1 = self.tokens()
        latest = self.rpc.call(lambda w3: w3.eth.get_block("latest"), "get_block")
        latest_number = int(latest["number"])
        latest_ts = float(latest.get("timestamp") or self._clock())
        from_block = max(0, latest_number - min(int(lookback_blocks), MAX_LOG_RANGE_BLOCKS))
        logs = self.rpc.call(
            lambda w3: w3.eth.get_logs(
                {
                    "address": self.pair_address,
                    "fromBlock": from_block,
                    "toBlock": latest_number,
                    "topics": [[SYNC_TOPIC, SWAP_TOPIC]],
                }
            ),
            "get_logs",
        )
        rows = sorted(logs, key=lambda r: (int(r["blockNumber"]), int(r["logIndex"])))
        return self.parse_logs(rows, token0, token1, latest_number, latest_ts)

    def parse_logs(
        self,
        rows: list[Any],
        token0: str,
        token1: str,
        latest_number: int,
        latest_ts: float,
    ) -> list[PoolEvent]:
        events: dict[tuple[str, int], PoolEvent] = {}
        last_sync: dict[str, PoolEvent] = {}
        for row in rows:
            topics = list(row.get("topics", []))
            if not topics:
                continue
            topic0 = "0x" + _as_hex(topics[0])
            tx_hash = "0x" + _as_hex(row["transactionHash"])
            block_number = int(row["blockNumber"])
            log_index = int(row["logIndex"])
            slots = _data_slots(row.get("data", b""))
            received_at = latest_ts - max(0, latest_number - block_number) * self.seconds_per_block

            if topic0 == SYNC_TOPIC and len(slots) >= 2:
                event = PoolEvent(
                    kind="sync",
                    block_number=block_number,
                    log_index=log_index,
                    tx_hash=tx_hash,
                    snapshot=PoolSnapshot(slots[0], slots[1], token0, token1),
                    received_at=received_at,
                )
                events[event.key] = event
                last_sync[tx_hash] = event
            elif topic0 == SWAP_TOPIC and len(slots) >= 4:
                sync = last_sync.get(tx_hash)
                if sync is None:
                    logger.debug("PAIR_LOGS swap_without_sync tx=%s", tx_hash)
                    continue
                amount0_in, amount1_in, amount0_out, amount1_out = slots[:4]
                if amount0_in > 0:
                    amount_in, amount_out, token_in = amount0_in, amount1_out, token0
                else:
                    amount_in, amount_out, token_in = amount1_in, amount0_out, token1
                events.pop(sync.key, None)
                event = PoolEvent(
                    kind="swap",
                    block_number=block_number,
                    log_index=log_index,
                    tx_hash=tx_hash,
                    snapshot=sync.snapshot,
                    received_at=received_at,
                    amount_in=amount_in,
                    amount_out=amount_out,
                    token_in=token_in,
                )
                events[event.key] = event
        return sorted(events.values(), key=lambda e: e.ordering)
