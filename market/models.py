"""Value objects describing pool state and derived prices."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from utils.addressing import normalize_address

FP_SCALE = 10**18


class PriceSource(str, Enum):
    EVENT_SYNC = "event_sync"
    EVENT_SWAP = "event_swap"
    RESERVE_FALLBACK = "reserve_fallback"
    OVERRIDE = "override"


@dataclass(frozen=True)
class PoolSnapshot:
    """Reserves of a two-token pair, validated when built from chain data."""

    reserve0: int
    reserve1: int
    token0: str
    token1: str

    def __post_init__(self) -> None:
        if int(self.reserve0) < 0 or int(self.reserve1) < 0:
            raise ValueError(f"negative reserves r0={self.reserve0} r1={self.reserve1}")
        object.__setattr__(self, "reserve0", int(self.reserve0))
        object.__setattr__(self, "reserve1", int(self.reserve1))
        object.__setattr__(self, "token0", normalize_address(self.token0))
        object.__setattr__(self, "token1", normalize_address(self.token1))

    def oriented(self, token: str) -> tuple[int, int]:
        """Return (reserve of `token`, reserve of the other side)."""
        key = normalize_address(token)
        if key == self.token0:
            return self.reserve0, self.reserve1
        if key == self.token1:
            return self.reserve1, self.reserve0
        raise ValueError(f"token {token} is not part of pair {self.token0}/{self.token1}")

    def price_fp(self, token: str) -> int:
        """Other-side units per one unit of `token`, 1e18 fixed point; 0 when a side is empty."""
        reserve_token, reserve_base = self.oriented(token)
        if reserve_token <= 0 or reserve_base <= 0:
            return 0
        return reserve_base * FP_SCALE // reserve_token


@dataclass(frozen=True)
class PoolEvent:
    kind: str  # "sync" | "swap"
    block_number: int
    log_index: int
    tx_hash: str
    snapshot: PoolSnapshot
    received_at: float
    amount_in: int = 0
    amount_out: int = 0
    token_in: str = ""

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash.lower(), int(self.log_index))

    @property
    def ordering(self) -> tuple[int, int]:
        return (int(self.block_number), int(self.log_index))


@dataclass(frozen=True)
class PriceQuote:
    value_fp: int
    source: PriceSource
    slippage_bps: int | None = None
    snapshot: PoolSnapshot | None = None
    block_number: int | None = None
