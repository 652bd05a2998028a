"""Cost model for minting by burning L1 calldata gas."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

FP_SCALE = 10**18
PPM = 1_000_000

BASE_TX_GAS = 21_000
CALLDATA_GAS_PER_BYTE = 40
ENVELOPE_OVERHEAD_BYTES = 160
BYTES_PER_KB = 1024


@dataclass(frozen=True)
class FeeReading:
    base_fee_wei: int
    boosted_fee_wei: int

    @classmethod
    def from_base_fee(cls, base_fee_wei: int, multiplier: float = 1.5) -> "FeeReading":
        base = max(0, int(base_fee_wei))
        multiplier_ppm = int(round(max(1.0, float(multiplier)) * PPM))
        return cls(base_fee_wei=base, boosted_fee_wei=base * multiplier_ppm // PPM)


@dataclass(frozen=True)
class MintCostEstimate:
    size_bytes: int
    base_fee_wei: int
    boosted_fee_wei: int
    data_gas: int
    total_gas: int
    input_wei: int
    estimated_burn_wei: int
    minted_estimate: int
    cost_per_unit_fp: int
    efficiency_ppm: int

    @property
    def efficiency_percent(self) -> float:
        return self.efficiency_ppm / 10_000


def estimate_mint_cost(size_bytes: int, fee: FeeReading, mint_rate: int) -> MintCostEstimate:
    """Price one mint transaction carrying `size_bytes` of calldata.

    Minting credits the data gas at the base fee times the mint rate, while the
    sender pays the whole transaction at the boosted fee.
    """
    payload_bytes = max(0, int(size_bytes) - ENVELOPE_OVERHEAD_BYTES)
    data_gas = payload_bytes * CALLDATA_GAS_PER_BYTE
    total_gas = data_gas + BASE_TX_GAS
    burn = total_gas * fee.boosted_fee_wei
    input_wei = data_gas * fee.base_fee_wei
    minted = input_wei * max(0, int(mint_rate))
    cost_per_unit = burn * FP_SCALE // minted if minted > 0 else 0
    return MintCostEstimate(
        size_bytes=int(size_bytes),
        base_fee_wei=fee.base_fee_wei,
        boosted_fee_wei=fee.boosted_fee_wei,
        data_gas=data_gas,
        total_gas=total_gas,
        input_wei=input_wei,
        estimated_burn_wei=burn,
        minted_estimate=minted,
        cost_per_unit_fp=cost_per_unit,
        efficiency_ppm=data_gas * PPM // total_gas,
    )


def candidate_sizes(min_kb: int, max_kb: int, step_kb: int) -> list[int]:
    low, high, step = max(1, int(min_kb)), max(1, int(max_kb)), max(1, int(step_kb))
    return [kb * BYTES_PER_KB for kb in range(low, high + 1, step)]


def cycle_burn_cap(
    remaining: int | None,
    mint_rate: int,
    *,
    alpha: float = 0.9,
    max_cycle_share: float | None = None,
    per_tx_cap_wei: int | None = None,
) -> int | None:
    """Largest burn that keeps this cycle's issuance under its remaining room, tightened by the per-tx cap."""
    caps: list[int] = []
    if per_tx_cap_wei:
        caps.append(int(per_tx_cap_wei))
    if remaining is not None and mint_rate > 0:
        room_wei = remaining // mint_rate
        cycle_cap = room_wei * int(round(alpha * PPM)) // PPM
        if cycle_cap > 0:
            caps.append(cycle_cap)
        if max_cycle_share:
            share_cap = int(max_cycle_share * max(1, remaining) / mint_rate)
            if share_cap > 0:
                caps.append(share_cap)
    return min(caps) if caps else None


def choose_mint_size(
    fee: FeeReading,
    mint_rate: int,
    *,
    fixed_kb: int = 0,
    min_kb: int = 25,
    max_kb: int = 100,
    step_kb: int = 25,
    max_burn_wei: int | None = None,
) -> MintCostEstimate | None:
    """Cheapest-per-unit payload size whose burn fits `max_burn_wei`; None if nothing fits."""
    sizes = [int(fixed_kb) * BYTES_PER_KB] if fixed_kb > 0 else candidate_sizes(min_kb, max_kb, step_kb)
    best: MintCostEstimate | None = None
    for size in sizes:
        estimate = estimate_mint_cost(size, fee, mint_rate)
        if estimate.minted_estimate <= 0:
            continue
        if max_burn_wei is not None and estimate.estimated_burn_wei > max_burn_wei:
            logger.debug("MINT_SIZE skip size=%s burn=%s cap=%s", size, estimate.estimated_burn_wei, max_burn_wei)
            continue
        if best is None or estimate.cost_per_unit_fp < best.cost_per_unit_fp:
            best = estimate
    return best
