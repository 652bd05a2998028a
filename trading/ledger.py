"""Persistent inventory ledger: quantity held and weighted-average acquisition cost."""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any

from trading.errors import CorruptLedger, InsufficientInventory
from utils.state_file import atomic_write_json, read_json_file, state_file_lock

logger = logging.getLogger(__name__)

FP_SCALE = 10**18

_INVENTORY_KEY = "inventoryFCT"
_WAC_KEY = "wacEthPerFCT"
_DECIMAL_INT = re.compile(r"^[0-9]+$")


@dataclass(frozen=True)
class LedgerState:
    inventory_quantity: int = 0
    weighted_avg_cost_fp: int = 0

    @property
    def effective_cost_fp(self) -> int:
        """Cost basis used for decisions; zero while nothing is held."""
        return self.weighted_avg_cost_fp if self.inventory_quantity > 0 else 0

    def to_payload(self) -> dict[str, str]:
        return {
            _INVENTORY_KEY: str(int(self.inventory_quantity)),
            _WAC_KEY: str(int(self.weighted_avg_cost_fp)),
        }


def _parse_field(payload: dict[str, Any], key: str, path: str) -> int:
    if key not in payload:
        raise CorruptLedger(f"ledger {path} missing field {key}")
    raw = payload[key]
    # Old writers stored plain JSON numbers; accept non-negative ints, never floats.
    if isinstance(raw, bool):
        raise CorruptLedger(f"ledger {path} field {key} is not numeric")
    if isinstance(raw, int):
        text = str(raw)
    elif isinstance(raw, str):
        text = raw.strip()
    else:
        raise CorruptLedger(f"ledger {path} field {key} is not numeric")
    if not _DECIMAL_INT.match(text):
        raise CorruptLedger(f"ledger {path} field {key} is not a non-negative integer: {raw!r}")
    return int(text)


def parse_ledger_payload(payload: Any, path: str = "<memory>") -> LedgerState:
    if not isinstance(payload, dict):
        raise CorruptLedger(f"ledger {path} is not a JSON object")
    return LedgerState(
        inventory_quantity=_parse_field(payload, _INVENTORY_KEY, path),
        weighted_avg_cost_fp=_parse_field(payload, _WAC_KEY, path),
    )


def blend_cost(state: LedgerState, quantity_minted: int, cost_paid: int) -> int:
    """Weighted-average cost after adding `quantity_minted` units bought for `cost_paid` base units."""
    new_qty = state.inventory_quantity + quantity_minted
    if new_qty <= 0:
        return state.weighted_avg_cost_fp
    old_value = state.inventory_quantity * state.effective_cost_fp
    return (old_value + cost_paid * FP_SCALE) // new_qty


def realized_pnl(sale_price_fp: int, wac_fp: int, quantity: int) -> int:
    """Profit in base units for selling `quantity` at `sale_price_fp` against cost `wac_fp`."""
    return (int(sale_price_fp) - int(wac_fp)) * int(quantity) // FP_SCALE


class LedgerStore:
    """File-backed repository for the ledger.

    Every mutation reads, recomputes and replaces the file while holding the
    `<path>.lock` lock, so a crash leaves either the old or the new state.
    """

    def __init__(self, path: str, *, lock_timeout_seconds: float = 2.0) -> None:
        self.path = os.path.abspath(path)
        self.lock_timeout_seconds = float(lock_timeout_seconds)

    def _load_unlocked(self) -> LedgerState | None:
        if not os.path.exists(self.path):
            return None
        try:
            payload = read_json_file(self.path)
        except (ValueError, UnicodeDecodeError) as exc:
            raise CorruptLedger(f"ledger {self.path} is not valid JSON: {exc}") from exc
        return parse_ledger_payload(payload, self.path)

    def _write_unlocked(self, state: LedgerState) -> None:
        atomic_write_json(self.path, state.to_payload())

    def read(self) -> LedgerState:
        with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
            state = self._load_unlocked()
            if state is None:
                state = LedgerState()
                self._write_unlocked(state)
                logger.info("LEDGER_INIT path=%s", self.path)
            return state

    def apply_mint(self, quantity_minted: int, cost_paid: int) -> LedgerState:
        quantity_minted = int(quantity_minted)
        cost_paid = int(cost_paid)
        if quantity_minted <= 0:
            raise ValueError("quantity_minted must be positive")
        if cost_paid < 0:
            raise ValueError("cost_paid must be non-negative")
        with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
            before = self._load_unlocked() or LedgerState()
            after = LedgerState(
                inventory_quantity=before.inventory_quantity + quantity_minted,
                weighted_avg_cost_fp=blend_cost(before, quantity_minted, cost_paid),
            )
            self._write_unlocked(after)
        logger.info(
            "LEDGER_MINT qty=%s cost=%s inventory=%s wac_fp=%s",
            quantity_minted,
            cost_paid,
            after.inventory_quantity,
            after.weighted_avg_cost_fp,
        )
        return after

    def apply_sell(self, quantity_sold: int) -> LedgerState:
        quantity_sold = int(quantity_sold)
        if quantity_sold <= 0:
            raise ValueError("quantity_sold must be positive")
        with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
            before = self._load_unlocked() or LedgerState()
            if quantity_sold > before.inventory_quantity:
                raise InsufficientInventory(quantity_sold, before.inventory_quantity)
            after = LedgerState(
                inventory_quantity=before.inventory_quantity - quantity_sold,
                weighted_avg_cost_fp=before.weighted_avg_cost_fp,
            )
            self._write_unlocked(after)
        logger.info(
            "LEDGER_SELL qty=%s inventory=%s wac_fp=%s",
            quantity_sold,
            after.inventory_quantity,
            after.weighted_avg_cost_fp,
        )
        return after


def read_ledger(path: str) -> LedgerState:
    return LedgerStore(path).read()


def apply_mint(path: str, quantity_minted: int, cost_paid: int) -> LedgerState:
    return LedgerStore(path).apply_mint(quantity_minted, cost_paid)


def apply_sell(path: str, quantity_sold: int) -> LedgerState:
    return LedgerStore(path).apply_sell(quantity_sold)


@dataclass
class PendingSettlement:
    tx_hashes: list[str]
    quantity: int
    created_ts: float = field(default_factory=time.time)

    def to_payload(self) -> dict[str, Any]:
        return {"txHashes": list(self.tx_hashes), "quantity": str(int(self.quantity)), "createdTs": self.created_ts}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PendingSettlement":
        return cls(
            tx_hashes=[str(h) for h in payload.get("txHashes", [])],
            quantity=int(str(payload.get("quantity", "0"))),
            created_ts=float(payload.get("createdTs", 0.0) or 0.0),
        )


class PendingSettlementStore:
    """Sidecar file holding sells whose receipts were not observed in time."""

    def __init__(self, path: str, *, lock_timeout_seconds: float = 2.0) -> None:
        self.path = os.path.abspath(path)
        self.lock_timeout_seconds = float(lock_timeout_seconds)

    def _load_unlocked(self) -> list[PendingSettlement]:
        if not os.path.exists(self.path):
            return []
        try:
            payload = read_json_file(self.path)
            return [PendingSettlement.from_payload(row) for row in payload.get("pending", [])]
        except (ValueError, TypeError, AttributeError) as exc:
            raise CorruptLedger(f"pending settlement file {self.path} is malformed: {exc}") from exc

    def _write_unlocked(self, rows: list[PendingSettlement]) -> None:
        atomic_write_json(self.path, {"pending": [row.to_payload() for row in rows]})

    def load(self) -> list[PendingSettlement]:
        with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
            return self._load_unlocked()

    def add(self, entry: PendingSettlement) -> None:
        with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
            rows = self._load_unlocked()
            rows.append(entry)
            self._write_unlocked(rows)
        logger.warning("SETTLEMENT_DEFERRED qty=%s txs=%s", entry.quantity, ",".join(entry.tx_hashes))

    def replace(self, rows: list[PendingSettlement]) -> None:
        with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
            self._write_unlocked(rows)
