"""Address helpers shared by config, pool readers and the executor."""

from __future__ import annotations

from web3 import Web3


def normalize_address(value: str | None) -> str:
    """Lower-cased key used to compare pair tokens and orient reserves."""
    return str(value or "").strip().lower()


def same_address(left: str | None, right: str | None) -> bool:
    key = normalize_address(left)
    return bool(key) and key == normalize_address(right)


def checksum_address(value: str | None) -> str:
    """Checksummed form for transaction fields; raises ValueError on malformed input."""
    raw = str(value or "").strip()
    if not Web3.is_address(raw):
        raise ValueError(f"not a valid address: {raw!r}")
    return Web3.to_checksum_address(raw)
