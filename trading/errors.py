"""Error taxonomy shared by the oracle, ledger, executor and control loop."""

from __future__ import annotations


class AutotraderError(RuntimeError):
    """Base class; `reason` is the machine-readable code written to decision logs."""

    reason = "error"


class TransientIOError(AutotraderError):
    """RPC timeout, node unavailable or similar; retried on the next tick."""

    reason = "transient_io"


class QuoteUnavailable(AutotraderError):
    """Neither pool events nor direct reserve reads produced a usable price."""

    reason = "quote_unavailable"


class InsufficientInventory(AutotraderError):
    reason = "insufficient_inventory"

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(f"sell of {requested} exceeds inventory {available}")
        self.requested = int(requested)
        self.available = int(available)


class InsufficientFunds(AutotraderError):
    """The wallet cannot cover the action (token balance or gas)."""

    reason = "insufficient_funds"


class SimulationRevert(AutotraderError):
    reason = "simulation_revert"

    def __init__(self, message: str, *, revert_reason: str = "", tx_hash: str = "") -> None:
        super().__init__(message)
        self.revert_reason = revert_reason
        self.tx_hash = tx_hash


class StaleQuote(AutotraderError):
    """Live reserves moved so far that a slice can no longer meet its planned minimum."""

    reason = "stale_quote"


class ReceiptTimeout(AutotraderError):
    reason = "receipt_timeout"

    def __init__(self, tx_hash: str, quantity: int = 0) -> None:
        super().__init__(f"receipt wait timed out hash={tx_hash}")
        self.tx_hash = tx_hash
        self.quantity = int(quantity)


class CorruptLedger(AutotraderError):
    """Ledger file exists but does not hold a well-formed state; fatal at startup."""

    reason = "corrupt_ledger"
