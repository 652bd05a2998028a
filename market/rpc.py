"""Web3 provider rotation shared by the chain readers and the executor."""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence, TypeVar

from web3 import HTTPProvider, Web3
from web3.exceptions import ContractLogicError

from trading.errors import AutotraderError, TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RotatingWeb3:
    def __init__(
        self,
        providers: Sequence[str],
        *,
        timeout_seconds: float = 10.0,
        retry_delays: Sequence[float] = (0.5, 1.0),
        label: str = "rpc",
    ) -> None:
        self.providers = [p for p in providers if p]
        if not self.providers:
            raise ValueError(f"{label}: no RPC providers configured")
        self.timeout_seconds = float(timeout_seconds)
        self.retry_delays = list(retry_delays)
        self.label = label
        self.provider_index = 0
        self.web3 = self._build_web3()

    def _build_web3(self) -> Web3:
        provider = self.providers[self.provider_index]
        return Web3(HTTPProvider(provider, request_kwargs={"timeout": self.timeout_seconds}))

    def rotate(self) -> None:
        if len(self.providers) <= 1:
            return
        self.provider_index = (self.provider_index + 1) % len(self.providers)
        self.web3 = self._build_web3()
        logger.info("RPC_ROTATE label=%s provider_index=%s", self.label, self.provider_index)

    def call(self, fn: Callable[[Web3], T], op_name: str) -> T:
        """Run a read against the current provider, rotating and retrying on transport failures.

        Reverts and our own domain errors are not retried.
        """
        attempts = len(self.retry_delays) + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return fn(self.web3)
            except (ContractLogicError, AutotraderError):
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "RPC_RETRY label=%s op=%s attempt=%s/%s err=%s",
                    self.label,
                    op_name,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    self.rotate()
                    time.sleep(self.retry_delays[attempt - 1])
        raise TransientIOError(f"{self.label} {op_name} failed after retries: {last_error}")
