"""L1 base fee and Facet mint-rate readers feeding the mint gate."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from web3 import Web3

from market.rpc import RotatingWeb3

logger = logging.getLogger(__name__)

L1_BLOCK_ABI: list[dict[str, Any]] = [
    {
        "name": "fctMintRate",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint128"}],
    },
]


class ChainFeeReader:
    def __init__(
        self,
        l1_rpc_urls: Sequence[str],
        facet_rpc_urls: Sequence[str],
        mint_rate_contract: str,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.l1 = RotatingWeb3(l1_rpc_urls, timeout_seconds=timeout_seconds, label="l1")
        self.facet = RotatingWeb3(facet_rpc_urls, timeout_seconds=timeout_seconds, label="facet-fees")
        self.mint_rate_contract = Web3.to_checksum_address(mint_rate_contract)

    def get_current_fee_level(self) -> int:
        """Latest L1 base fee in wei."""
        block = self.l1.call(lambda w3: w3.eth.get_block("latest"), "get_block")
        base_fee = int(block.get("baseFeePerGas") or 0)
        logger.debug("FEE_LEVEL base_fee_wei=%s block=%s", base_fee, block.get("number"))
        return base_fee

    def quote_mint_rate(self) -> int:
        """FCT minted per wei of L1 calldata gas cost, as reported by the L1Block predeploy."""
        rate = self.facet.call(
            lambda w3: w3.eth.contract(address=self.mint_rate_contract, abi=L1_BLOCK_ABI)
            .functions.fctMintRate()
            .call(),
            "fctMintRate",
        )
        return int(rate)
