"""On-chain sell executor for the FCT/WETH pair (UniswapV2-compatible router on Facet)."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from eth_account import Account
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from market.models import PoolSnapshot
from market.rpc import RotatingWeb3
from trading.control_loop import TradeReceipt
from trading.errors import (
    InsufficientFunds,
    ReceiptTimeout,
    SimulationRevert,
    StaleQuote,
    TransientIOError,
)
from trading.order_slicer import OrderPlan, amount_out, apply_safety
from utils.addressing import checksum_address, same_address

logger = logging.getLogger(__name__)

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "swapExactTokensForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]

GAS_LIMIT_BUFFER = 1.15
BALANCE_BUFFER = 1.20


def reprice_slice(quantity: int, planned_min_out: int, snapshot: PoolSnapshot, token: str, safety_bps: int) -> int:
    """Minimum output for a slice against live reserves.

    Raises StaleQuote when the live expected output can no longer reach the
    minimum fixed at plan time.
    """
    reserve_in, reserve_out = snapshot.oriented(token)
    fresh_expected = amount_out(quantity, reserve_in, reserve_out)
    if fresh_expected < planned_min_out:
        raise StaleQuote(
            f"slice qty={quantity} live_out={fresh_expected} below planned_min={planned_min_out}"
        )
    return max(planned_min_out, apply_safety(fresh_expected, safety_bps))


class LiveExecutor:
    def __init__(self, settings: Any, *, reserves_reader: Callable[[], PoolSnapshot]) -> None:
        if not settings.private_key:
            raise ValueError("LIVE_PRIVATE_KEY is empty")
        if not settings.wallet_address:
            raise ValueError("LIVE_WALLET_ADDRESS is empty")
        if not settings.router_address:
            raise ValueError("ROUTER_ADDRESS is empty")

        self.settings = settings
        self.rpc = RotatingWeb3(
            settings.facet_rpc_urls,
            timeout_seconds=settings.rpc_timeout_seconds,
            label="facet-exec",
        )
        self.reserves_reader = reserves_reader

        self.account = Account.from_key(settings.private_key)
        self.wallet = checksum_address(settings.wallet_address)
        if not same_address(self.account.address, self.wallet):
            raise ValueError("LIVE_WALLET_ADDRESS does not match LIVE_PRIVATE_KEY")

        self.router_address = checksum_address(settings.router_address)
        self.token = checksum_address(settings.token_address)
        self.base_token = checksum_address(settings.base_token_address)

    @property
    def w3(self) -> Web3:
        return self.rpc.web3

    def _erc20(self, address: str) -> Contract:
        return self.w3.eth.contract(address=address, abi=ERC20_ABI)

    def _router(self) -> Contract:
        return self.w3.eth.contract(address=self.router_address, abi=ROUTER_ABI)

    def get_token_balance(self, token_address: str | None = None) -> int:
        token = checksum_address(token_address) if token_address else self.token
        return int(
            self.rpc.call(lambda w3: self._erc20(token).functions.balanceOf(self.wallet).call(), "balanceOf")
        )

    def get_receipt_status(self, tx_hash: str) -> bool | None:
        """True when mined and successful, False when reverted, None while unknown."""

        def _fetch(w3: Web3):
            try:
                return w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = self.rpc.call(_fetch, "get_transaction_receipt")
        if receipt is None:
            return None
        return int(receipt["status"]) == 1

    def submit_trade(self, plan: OrderPlan) -> TradeReceipt:
        result = TradeReceipt(requested_slices=len(plan.slices))
        if not plan:
            return result

        balance = self.get_token_balance()
        if balance < plan.total:
            raise InsufficientFunds(f"token balance {balance} below sell size {plan.total}")
        self._ensure_allowance(plan.total)

        for index, (quantity, planned_min) in enumerate(zip(plan.slices, plan.min_out_per_slice)):
            snapshot = self.reserves_reader()
            try:
                min_out = reprice_slice(
                    quantity,
                    planned_min,
                    snapshot,
                    self.token,
                    self.settings.min_out_safety_bps,
                )
            except StaleQuote:
                if result.filled_slices == 0:
                    raise
                logger.warning("SELL_SLICE stale index=%s filled=%s", index, result.filled_slices)
                result.aborted_reason = "stale_quote"
                break

            base_before = self.get_token_balance(self.base_token)
            swap = self._router().functions.swapExactTokensForTokensSupportingFeeOnTransferTokens(
                int(quantity),
                int(min_out),
                [self.token, self.base_token],
                self.wallet,
                self._deadline(),
            )
            try:
                tx_hash = self._send(swap)
            except (SimulationRevert, InsufficientFunds) as exc:
                if result.filled_slices == 0:
                    raise
                logger.warning("SELL_SLICE aborted index=%s reason=%s err=%s", index, exc.reason, exc)
                result.aborted_reason = exc.reason
                break
            result.tx_hashes.append(tx_hash)
            try:
                self._wait(tx_hash, quantity)
            except ReceiptTimeout:
                logger.warning("SELL_SLICE receipt_timeout index=%s hash=%s", index, tx_hash)
                result.unconfirmed.append((tx_hash, int(quantity)))
                result.confirmed = False
                break
            except SimulationRevert as exc:
                logger.warning("SELL_SLICE reverted index=%s hash=%s", index, tx_hash)
                result.aborted_reason = exc.reason
                break
            received = max(0, self.get_token_balance(self.base_token) - base_before)
            result.sold_quantity += int(quantity)
            result.received_base += received
            result.filled_slices += 1
            logger.info(
                "SELL_SLICE filled index=%s/%s qty=%s received=%s min_out=%s hash=%s",
                index + 1,
                len(plan.slices),
                quantity,
                received,
                min_out,
                tx_hash,
            )
        return result

    def _ensure_allowance(self, required_amount: int) -> None:
        token_contract = self._erc20(self.token)
        allowance = int(
            self.rpc.call(
                lambda w3: token_contract.functions.allowance(self.wallet, self.router_address).call(),
                "allowance",
            )
        )
        if allowance >= required_amount:
            return
        tx_hash = self._send(token_contract.functions.approve(self.router_address, (2**256) - 1))
        try:
            self._wait(tx_hash, 0)
        except ReceiptTimeout as exc:
            raise TransientIOError(f"approval not mined yet hash={tx_hash}") from exc
        logger.info("SELL_APPROVE router=%s hash=%s", self.router_address, tx_hash)

    def _deadline(self) -> int:
        return int(time.time()) + int(self.settings.swap_deadline_seconds)

    def _tx_params(self) -> dict[str, Any]:
        pending_nonce = self.rpc.call(lambda w3: w3.eth.get_transaction_count(self.wallet, "pending"), "nonce")
        latest = self.rpc.call(lambda w3: w3.eth.get_block("latest"), "get_block")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(Web3.to_wei(max(0.0, float(self.settings.priority_fee_gwei)), "gwei"))
        cap = int(Web3.to_wei(max(0.0, float(self.settings.max_gas_gwei)), "gwei"))
        if cap <= 0:
            cap = int(Web3.to_wei(1, "gwei"))

        observed_gas_price = int(self.rpc.call(lambda w3: w3.eth.gas_price, "gas_price") or 0)
        if observed_gas_price > cap:
            raise TransientIOError(
                f"gas price {Web3.from_wei(observed_gas_price, 'gwei')} gwei above cap {Web3.from_wei(cap, 'gwei')} gwei"
            )

        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        if max_fee <= 0:
            max_fee = min(cap, int(Web3.to_wei(1, "gwei")))

        return {
            "from": self.wallet,
            "chainId": int(self.settings.chain_id),
            "nonce": pending_nonce,
            "value": 0,
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority, max_fee),
            "type": 2,
        }

    def _send(self, fn_call: Any) -> str:
        """Simulate, budget-check, sign and broadcast a contract call; returns the tx hash."""
        params = self._tx_params()
        try:
            gas = self.rpc.call(lambda w3: fn_call.estimate_gas({"from": self.wallet}), "estimate_gas")
        except ContractLogicError as exc:
            raise SimulationRevert(f"preflight reverted: {exc}", revert_reason=str(exc)) from exc
        params["gas"] = int(gas * GAS_LIMIT_BUFFER)
        tx = fn_call.build_transaction(params)

        balance = int(self.rpc.call(lambda w3: w3.eth.get_balance(self.wallet), "get_balance"))
        worst_cost = int(tx["gas"]) * int(tx.get("maxFeePerGas") or 0) + int(tx.get("value") or 0)
        if int(worst_cost * BALANCE_BUFFER) > balance:
            raise InsufficientFunds(
                f"gas balance {Web3.from_wei(balance, 'ether')} below worst case {Web3.from_wei(worst_cost, 'ether')}"
            )

        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise SimulationRevert("signed transaction has no raw bytes")
        tx_hash = self.rpc.call(lambda w3: w3.eth.send_raw_transaction(raw_tx), "send_raw_transaction")
        return Web3.to_hex(tx_hash)

    def _wait(self, tx_hash: str, quantity: int) -> None:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=int(self.settings.receipt_timeout_seconds),
            )
        except TimeExhausted as exc:
            raise ReceiptTimeout(tx_hash, quantity) from exc
        if int(receipt["status"]) != 1:
            raise SimulationRevert(f"transaction reverted hash={tx_hash}", tx_hash=tx_hash)
