"""Entry point for the FCT inventory autotrader."""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from decimal import Decimal, InvalidOperation
from logging.handlers import RotatingFileHandler

from web3 import Web3

from config import ConfigError, Settings, load_settings
from market.chain_fees import ChainFeeReader
from market.feeds import fetch_cycle_info, fetch_eth_usd
from market.models import FP_SCALE
from market.pair_reader import PairReader
from market.price_oracle import PriceOracle, watch_pool_events
from trading import order_slicer
from trading.admission_gate import AdmissionGate, GateConfig
from trading.control_loop import ControlLoop, LoopConfig
from trading.errors import AutotraderError, CorruptLedger
from trading.ledger import LedgerStore, PendingSettlementStore
from utils.decision_log import DecisionLogWriter
from utils.http_client import ResilientHttpClient


def configure_logging(settings: Settings) -> None:
    os.makedirs(settings.log_dir, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(settings.app_log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Transports log raw request bodies at DEBUG.
    for name in ("web3", "urllib3", "aiohttp"):
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _ether_amount(text: str) -> int:
    """Parse a decimal token/ETH amount ("1.5") into 18-decimal base units."""
    try:
        value = Decimal(str(text).strip())
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {text!r}")
    return int(Web3.to_wei(value, "ether"))


def _fmt_units(value: int) -> str:
    return f"{Decimal(value) / FP_SCALE:.8f}"


def _build_oracle(settings: Settings, reader: PairReader) -> PriceOracle:
    return PriceOracle(
        reader,
        settings.token_address,
        lookback_blocks=settings.price_event_lookback_blocks,
        horizon_seconds=settings.price_event_horizon_seconds,
        window_size=settings.price_event_window,
        ema_alpha=settings.ema_alpha,
        override_fp=settings.price_override_wei,
    )


async def run_autotrader(settings: Settings, *, once: bool = False) -> None:
    ledger = LedgerStore(settings.ledger_path, lock_timeout_seconds=settings.ledger_lock_timeout_seconds)
    state = ledger.read()

    reader = PairReader(settings.facet_rpc_urls, settings.pair_address, timeout_seconds=settings.rpc_timeout_seconds)
    oracle = _build_oracle(settings, reader)
    pending = PendingSettlementStore(
        settings.pending_settlement_path,
        lock_timeout_seconds=settings.ledger_lock_timeout_seconds,
    )
    executor = None
    if not settings.dry_run:
        from trading.live_executor import LiveExecutor

        executor = LiveExecutor(settings, reserves_reader=reader.get_reserves)
    fee_source = None
    if settings.mint_enabled:
        fee_source = ChainFeeReader(
            settings.l1_rpc_urls,
            settings.facet_rpc_urls,
            settings.mint_rate_contract,
            timeout_seconds=settings.rpc_timeout_seconds,
        )

    http = ResilientHttpClient(
        settings.http_timeout_seconds,
        retry_attempts=settings.http_retry_attempts,
        backoff_base_seconds=settings.http_backoff_base_seconds,
        backoff_max_seconds=settings.http_backoff_max_seconds,
    )

    async def cycle_info():
        return await fetch_cycle_info(http, settings.cycle_info_url)

    loop = ControlLoop(
        LoopConfig.from_settings(settings),
        oracle=oracle,
        ledger=ledger,
        gate=AdmissionGate(GateConfig.from_settings(settings)),
        executor=executor,
        token_address=settings.token_address,
        pending=pending,
        fee_source=fee_source,
        cycle_info_source=cycle_info if settings.cycle_info_url else None,
        decision_sink=DecisionLogWriter(
            settings.decisions_log_file,
            enabled=settings.decisions_log_enabled,
            run_tag=settings.run_tag,
        ),
        reserves_reader=reader.get_reserves,
    )

    eth_usd = await fetch_eth_usd(http, settings.eth_usd_url)
    logger.info(
        "AUTOTRADER_START dry_run=%s inventory=%s wac_eth=%s wac_usd=%.4f mint=%s",
        settings.dry_run,
        _fmt_units(state.inventory_quantity),
        _fmt_units(state.weighted_avg_cost_fp),
        state.weighted_avg_cost_fp / FP_SCALE * eth_usd,
        settings.mint_enabled,
    )

    aio_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            aio_loop.add_signal_handler(sig, loop.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C surfaces as KeyboardInterrupt.
            pass

    watcher = None
    try:
        if once:
            await loop.run_cycle()
            return
        if settings.event_watch_enabled:
            watcher = asyncio.create_task(
                watch_pool_events(
                    oracle,
                    loop.stop_event,
                    interval_seconds=settings.event_watch_interval_seconds,
                    timeout_seconds=settings.call_timeout_seconds,
                )
            )
        await loop.run()
    finally:
        loop.request_stop()
        if watcher is not None:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        await http.close()


def cmd_run(settings: Settings, args: argparse.Namespace) -> int:
    try:
        asyncio.run(run_autotrader(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("AUTOTRADER_STOP interrupted")
    return 0


def cmd_ledger_show(settings: Settings, args: argparse.Namespace) -> int:
    ledger = LedgerStore(settings.ledger_path, lock_timeout_seconds=settings.ledger_lock_timeout_seconds)
    state = ledger.read()
    pending = PendingSettlementStore(settings.pending_settlement_path).load()
    print(
        json.dumps(
            {
                "path": ledger.path,
                "inventory": _fmt_units(state.inventory_quantity),
                "wac_eth": _fmt_units(state.weighted_avg_cost_fp),
                "raw": state.to_payload(),
                "pending_settlements": [row.to_payload() for row in pending],
            },
            indent=2,
        )
    )
    return 0


def cmd_ledger_record_mint(settings: Settings, args: argparse.Namespace) -> int:
    ledger = LedgerStore(settings.ledger_path, lock_timeout_seconds=settings.ledger_lock_timeout_seconds)
    state = ledger.apply_mint(args.quantity, args.cost)
    print(f"inventory={_fmt_units(state.inventory_quantity)} wac_eth={_fmt_units(state.weighted_avg_cost_fp)}")
    return 0


def cmd_ledger_record_sell(settings: Settings, args: argparse.Namespace) -> int:
    ledger = LedgerStore(settings.ledger_path, lock_timeout_seconds=settings.ledger_lock_timeout_seconds)
    state = ledger.apply_sell(args.quantity)
    print(f"inventory={_fmt_units(state.inventory_quantity)} wac_eth={_fmt_units(state.weighted_avg_cost_fp)}")
    return 0


def cmd_plan(settings: Settings, args: argparse.Namespace) -> int:
    if args.reserve_in is not None and args.reserve_out is not None:
        reserve_in, reserve_out = args.reserve_in, args.reserve_out
    else:
        reader = PairReader(
            settings.facet_rpc_urls,
            settings.pair_address,
            timeout_seconds=settings.rpc_timeout_seconds,
        )
        reserve_in, reserve_out = reader.get_reserves().oriented(settings.token_address)
    bps = args.slippage_bps if args.slippage_bps is not None else settings.slippage_bps
    result = order_slicer.plan(
        args.amount,
        reserve_in,
        reserve_out,
        bps,
        safety_bps=settings.min_out_safety_bps,
        max_slices=settings.max_slices,
    )
    print(
        json.dumps(
            {
                "amount": _fmt_units(args.amount),
                "reserve_in": _fmt_units(reserve_in),
                "reserve_out": _fmt_units(reserve_out),
                "slippage_bps": bps,
                "capped": result.capped,
                "slices": [
                    {
                        "amount": _fmt_units(qty),
                        "expected_out": _fmt_units(expected),
                        "min_out": _fmt_units(min_out),
                        "impact_bps": order_slicer.price_impact_bps(qty, reserve_in, reserve_out),
                    }
                    for qty, expected, min_out in zip(
                        result.slices, result.expected_out_per_slice, result.min_out_per_slice
                    )
                ],
                "min_out_total": _fmt_units(result.min_out_total),
            },
            indent=2,
        )
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FCT inventory autotrader.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the control loop.")
    run.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    run.set_defaults(handler=cmd_run)

    ledger = sub.add_parser("ledger", help="Inspect or adjust the inventory ledger.")
    ledger_sub = ledger.add_subparsers(dest="ledger_command", required=True)
    show = ledger_sub.add_parser("show", help="Print inventory, WAC and pending settlements.")
    show.set_defaults(handler=cmd_ledger_show)
    mint = ledger_sub.add_parser("record-mint", help="Record a mint performed outside this process.")
    mint.add_argument("quantity", type=_ether_amount, help="FCT minted, decimal units.")
    mint.add_argument("cost", type=_ether_amount, help="ETH burned for the mint, decimal units.")
    mint.set_defaults(handler=cmd_ledger_record_mint)
    sell = ledger_sub.add_parser("record-sell", help="Record a sale performed outside this process.")
    sell.add_argument("quantity", type=_ether_amount, help="FCT sold, decimal units.")
    sell.set_defaults(handler=cmd_ledger_record_sell)

    plan = sub.add_parser("plan", help="Show how a sell would be sliced against current reserves.")
    plan.add_argument("amount", type=_ether_amount, help="FCT to sell, decimal units.")
    plan.add_argument("--slippage-bps", type=int, default=None)
    plan.add_argument("--reserve-in", type=_ether_amount, default=None, help="FCT reserve override.")
    plan.add_argument("--reserve-out", type=_ether_amount, default=None, help="WETH reserve override.")
    plan.set_defaults(handler=cmd_plan)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 1
    configure_logging(settings)
    try:
        return args.handler(settings, args)
    except CorruptLedger as exc:
        logger.error("LEDGER_CORRUPT err=%s", exc)
        return 1
    except AutotraderError as exc:
        logger.error("COMMAND_FAILED reason=%s err=%s", exc.reason, exc)
        return 2
    except ValueError as exc:
        logger.error("COMMAND_FAILED err=%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
