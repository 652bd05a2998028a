"""Application configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv
from web3 import Web3

from utils.addressing import checksum_address


class ConfigError(ValueError):
    """Raised when an environment value cannot be turned into a valid setting."""


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


# Facet mainnet deployment.
MAINNET_PAIR_ADDRESS = "0x180eF813f5C3C00e37b002Dfe90035A8143CE233"
MAINNET_WETH_ADDRESS = "0x1673540243E793B0e77C038D4a88448efF524DcE"
MAINNET_WFCT_ADDRESS = "0x4200000000000000000000000000000000000006"
MAINNET_ROUTER_ADDRESS = "0xf29e6E319Ac4ce8C100cFC02B1702eb3D275029e"
L1_BLOCK_PREDEPLOY_ADDRESS = "0x4200000000000000000000000000000000000015"
FACET_CHAIN_ID = 0xFACE7

DEFAULT_L1_RPC_URL = "https://ethereum-rpc.publicnode.com"
DEFAULT_FACET_RPC_URL = "https://mainnet.facet.org"
DEFAULT_ETH_USD_URL = "https://eth-price.facet.org"

_TRUE_VALUES = ("1", "true", "yes", "y", "on")
_FALSE_VALUES = ("0", "false", "no", "n", "off")


@dataclass(frozen=True)
class Settings:
    # chain access
    l1_rpc_urls: tuple[str, ...]
    facet_rpc_urls: tuple[str, ...]
    rpc_timeout_seconds: int
    chain_id: int
    pair_address: str
    token_address: str
    base_token_address: str
    router_address: str
    mint_rate_contract: str
    wallet_address: str
    private_key: str

    # selling
    trade_size: int
    chunk_pct: float
    min_trade_size: int
    slippage_bps: int
    min_out_safety_bps: int
    max_slices: int
    take_profit: float
    dry_run: bool
    stop_on_failure: bool
    receipt_timeout_seconds: int
    swap_deadline_seconds: int
    max_gas_gwei: float
    priority_fee_gwei: float

    # admission gate
    target_discount: float
    min_abs_edge_wei: int
    max_cost_per_unit_wei: int | None
    min_efficiency_percent: float
    fee_min_wei: int | None
    fee_max_wei: int | None
    fee_hard_ceiling_wei: int | None
    gas_price_multiplier: float
    fee_check_interval_seconds: int
    fee_max_wait_seconds: int
    max_progress: float
    min_blocks_left: int
    b_wait: int
    u_weak: float
    e_high: float
    cycle_alpha: float
    max_cycle_share: float | None
    rate_floor: int | None
    cycle_info_url: str
    edge_warn_wei: int
    edge_weak_streak: int
    cooldown_minutes: int
    relax_after_cycles: int
    relax_step_percent: float
    relax_max_percent: float

    # control loop
    poll_seconds: float
    backoff_max_seconds: float
    call_timeout_seconds: float

    # price oracle
    ema_alpha: float
    price_event_lookback_blocks: int
    price_event_horizon_seconds: int
    price_event_window: int
    price_override_wei: int | None
    event_watch_enabled: bool
    event_watch_interval_seconds: int

    # ledger
    ledger_path: str
    ledger_lock_timeout_seconds: float
    pending_max_age_seconds: float

    # mining
    mint_enabled: bool
    mint_size_kb: int
    mint_min_size_kb: int
    mint_max_size_kb: int
    mint_size_step_kb: int
    mint_max_eth_per_tx_wei: int | None

    # http
    http_timeout_seconds: float
    http_retry_attempts: int
    http_backoff_base_seconds: float
    http_backoff_max_seconds: float
    eth_usd_url: str

    # logging
    log_level: str
    log_dir: str
    app_log_file: str
    decisions_log_enabled: bool
    decisions_log_file: str
    run_tag: str

    @property
    def live_ready(self) -> bool:
        return bool(self.private_key and self.wallet_address and self.router_address)

    @property
    def pending_settlement_path(self) -> str:
        return f"{self.ledger_path}.pending.json"


class _EnvReader:
    def __init__(self, environ: Mapping[str, str]) -> None:
        self._env = environ

    def raw(self, key: str, default: str = "") -> str:
        value = self._env.get(key)
        if value is None:
            return default
        return str(value).strip()

    def text(self, key: str, default: str = "") -> str:
        return self.raw(key, default) or default

    def integer(self, key: str, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
        raw = self.raw(key)
        if not raw:
            value = default
        else:
            try:
                value = int(Decimal(raw))
            except (InvalidOperation, ValueError) as exc:
                raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
        return self._bounded(key, value, minimum, maximum)

    def optional_integer(self, key: str) -> int | None:
        if not self.raw(key):
            return None
        return self.integer(key, 0, minimum=0)

    def number(self, key: str, default: float, *, minimum: float | None = None, maximum: float | None = None) -> float:
        raw = self.raw(key)
        if not raw:
            value = float(default)
        else:
            try:
                value = float(raw)
            except ValueError as exc:
                raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
        return self._bounded(key, value, minimum, maximum)

    def optional_number(self, key: str, *, minimum: float | None = None, maximum: float | None = None) -> float | None:
        if not self.raw(key):
            return None
        return self.number(key, 0.0, minimum=minimum, maximum=maximum)

    def flag(self, key: str, default: bool) -> bool:
        raw = self.raw(key).lower()
        if not raw:
            return default
        if raw in _TRUE_VALUES:
            return True
        if raw in _FALSE_VALUES:
            return False
        raise ConfigError(f"{key} must be a boolean, got {raw!r}")

    def wei(self, key: str, unit: str, default: str | None = None) -> int | None:
        raw = self.raw(key) or (default or "")
        if not raw:
            return None
        try:
            value = int(Web3.to_wei(Decimal(raw), unit))
        except (InvalidOperation, ValueError, TypeError) as exc:
            raise ConfigError(f"{key} must be a decimal {unit} amount, got {raw!r}") from exc
        if value < 0:
            raise ConfigError(f"{key} must be non-negative")
        return value

    def url_list(self, key: str, default: str) -> tuple[str, ...]:
        urls = tuple(u.strip() for u in self.text(key, default).split(",") if u.strip())
        if not urls:
            raise ConfigError(f"{key} must name at least one URL")
        return urls

    def address(self, key: str, default: str = "") -> str:
        raw = self.text(key, default)
        if not raw:
            return ""
        try:
            return checksum_address(raw)
        except ValueError as exc:
            raise ConfigError(f"{key} is not a valid address: {raw!r}") from exc

    @staticmethod
    def _bounded(key: str, value, minimum, maximum):
        if minimum is not None and value < minimum:
            raise ConfigError(f"{key} must be >= {minimum}, got {value}")
        if maximum is not None and value > maximum:
            raise ConfigError(f"{key} must be <= {maximum}, got {value}")
        return value


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build the immutable runtime settings from the (dotenv-populated) environment."""
    env = _EnvReader(os.environ if environ is None else environ)

    poll_ms = env.integer("POLL_MS", 30_000)
    log_dir = env.text("LOG_DIR", "logs")

    settings = Settings(
        l1_rpc_urls=env.url_list("L1_RPC_URL", DEFAULT_L1_RPC_URL),
        facet_rpc_urls=env.url_list("FACET_RPC_URL", DEFAULT_FACET_RPC_URL),
        rpc_timeout_seconds=env.integer("RPC_TIMEOUT_SECONDS", 10, minimum=3),
        chain_id=env.integer("LIVE_CHAIN_ID", FACET_CHAIN_ID, minimum=1),
        pair_address=env.address("PAIR_ADDRESS", MAINNET_PAIR_ADDRESS),
        token_address=env.address("TOKEN_ADDRESS", MAINNET_WFCT_ADDRESS),
        base_token_address=env.address("BASE_TOKEN_ADDRESS", MAINNET_WETH_ADDRESS),
        router_address=env.address("ROUTER_ADDRESS", MAINNET_ROUTER_ADDRESS),
        mint_rate_contract=env.address("MINT_RATE_CONTRACT", L1_BLOCK_PREDEPLOY_ADDRESS),
        wallet_address=env.address("LIVE_WALLET_ADDRESS"),
        private_key=env.raw("LIVE_PRIVATE_KEY"),
        trade_size=env.integer("TRADE_SIZE", 0, minimum=0),
        chunk_pct=env.number("CHUNK_PCT", 0.2, minimum=0.0, maximum=1.0),
        min_trade_size=env.integer("MIN_TRADE_SIZE", 10**18, minimum=1),
        slippage_bps=env.integer("SLIPPAGE_BPS", 100, minimum=1, maximum=10_000),
        min_out_safety_bps=env.integer("MIN_OUT_SAFETY_BPS", 50, minimum=0, maximum=10_000),
        max_slices=env.integer("MAX_SLICES", 50, minimum=1),
        take_profit=env.number("TAKE_PROFIT", 0.12, minimum=0.0),
        dry_run=env.flag("DRY_RUN", True),
        stop_on_failure=env.flag("STOP_ON_FAILURE", False),
        receipt_timeout_seconds=env.integer("RECEIPT_TIMEOUT_SECONDS", 300, minimum=10),
        swap_deadline_seconds=env.integer("SWAP_DEADLINE_SECONDS", 1200, minimum=30),
        max_gas_gwei=env.number("LIVE_MAX_GAS_GWEI", 2.0, minimum=0.0),
        priority_fee_gwei=env.number("LIVE_PRIORITY_FEE_GWEI", 0.001, minimum=0.0),
        target_discount=env.number("TARGET_DISCOUNT", 0.2, minimum=0.0, maximum=1.0),
        min_abs_edge_wei=env.wei("MIN_ABS_EDGE_ETH", "ether", "0") or 0,
        max_cost_per_unit_wei=env.wei("MAX_COST_PER_FCT_ETH", "ether"),
        min_efficiency_percent=env.number("MIN_EFFICIENCY_PERCENT", 99.0, minimum=0.0, maximum=100.0),
        fee_min_wei=env.wei("FEE_MIN_GWEI", "gwei"),
        fee_max_wei=env.wei("FEE_MAX_GWEI", "gwei"),
        fee_hard_ceiling_wei=env.wei("FEE_HARD_CEILING_GWEI", "gwei"),
        gas_price_multiplier=env.number("GAS_PRICE_MULTIPLIER", 1.5, minimum=1.0),
        fee_check_interval_seconds=env.integer("FEE_CHECK_INTERVAL_SECONDS", 60, minimum=1),
        fee_max_wait_seconds=env.integer("FEE_MAX_WAIT_SECONDS", 180, minimum=0),
        max_progress=env.number("MAX_PROGRESS", 0.3, minimum=0.0, maximum=1.0),
        min_blocks_left=env.integer("MIN_BLOCKS_LEFT", 250, minimum=0),
        b_wait=env.integer("B_WAIT", 40, minimum=0),
        u_weak=env.number("U_WEAK", 0.6, minimum=0.0, maximum=1.0),
        e_high=env.number("E_HIGH", 0.9, minimum=0.0, maximum=1.0),
        cycle_alpha=env.number("ALPHA", 0.9, minimum=0.0, maximum=1.0),
        max_cycle_share=env.optional_number("MAX_CYCLE_SHARE", minimum=0.0, maximum=1.0),
        rate_floor=env.optional_integer("RATE_FLOOR_WEI_PER_ETH"),
        cycle_info_url=env.text("CYCLE_INFO_URL", ""),
        edge_warn_wei=env.wei("EDGE_WARN_ETH", "ether", "0") or 0,
        edge_weak_streak=env.integer("EDGE_WEAK_STREAK", 3, minimum=1),
        cooldown_minutes=env.integer("COOLDOWN_MIN", 30, minimum=0),
        relax_after_cycles=env.integer("RELAX_AFTER_CYCLES", 5, minimum=1),
        relax_step_percent=env.number("RELAX_STEP_PERCENT", 10.0, minimum=0.0),
        relax_max_percent=env.number("RELAX_MAX_PERCENT", 50.0, minimum=0.0),
        poll_seconds=max(5_000, poll_ms) / 1000.0,
        backoff_max_seconds=env.integer("BACKOFF_MAX_MS", 600_000, minimum=5_000) / 1000.0,
        call_timeout_seconds=env.number("CALL_TIMEOUT_SECONDS", 30.0, minimum=1.0),
        ema_alpha=env.number("EMA_ALPHA", 0.2, minimum=0.0, maximum=1.0),
        price_event_lookback_blocks=env.integer("PRICE_EVENT_LOOKBACK_BLOCKS", 1000, minimum=1),
        price_event_horizon_seconds=env.integer("PRICE_EVENT_HORIZON_SECONDS", 900, minimum=1),
        price_event_window=env.integer("PRICE_EVENT_WINDOW", 64, minimum=1),
        price_override_wei=env.wei("PRICE_OVERRIDE_ETH", "ether"),
        event_watch_enabled=env.flag("EVENT_WATCH_ENABLED", False),
        event_watch_interval_seconds=env.integer("EVENT_WATCH_INTERVAL_SECONDS", 15, minimum=1),
        ledger_path=env.text("LEDGER_PATH", "./autotrader-ledger.json"),
        ledger_lock_timeout_seconds=env.number("LEDGER_LOCK_TIMEOUT_SECONDS", 2.0, minimum=0.05),
        pending_max_age_seconds=env.number("PENDING_MAX_AGE_SECONDS", 3600.0, minimum=0.0),
        mint_enabled=env.flag("MINT_ENABLED", False),
        mint_size_kb=env.integer("MINT_SIZE_KB", 0, minimum=0),
        mint_min_size_kb=env.integer("MINT_MIN_SIZE_KB", 25, minimum=1),
        mint_max_size_kb=env.integer("MINT_MAX_SIZE_KB", 100, minimum=1),
        mint_size_step_kb=env.integer("MINT_SIZE_STEP_KB", 25, minimum=1),
        mint_max_eth_per_tx_wei=env.wei("MINE_MAX_ETH_PER_TX", "ether"),
        http_timeout_seconds=env.number("HTTP_TIMEOUT_SECONDS", 10.0, minimum=1.0),
        http_retry_attempts=env.integer("HTTP_RETRY_ATTEMPTS", 3, minimum=1),
        http_backoff_base_seconds=env.number("HTTP_BACKOFF_BASE_SECONDS", 0.5, minimum=0.05),
        http_backoff_max_seconds=env.number("HTTP_BACKOFF_MAX_SECONDS", 8.0, minimum=0.05),
        eth_usd_url=env.text("ETH_USD_URL", DEFAULT_ETH_USD_URL),
        log_level=env.text("LOG_LEVEL", "INFO").upper(),
        log_dir=log_dir,
        app_log_file=os.path.join(log_dir, "app.log"),
        decisions_log_enabled=env.flag("DECISIONS_LOG_ENABLED", True),
        decisions_log_file=env.text("DECISIONS_LOG_FILE", os.path.join(log_dir, "decisions.jsonl")),
        run_tag=env.text("RUN_TAG", ""),
    )
    _validate(settings)
    return settings


def _validate(settings: Settings) -> None:
    if settings.fee_min_wei is not None and settings.fee_max_wei is not None:
        if settings.fee_min_wei > settings.fee_max_wei:
            raise ConfigError("FEE_MIN_GWEI must not exceed FEE_MAX_GWEI")
    if settings.mint_min_size_kb > settings.mint_max_size_kb:
        raise ConfigError("MINT_MIN_SIZE_KB must not exceed MINT_MAX_SIZE_KB")
    if settings.token_address and settings.token_address == settings.base_token_address:
        raise ConfigError("TOKEN_ADDRESS and BASE_TOKEN_ADDRESS must differ")
    if not settings.dry_run and not settings.live_ready:
        raise ConfigError("DRY_RUN=false requires LIVE_PRIVATE_KEY, LIVE_WALLET_ADDRESS and ROUTER_ADDRESS")
