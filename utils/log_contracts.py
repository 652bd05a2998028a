"""Stable log contracts for per-cycle decision records."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_CYCLE_DECISION = "cycle_decision.v1"
SCHEMA_SETTLEMENT = "settlement.v1"

_STAGE_PREFIX: dict[str, str] = {
    "quote": "QUOTE",
    "gate": "GATE",
    "mint_gate": "GATE",
    "slice": "PLAN",
    "execute": "EXEC",
    "settle": "SETTLE",
    "mint": "MINT",
    "loop": "LOOP",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "no_inventory": "GATE_NO_INVENTORY",
    "cooldown": "GATE_COOLDOWN",
    "quote_unavailable": "QUOTE_UNAVAILABLE",
    "transient_io": "LOOP_TRANSIENT_IO",
    "insufficient_inventory": "EXEC_INSUFFICIENT_INVENTORY",
    "insufficient_funds": "EXEC_INSUFFICIENT_FUNDS",
    "simulation_revert": "EXEC_SIMULATION_REVERT",
    "stale_quote": "EXEC_STALE_QUOTE",
    "receipt_timeout": "SETTLE_RECEIPT_TIMEOUT",
    "reconciled": "SETTLE_RECONCILED",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "GATE_NO_INVENTORY": {"severity": "INFO", "category": "gate", "title": "Nothing to sell"},
    "GATE_BELOW_TAKE_PROFIT": {"severity": "INFO", "category": "gate", "title": "Price below take-profit trigger"},
    "GATE_DISCOUNT_INSUFFICIENT": {"severity": "INFO", "category": "gate", "title": "Mint cost not discounted enough"},
    "GATE_EDGE_BELOW_MINIMUM": {"severity": "INFO", "category": "gate", "title": "Absolute edge below minimum"},
    "GATE_EFFICIENCY_LOW": {"severity": "INFO", "category": "gate", "title": "Mint efficiency below floor"},
    "GATE_COST_ABOVE_MAX": {"severity": "INFO", "category": "gate", "title": "Mint cost above ceiling"},
    "GATE_FEE_BELOW_WINDOW": {"severity": "INFO", "category": "gate", "title": "Fee level below window"},
    "GATE_FEE_ABOVE_WINDOW": {"severity": "INFO", "category": "gate", "title": "Fee level above window"},
    "GATE_CYCLE_NOT_EARLY": {"severity": "INFO", "category": "timing", "title": "Mint cycle past early window"},
    "GATE_CYCLE_LATE_WEAK": {"severity": "INFO", "category": "timing", "title": "Late cycle with weak progress"},
    "GATE_CYCLE_NEAR_CAP": {"severity": "INFO", "category": "timing", "title": "Mint cycle near issuance cap"},
    "GATE_MINT_RATE_BELOW_FLOOR": {"severity": "INFO", "category": "timing", "title": "Mint rate below floor"},
    "GATE_CYCLE_CAP_EXCEEDED": {"severity": "INFO", "category": "timing", "title": "Burn exceeds remaining cycle share"},
    "GATE_COOLDOWN": {"severity": "WARN", "category": "gate", "title": "Cooldown after weak edges"},
    "QUOTE_UNAVAILABLE": {"severity": "WARN", "category": "quote", "title": "No price source available"},
    "LOOP_TRANSIENT_IO": {"severity": "WARN", "category": "loop", "title": "Transient network failure"},
    "EXEC_INSUFFICIENT_INVENTORY": {"severity": "ERROR", "category": "execute", "title": "Sell exceeds inventory"},
    "EXEC_INSUFFICIENT_FUNDS": {"severity": "ERROR", "category": "execute", "title": "Wallet cannot cover action"},
    "EXEC_SIMULATION_REVERT": {"severity": "ERROR", "category": "execute", "title": "Transaction reverted"},
    "EXEC_STALE_QUOTE": {"severity": "WARN", "category": "execute", "title": "Reserves moved past slice minimum"},
    "EXEC_SOLD": {"severity": "INFO", "category": "execute", "title": "Inventory sold"},
    "EXEC_DRY_RUN": {"severity": "INFO", "category": "execute", "title": "Dry-run sell"},
    "SETTLE_RECEIPT_TIMEOUT": {"severity": "WARN", "category": "settle", "title": "Receipt wait timed out"},
    "SETTLE_RECONCILED": {"severity": "INFO", "category": "settle", "title": "Deferred settlement reconciled"},
    "SETTLE_SETTLEMENT_EXPIRED": {"severity": "WARN", "category": "settle", "title": "Deferred settlement expired without receipt"},
    "PLAN_BELOW_MIN_TRADE_SIZE": {"severity": "INFO", "category": "plan", "title": "Inventory below minimum trade size"},
    "MINT_MINTED": {"severity": "INFO", "category": "mint", "title": "Mint recorded"},
}


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(*, reason: Any, decision_stage: Any = "", decision: Any = "") -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        normalized_decision = _normalize_reason_text(decision)
        if normalized_decision:
            return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_decision)}"
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {"severity": "INFO", "category": "unknown", "title": key.replace("_", " ").title()}


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def stamp_event(event: dict[str, Any], *, schema_name: str, event_type: str, run_tag: str = "") -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts"))
    payload["ts"] = ts
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", event_type)
    if run_tag:
        payload.setdefault("run_tag", run_tag)
    cycle = payload.get("cycle", "")
    payload["trace_id"] = str(payload.get("trace_id", "") or f"cyc_{_digest_seed(run_tag, cycle, f'{ts:.6f}')[:16]}")
    if not payload.get("decision_id"):
        payload["decision_id"] = "dec_" + _digest_seed(
            run_tag,
            payload["trace_id"],
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            ",".join(str(r) for r in payload.get("reasons", []) or []),
            f"{ts:.6f}",
        )[:20]
    return payload


def _attach_reason_codes(payload: dict[str, Any]) -> dict[str, Any]:
    stage = payload.get("decision_stage", "")
    reasons = [str(r) for r in payload.get("reasons", []) or [] if str(r).strip()]
    if not reasons and payload.get("reason"):
        reasons = [str(payload["reason"])]
    payload["reasons"] = reasons
    codes = [reason_code_for_event(reason=r, decision_stage=stage) for r in reasons]
    if not codes:
        codes = [reason_code_for_event(reason="", decision_stage=stage, decision=payload.get("decision", ""))]
    payload["reason_codes"] = codes
    payload["reason_code"] = codes[0]
    meta = reason_code_meta(codes[0])
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    return payload


def cycle_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    """Normalise one control-loop cycle outcome into a JSONL-ready record."""
    payload = stamp_event(
        event,
        schema_name=SCHEMA_CYCLE_DECISION,
        event_type=str((event or {}).get("event_type", "cycle_decision")),
        run_tag=run_tag,
    )
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    for key in ("price_fp", "market_price_fp", "wac_fp", "inventory"):
        if key in payload and payload[key] is not None:
            # Big ints stay exact in JSON consumers that parse numbers as doubles.
            payload[key] = str(payload[key])
    return _attach_reason_codes(payload)


def settlement_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_SETTLEMENT,
        event_type=str((event or {}).get("event_type", "settlement")),
        run_tag=run_tag,
    )
    payload.setdefault("decision_stage", "settle")
    payload.setdefault("decision", "unknown")
    payload["tx_hashes"] = [str(h) for h in payload.get("tx_hashes", []) or []]
    for key in ("quantity", "received_base", "cost_paid"):
        if key in payload and payload[key] is not None:
            payload[key] = str(payload[key])
    return _attach_reason_codes(payload)
