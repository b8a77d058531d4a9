"""Stable log contracts shared across journal writers."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

from utils.addressing import normalize_asset_id

LOG_SCHEMA_VERSION = "2026-10-19.v1"

SCHEMA_SCREENING_DECISION = "screening_decision.v1"
SCHEMA_POSITION_EVENT = "position_event.v1"

_STAGE_PREFIX: dict[str, str] = {
    "intake": "INTAKE",
    "capacity": "CAPACITY",
    "screen": "SCREEN",
    "reserve": "RESERVE",
    "acquire": "EXEC",
    "confirm": "CONFIRM",
    "monitor": "EXIT",
    "dispose": "EXIT",
    "operator": "OPERATOR",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "invalid_asset_id": "INTAKE_INVALID_ASSET_ID",
    "slots_full": "CAPACITY_SLOTS_FULL",
    "already_active": "RESERVE_ALREADY_ACTIVE",
    "accepted": "SCREEN_ACCEPTED",
    "low_score": "SCREEN_LOW_SCORE",
    "risk_report_danger": "SCREEN_RISK_REPORT_DANGER",
    "no_social_presence": "SCREEN_NO_SOCIAL_PRESENCE",
    "low_liquidity": "SCREEN_LOW_LIQUIDITY",
    "no_trading_pairs": "SCREEN_NO_TRADING_PAIRS",
    "security_flag": "SCREEN_SECURITY_FLAG",
    "program_mismatch": "SCREEN_PROGRAM_MISMATCH",
    "account_missing": "SCREEN_ACCOUNT_MISSING",
    "acquisition_failed": "EXEC_ACQUISITION_FAILED",
    "settlement_rejected": "CONFIRM_SETTLEMENT_REJECTED",
    "confirmation_timeout": "CONFIRM_TIMEOUT",
    "no_reference": "CONFIRM_NO_REFERENCE",
    "tp": "EXIT_TAKE_PROFIT",
    "sl": "EXIT_STOP_LOSS",
    "time": "EXIT_TIMEOUT",
    "manual": "EXIT_MANUAL",
    "disposal_failed": "EXIT_DISPOSAL_FAILED",
    "no_holdings": "EXIT_NO_HOLDINGS",
    "abandoned": "OPERATOR_ABANDONED",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "INTAKE_INVALID_ASSET_ID": {"severity": "WARN", "category": "intake", "title": "Asset id is not a base58 address"},
    "CAPACITY_SLOTS_FULL": {"severity": "INFO", "category": "capacity", "title": "All position slots occupied"},
    "RESERVE_ALREADY_ACTIVE": {"severity": "INFO", "category": "capacity", "title": "Asset already has a position"},
    "SCREEN_ACCEPTED": {"severity": "INFO", "category": "screen", "title": "Candidate passed screening"},
    "SCREEN_LOW_SCORE": {"severity": "INFO", "category": "screen", "title": "Composite score below threshold"},
    "SCREEN_RISK_REPORT_DANGER": {"severity": "WARN", "category": "screen", "title": "Risk report danger finding"},
    "SCREEN_NO_SOCIAL_PRESENCE": {"severity": "INFO", "category": "screen", "title": "No social presence"},
    "SCREEN_LOW_LIQUIDITY": {"severity": "INFO", "category": "screen", "title": "Liquidity below floor"},
    "SCREEN_NO_TRADING_PAIRS": {"severity": "INFO", "category": "screen", "title": "No open-market pairs"},
    "SCREEN_SECURITY_FLAG": {"severity": "WARN", "category": "screen", "title": "Security check flagged asset"},
    "SCREEN_PROGRAM_MISMATCH": {"severity": "WARN", "category": "screen", "title": "Unexpected token program"},
    "SCREEN_ACCOUNT_MISSING": {"severity": "WARN", "category": "screen", "title": "Asset account not found"},
    "EXEC_ACQUISITION_FAILED": {"severity": "WARN", "category": "execute", "title": "Acquisition failed"},
    "CONFIRM_SETTLEMENT_REJECTED": {"severity": "WARN", "category": "confirm", "title": "Settlement failed on-chain"},
    "CONFIRM_TIMEOUT": {"severity": "WARN", "category": "confirm", "title": "Settlement not confirmed in time"},
    "CONFIRM_NO_REFERENCE": {"severity": "WARN", "category": "confirm", "title": "No acquisition reference"},
    "EXIT_TAKE_PROFIT": {"severity": "INFO", "category": "exit", "title": "Closed by take profit"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Closed by stop loss"},
    "EXIT_TIMEOUT": {"severity": "INFO", "category": "exit", "title": "Closed by timeout"},
    "EXIT_MANUAL": {"severity": "INFO", "category": "exit", "title": "Closed by operator"},
    "EXIT_DISPOSAL_FAILED": {"severity": "ERROR", "category": "exit", "title": "Disposal attempt failed"},
    "EXIT_NO_HOLDINGS": {"severity": "WARN", "category": "exit", "title": "Nothing held at disposal"},
    "OPERATOR_ABANDONED": {"severity": "ERROR", "category": "operator", "title": "Position abandoned"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value or "").strip()
    if text:
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
        except ValueError:
            pass
    return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    return re.sub(r"_+", "_", text).strip("_") or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    return _STAGE_PREFIX.get(_normalize_reason_text(value) or "unknown", "UNKNOWN")


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
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = ts
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    if run_tag:
        payload.setdefault("run_tag", run_tag)
    asset_id = normalize_asset_id(payload.get("asset_id", ""))
    payload["asset_id"] = asset_id
    if not str(payload.get("trace_id", "") or "").strip():
        origin = str(payload.get("origin_signature", "") or "")
        payload["trace_id"] = f"tr_{_digest_seed(asset_id, origin)[:20]}"
    payload["decision_id"] = str(payload.get("decision_id", "") or "") or (
        "dec_"
        + _digest_seed(
            payload.get("run_tag", run_tag),
            payload["trace_id"],
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            payload.get("reason", ""),
            f"{ts:.6f}",
        )[:20]
    )
    return payload


def _apply_reason_code(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(
            reason=payload.get("reason_key", payload["reason"]),
            decision_stage=payload["decision_stage"],
            decision=payload["decision"],
        )
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta["severity"]) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta["category"]) or "unknown")
    return payload


def screening_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_SCREENING_DECISION,
        event_type=str((event or {}).get("event_type", "screening_decision")),
        run_tag=run_tag,
    )
    payload["score"] = int(round(_safe_float(payload.get("score", 0))))
    payload.setdefault("checks", {})
    return _apply_reason_code(payload)


def position_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_POSITION_EVENT,
        event_type=str((event or {}).get("event_type", "position_event")),
        run_tag=run_tag,
    )
    payload["position_id"] = str(payload.get("position_id", "") or "") or (
        f"pos_{_digest_seed(payload['asset_id'], payload.get('reserved_at', ''))[:20]}"
    )
    payload["pnl_percent"] = _safe_float(payload.get("pnl_percent", 0.0))
    return _apply_reason_code(payload)
