"""Stable reason codes and event stamping for the trade decisions journal.

Reason strings are the primary observability surface: downstream analytics
group on `reason_code`, so the mapping below only ever grows.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_CANDIDATE_DECISION = "candidate_decision.v1"
SCHEMA_TRADE_DECISION = "trade_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "queue": "QUEUE",
    "busy": "BUSY",
    "risk_gate": "RISK",
    "precheck": "PRE",
    "checklist": "CHECK",
    "sizing": "SIZE",
    "entry": "EXEC",
    "trade_open": "EXEC",
    "trade_partial": "EXIT",
    "trade_close": "EXIT",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "already_processing": "BUSY_ALREADY_PROCESSING",
    "pipeline_busy": "BUSY_PIPELINE_FULL",
    "trade_cooldown": "BUSY_TRADE_COOLDOWN",
    "collaborator_unavailable": "BUSY_COLLABORATOR_UNAVAILABLE",
    "daily_trade_limit": "RISK_DAILY_TRADE_LIMIT",
    "daily_loss_limit": "RISK_DAILY_LOSS_LIMIT",
    "weekly_loss_limit": "RISK_WEEKLY_LOSS_LIMIT",
    "max_open_positions": "RISK_MAX_OPEN_POSITIONS",
    "insufficient_balance": "SIZE_INSUFFICIENT_BALANCE",
    "tranche1_failed": "EXEC_BUY_FAIL",
    "sell_failed": "EXEC_SELL_FAIL",
    "stop_loss": "EXIT_STOP_LOSS",
    "time_stop": "EXIT_TIME_STOP",
    "tp1": "EXIT_TP1",
    "tp2": "EXIT_TP2",
    "runner_exit": "EXIT_RUNNER",
    "manual_exit": "EXIT_MANUAL",
    "dev_sell_exit": "EXIT_DEV_SELL",
    "whale_dump_exit": "EXIT_WHALE_DUMP",
    "lp_removal_exit": "EXIT_LP_REMOVAL",
    "daily_limit_exit": "EXIT_DAILY_LIMIT",
    "emergency_exit": "EXIT_EMERGENCY",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "BUSY_ALREADY_PROCESSING": {"severity": "INFO", "category": "skip", "title": "Mint already in pipeline"},
    "BUSY_PIPELINE_FULL": {"severity": "INFO", "category": "skip", "title": "Pipeline concurrency ceiling reached"},
    "BUSY_TRADE_COOLDOWN": {"severity": "INFO", "category": "skip", "title": "Inter-trade cooldown active"},
    "BUSY_COLLABORATOR_UNAVAILABLE": {"severity": "WARN", "category": "skip", "title": "External data unavailable"},
    "RISK_DAILY_TRADE_LIMIT": {"severity": "WARN", "category": "risk", "title": "Daily trade ceiling reached"},
    "RISK_DAILY_LOSS_LIMIT": {"severity": "WARN", "category": "risk", "title": "Daily loss ceiling reached"},
    "RISK_WEEKLY_LOSS_LIMIT": {"severity": "WARN", "category": "risk", "title": "Weekly loss ceiling reached"},
    "RISK_MAX_OPEN_POSITIONS": {"severity": "INFO", "category": "risk", "title": "Open position ceiling reached"},
    "PRE_PRECHECK_FAILED": {"severity": "INFO", "category": "precheck", "title": "Fast pre-filter failed"},
    "CHECK_CHECKLIST_FAILED": {"severity": "INFO", "category": "checklist", "title": "Gating checklist failed"},
    "SIZE_INSUFFICIENT_BALANCE": {"severity": "WARN", "category": "sizing", "title": "Balance below minimum size"},
    "EXEC_BUY_FAIL": {"severity": "WARN", "category": "execute", "title": "Entry buy failed"},
    "EXEC_SELL_FAIL": {"severity": "ERROR", "category": "execute", "title": "Exit sell failed"},
    "EXEC_ENTERED": {"severity": "INFO", "category": "execute", "title": "Position opened"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Closed by hard stop"},
    "EXIT_TIME_STOP": {"severity": "INFO", "category": "exit", "title": "Closed by time stop"},
    "EXIT_TP1": {"severity": "INFO", "category": "exit", "title": "Take-profit rung 1"},
    "EXIT_TP2": {"severity": "INFO", "category": "exit", "title": "Take-profit rung 2"},
    "EXIT_RUNNER": {"severity": "INFO", "category": "exit", "title": "Runner closed"},
    "EXIT_MANUAL": {"severity": "INFO", "category": "exit", "title": "Closed manually"},
    "EXIT_DEV_SELL": {"severity": "ERROR", "category": "exit", "title": "Dev wallet sold"},
    "EXIT_WHALE_DUMP": {"severity": "ERROR", "category": "exit", "title": "Whale dump detected"},
    "EXIT_LP_REMOVAL": {"severity": "ERROR", "category": "exit", "title": "Liquidity removed"},
    "EXIT_DAILY_LIMIT": {"severity": "WARN", "category": "exit", "title": "Closed on daily loss limit"},
    "EXIT_EMERGENCY": {"severity": "ERROR", "category": "exit", "title": "Emergency exit"},
}


def normalize_reason(value: Any) -> str:
    """Reduce a free-form reason like `max_open_positions 1/1` to its stable key."""
    text = str(value or "").strip().lower()
    if not text:
        return ""
    head = re.split(r"[\s:(]", text, maxsplit=1)[0]
    head = re.sub(r"[^a-z0-9_]+", "_", head).strip("_")
    if head.startswith("exited_"):
        return head[len("exited_"):]
    if head.startswith("pipeline_error"):
        return "pipeline_error"
    return head


def _code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").upper()).strip("_")
    return text or "UNKNOWN"


def reason_code_for_event(*, reason: Any, decision_stage: Any = "") -> str:
    key = normalize_reason(reason)
    if not key:
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(key)
    if override:
        return override
    prefix = _STAGE_PREFIX.get(normalize_reason(decision_stage) or "unknown", "UNKNOWN")
    return f"{prefix}_{_code_token(key)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {"severity": "INFO", "category": "unknown", "title": key.replace("_", " ").title()}


def _digest(*parts: Any) -> str:
    seed = "|".join(str(p if p is not None else "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    return datetime.now(timezone.utc).timestamp()


def stamp_event(event: dict[str, Any], *, schema_name: str, run_tag: str = "") -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts"))
    payload["ts"] = ts
    payload["timestamp"] = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    if run_tag:
        payload.setdefault("run_tag", run_tag)
    payload["mint"] = str(payload.get("mint", "") or "").strip()
    payload["symbol"] = str(payload.get("symbol", "") or "N/A")
    payload["decision_stage"] = str(payload.get("decision_stage", "") or "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload.setdefault("trace_id", f"tr_{_digest(payload['mint'], payload['symbol'])}")
    payload.setdefault(
        "decision_id",
        "dec_" + _digest(run_tag, payload["trace_id"], payload["decision_stage"], payload["reason"], f"{ts:.6f}"),
    )
    code = str(payload.get("reason_code", "") or "").strip().upper() or reason_code_for_event(
        reason=payload["reason"],
        decision_stage=payload["decision_stage"],
    )
    payload["reason_code"] = code
    meta = reason_code_meta(code)
    payload.setdefault("reason_severity", meta["severity"])
    payload.setdefault("reason_category", meta["category"])
    return payload


def candidate_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(event, schema_name=SCHEMA_CANDIDATE_DECISION, run_tag=run_tag)
    payload["decision"] = str(payload.get("decision", "") or "unknown")
    payload["failure_reasons"] = [str(r) for r in (payload.get("failure_reasons") or [])]
    return payload


def trade_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(event, schema_name=SCHEMA_TRADE_DECISION, run_tag=run_tag)
    position_id = str(payload.get("position_id", "") or "")
    if not position_id and payload["decision_stage"] in {"trade_open", "trade_partial", "trade_close"}:
        position_id = f"pos_{_digest(payload['trace_id'], payload['mint'])}"
    payload["position_id"] = position_id
    for key in ("price", "quantity", "cost_basis", "realized_pnl", "percent_sold"):
        if key in payload:
            try:
                payload[key] = float(payload[key])
            except (TypeError, ValueError):
                payload[key] = 0.0
    return payload
