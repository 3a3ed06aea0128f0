"""Append-only JSONL journal of entries, exits and rejections."""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime
from typing import Any, Callable

import config
from utils import log_contracts
from utils.state_file import append_jsonl

logger = logging.getLogger(__name__)


class TradeJournal:
    def __init__(self, path: str | None = None, clock: Callable[[], float] = time.time) -> None:
        self.path = path or str(getattr(config, "TRADE_DECISIONS_LOG_FILE", "logs/trade_decisions.jsonl"))
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return bool(getattr(config, "TRADE_DECISIONS_LOG_ENABLED", True))

    def record(self, event: dict[str, Any]) -> dict[str, Any]:
        row = dict(event)
        row.setdefault("ts", self._clock())
        stage = str(row.get("decision_stage", ""))
        run_tag = str(getattr(config, "RUN_TAG", "") or "")
        if stage in {"trade_open", "trade_partial", "trade_close"}:
            row = log_contracts.trade_decision_event(row, run_tag=run_tag)
        else:
            row = log_contracts.candidate_decision_event(row, run_tag=run_tag)
        if self.enabled:
            try:
                append_jsonl(self.path, row)
            except OSError as exc:
                logger.warning("JOURNAL_WRITE_FAILED path=%s err=%s", self.path, exc)
        return row

    def _rows(self) -> list[dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        rows: list[dict[str, Any]] = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        row = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(row, dict):
                        rows.append(row)
        except OSError as exc:
            logger.warning("JOURNAL_READ_FAILED path=%s err=%s", self.path, exc)
        return rows

    def recent_trade_mints(self, lookback_seconds: float) -> set[str]:
        """Mints opened or closed within the lookback window."""
        cutoff = self._clock() - max(0.0, lookback_seconds)
        out: set[str] = set()
        for row in self._rows():
            if row.get("decision_stage") not in {"trade_open", "trade_close"}:
                continue
            try:
                ts = float(row.get("ts", 0.0))
            except (TypeError, ValueError):
                continue
            mint = str(row.get("mint", "") or "").strip()
            if mint and ts >= cutoff:
                out.add(mint)
        return out

    def daily_stats(self, day: datetime | None = None) -> dict[str, Any]:
        day_id = (day or datetime.fromtimestamp(self._clock())).strftime("%Y-%m-%d")
        closes = []
        for row in self._rows():
            if row.get("decision_stage") not in {"trade_partial", "trade_close"}:
                continue
            try:
                ts = float(row.get("ts", 0.0))
            except (TypeError, ValueError):
                continue
            if datetime.fromtimestamp(ts).strftime("%Y-%m-%d") == day_id:
                closes.append(row)
        finished = [r for r in closes if r.get("decision_stage") == "trade_close"]
        wins = sum(1 for r in finished if float(r.get("position_realized_pnl", 0.0) or 0.0) > 0)
        return {
            "day": day_id,
            "exits": len(closes),
            "closed_trades": len(finished),
            "wins": wins,
            "losses": len(finished) - wins,
            "realized_pnl": round(sum(float(r.get("realized_pnl", 0.0) or 0.0) for r in closes), 6),
        }
