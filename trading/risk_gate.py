"""Daily/weekly risk ceilings shared by the pipeline and the position manager."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import config

logger = logging.getLogger(__name__)


@dataclass
class TradingPermission:
    allowed: bool
    reason: str = ""


@dataclass
class RiskState:
    day_id: str
    trade_count_today: int = 0
    pnl_today: float = 0.0
    pnl_this_week: float = 0.0


def local_day_id(ts: float) -> str:
    return datetime.fromtimestamp(float(ts)).strftime("%Y-%m-%d")


class RiskGate:
    """Ordered trade-count, daily-loss and weekly-loss ceilings.

    Only the position manager should call `record_trade` and
    `record_realized_pnl`. Day rollover is applied lazily on every access and
    resets the daily counters only; weekly P&L is cleared by `reset_weekly`.
    A loss ceiling of zero disables that rule.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        *,
        max_daily_trades: int | None = None,
        max_daily_loss: float | None = None,
        max_weekly_loss: float | None = None,
    ) -> None:
        self._clock = clock
        self._max_daily_trades = max_daily_trades
        self._max_daily_loss = max_daily_loss
        self._max_weekly_loss = max_weekly_loss
        self.state = RiskState(day_id=local_day_id(clock()))

    @property
    def max_daily_trades(self) -> int:
        if self._max_daily_trades is not None:
            return int(self._max_daily_trades)
        return int(getattr(config, "MAX_DAILY_TRADES", 2))

    @property
    def max_daily_loss(self) -> float:
        if self._max_daily_loss is not None:
            return float(self._max_daily_loss)
        return float(getattr(config, "MAX_DAILY_LOSS", 0.2))

    @property
    def max_weekly_loss(self) -> float:
        if self._max_weekly_loss is not None:
            return float(self._max_weekly_loss)
        return float(getattr(config, "MAX_WEEKLY_LOSS", 0.5))

    def _refresh_day(self) -> None:
        day_id = local_day_id(self._clock())
        if day_id == self.state.day_id:
            return
        logger.info(
            "RISK_DAY_ROLLOVER prev=%s next=%s trades=%s pnl=%.4f",
            self.state.day_id,
            day_id,
            self.state.trade_count_today,
            self.state.pnl_today,
        )
        self.state.day_id = day_id
        self.state.trade_count_today = 0
        self.state.pnl_today = 0.0

    def is_trading_allowed(self) -> TradingPermission:
        self._refresh_day()
        state = self.state
        if state.trade_count_today >= self.max_daily_trades:
            return TradingPermission(False, f"daily_trade_limit {state.trade_count_today}/{self.max_daily_trades}")
        daily_cap = self.max_daily_loss
        if daily_cap > 0 and state.pnl_today <= -daily_cap:
            return TradingPermission(False, f"daily_loss_limit {state.pnl_today:.4f}/-{daily_cap:.4f}")
        weekly_cap = self.max_weekly_loss
        if weekly_cap > 0 and state.pnl_this_week <= -weekly_cap:
            return TradingPermission(False, f"weekly_loss_limit {state.pnl_this_week:.4f}/-{weekly_cap:.4f}")
        return TradingPermission(True)

    def daily_loss_breached(self) -> bool:
        self._refresh_day()
        cap = self.max_daily_loss
        return cap > 0 and self.state.pnl_today <= -cap

    def record_trade(self) -> None:
        self._refresh_day()
        self.state.trade_count_today += 1

    def record_realized_pnl(self, delta: float) -> None:
        self._refresh_day()
        self.state.pnl_today += float(delta)
        self.state.pnl_this_week += float(delta)

    def reset_weekly(self) -> None:
        logger.info("RISK_WEEK_RESET pnl_week=%.4f", self.state.pnl_this_week)
        self.state.pnl_this_week = 0.0

    def snapshot(self) -> dict[str, Any]:
        self._refresh_day()
        return {
            "day_id": self.state.day_id,
            "trade_count_today": self.state.trade_count_today,
            "pnl_today": self.state.pnl_today,
            "pnl_this_week": self.state.pnl_this_week,
        }

    def restore(self, payload: dict[str, Any]) -> None:
        try:
            self.state = RiskState(
                day_id=str(payload.get("day_id") or local_day_id(self._clock())),
                trade_count_today=int(payload.get("trade_count_today", 0) or 0),
                pnl_today=float(payload.get("pnl_today", 0.0) or 0.0),
                pnl_this_week=float(payload.get("pnl_this_week", 0.0) or 0.0),
            )
        except (TypeError, ValueError) as exc:
            logger.warning("RISK_RESTORE_FAILED err=%s", exc)
            return
        # A snapshot from a previous day keeps only its weekly P&L.
        self._refresh_day()

    def get_stats(self) -> dict[str, Any]:
        stats = self.snapshot()
        permission = self.is_trading_allowed()
        stats.update(
            {
                "max_daily_trades": self.max_daily_trades,
                "max_daily_loss": self.max_daily_loss,
                "max_weekly_loss": self.max_weekly_loss,
                "trading_allowed": permission.allowed,
                "blocked_reason": permission.reason,
            }
        )
        return stats
