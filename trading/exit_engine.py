"""Take-profit / stop-loss decision ladder.

`check_exit` is pure: it reads a position whose P&L was refreshed by
`PositionManager.update_position` and returns a decision. Rules are tried in
a fixed order and the first match wins:

1. hard stop-loss
2. time stop (no new high for a while and under water)
3. kill switch (in the trade too long without profit)
4. TP1 rung, 5. TP2 rung (each fires once; hits are recorded on the position)
6. runner trailing stop, 7. runner momentum stall (both only after TP2)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import config
from trading.collaborators import Candle


class ExitAction(str, Enum):
    HOLD = "hold"
    PARTIAL_EXIT = "partial_exit"
    FULL_EXIT = "full_exit"


class ExitReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TIME_STOP = "time_stop"
    TP1 = "tp1"
    TP2 = "tp2"
    RUNNER_EXIT = "runner_exit"
    MANUAL_EXIT = "manual_exit"
    DEV_SELL_EXIT = "dev_sell_exit"
    WHALE_DUMP_EXIT = "whale_dump_exit"
    LP_REMOVAL_EXIT = "lp_removal_exit"
    DAILY_LIMIT_EXIT = "daily_limit_exit"
    EMERGENCY_EXIT = "emergency_exit"


EMERGENCY_REASONS = frozenset(
    {
        ExitReason.STOP_LOSS,
        ExitReason.DEV_SELL_EXIT,
        ExitReason.WHALE_DUMP_EXIT,
        ExitReason.LP_REMOVAL_EXIT,
        ExitReason.EMERGENCY_EXIT,
    }
)

RUNG_TP1 = 1
RUNG_TP2 = 2


@dataclass(frozen=True)
class ExitDecision:
    action: ExitAction
    reason: ExitReason | None = None
    percent_to_sell: float = 0.0
    rung: int | None = None
    detail: str = ""

    @property
    def is_exit(self) -> bool:
        return self.action != ExitAction.HOLD

    @classmethod
    def hold(cls, detail: str = "") -> "ExitDecision":
        return cls(action=ExitAction.HOLD, detail=detail)

    @classmethod
    def full(cls, reason: ExitReason, detail: str = "") -> "ExitDecision":
        return cls(action=ExitAction.FULL_EXIT, reason=reason, percent_to_sell=100.0, detail=detail)


@dataclass(frozen=True)
class ExitRules:
    hard_stop_percent: float = -6.0
    time_stop_minutes: float = 4.0
    max_unprofitable_minutes: float = 10.0
    tp1_percent: float = 20.0
    tp1_sell_percent: float = 40.0
    tp2_percent: float = 35.0
    tp2_sell_percent: float = 30.0
    runner_trailing_stop_percent: float = 10.0
    stall_window_candles: int = 5
    stall_volume_decline_ratio: float = 0.8
    stall_min_volume_declines: int = 3
    stall_price_range_percent: float = 2.0
    stale_price_seconds: float = 30.0

    @classmethod
    def from_config(cls) -> "ExitRules":
        return cls(
            hard_stop_percent=float(getattr(config, "HARD_STOP_PERCENT", -6.0)),
            time_stop_minutes=float(getattr(config, "TIME_STOP_MINUTES", 4.0)),
            max_unprofitable_minutes=float(getattr(config, "MAX_UNPROFITABLE_MINUTES", 10.0)),
            tp1_percent=float(getattr(config, "TP1_PERCENT", 20.0)),
            tp1_sell_percent=float(getattr(config, "TP1_SELL_PERCENT", 40.0)),
            tp2_percent=float(getattr(config, "TP2_PERCENT", 35.0)),
            tp2_sell_percent=float(getattr(config, "TP2_SELL_PERCENT", 30.0)),
            runner_trailing_stop_percent=float(getattr(config, "RUNNER_TRAILING_STOP_PERCENT", 10.0)),
            stall_window_candles=int(getattr(config, "STALL_WINDOW_CANDLES", 5)),
            stall_volume_decline_ratio=float(getattr(config, "STALL_VOLUME_DECLINE_RATIO", 0.8)),
            stall_min_volume_declines=int(getattr(config, "STALL_MIN_VOLUME_DECLINES", 3)),
            stall_price_range_percent=float(getattr(config, "STALL_PRICE_RANGE_PERCENT", 2.0)),
            stale_price_seconds=float(getattr(config, "STALE_PRICE_SECONDS", 30.0)),
        )


def momentum_stalled(candles: Sequence[Candle], rules: ExitRules) -> bool:
    """Volume keeps shrinking while closes hug their mean over the recent window."""
    window = list(candles)[-rules.stall_window_candles:]
    if len(window) < rules.stall_window_candles:
        return False
    declines = 0
    for prev, cur in zip(window, window[1:]):
        if cur.volume < prev.volume * rules.stall_volume_decline_ratio:
            declines += 1
    if declines < rules.stall_min_volume_declines:
        return False
    closes = [c.close for c in window]
    avg = sum(closes) / len(closes)
    if avg <= 0:
        return False
    max_dev = max(abs(c - avg) / avg for c in closes)
    return max_dev * 100.0 < rules.stall_price_range_percent


def drawdown_from_high_percent(position: Any) -> float:
    if position.highest_price <= 0:
        return 0.0
    return (position.highest_price - position.current_price) / position.highest_price * 100.0


def check_exit(
    position: Any,
    *,
    now: float,
    candles: Sequence[Candle] = (),
    price_age_seconds: float | None = None,
    rules: ExitRules | None = None,
) -> ExitDecision:
    rules = rules or ExitRules.from_config()
    if position.current_price <= 0:
        return ExitDecision.hold("no_price")
    if price_age_seconds is not None and price_age_seconds > rules.stale_price_seconds:
        return ExitDecision.hold(f"stale_price {price_age_seconds:.0f}s")

    pnl_pct = float(position.unrealized_pnl_percent)
    minutes_in_trade = max(0.0, now - position.entry_time) / 60.0
    minutes_since_high = max(0.0, now - position.last_high_at) / 60.0
    rungs = position.tp_rungs_hit

    if pnl_pct <= rules.hard_stop_percent:
        return ExitDecision.full(ExitReason.STOP_LOSS, f"pnl {pnl_pct:.2f}% <= {rules.hard_stop_percent:.2f}%")

    if minutes_since_high >= rules.time_stop_minutes and pnl_pct < 0:
        return ExitDecision.full(ExitReason.TIME_STOP, f"no new high for {minutes_since_high:.1f}m, pnl {pnl_pct:.2f}%")

    if minutes_in_trade >= rules.max_unprofitable_minutes and pnl_pct <= 0:
        return ExitDecision.full(ExitReason.TIME_STOP, f"unprofitable after {minutes_in_trade:.1f}m")

    if pnl_pct >= rules.tp1_percent and RUNG_TP1 not in rungs:
        return ExitDecision(
            action=ExitAction.PARTIAL_EXIT,
            reason=ExitReason.TP1,
            percent_to_sell=rules.tp1_sell_percent,
            rung=RUNG_TP1,
            detail=f"pnl {pnl_pct:.2f}% >= {rules.tp1_percent:.2f}%",
        )

    if pnl_pct >= rules.tp2_percent and RUNG_TP2 not in rungs:
        return ExitDecision(
            action=ExitAction.PARTIAL_EXIT,
            reason=ExitReason.TP2,
            percent_to_sell=rules.tp2_sell_percent,
            rung=RUNG_TP2,
            detail=f"pnl {pnl_pct:.2f}% >= {rules.tp2_percent:.2f}%",
        )

    if RUNG_TP2 in rungs:
        drawdown = drawdown_from_high_percent(position)
        if drawdown >= rules.runner_trailing_stop_percent:
            return ExitDecision.full(ExitReason.RUNNER_EXIT, f"trail {drawdown:.2f}% from high")
        if candles and momentum_stalled(candles, rules):
            return ExitDecision.full(ExitReason.RUNNER_EXIT, "momentum_stall")

    return ExitDecision.hold()


def sell_slippage_percent(reason: ExitReason | None) -> float:
    if reason in EMERGENCY_REASONS:
        return float(getattr(config, "SLIPPAGE_EMERGENCY_PERCENT", 18.0))
    return float(getattr(config, "SLIPPAGE_SELL_PERCENT", 12.0))
