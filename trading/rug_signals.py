"""Rug-pull signals (dev wallet sells, liquidity pulls, whale dumps) mapped to emergency exits."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

import config
from trading.exit_engine import ExitDecision, ExitReason

SIGNAL_DEV_SELL = "dev_sell"
SIGNAL_LP_REMOVAL = "lp_removal"
SIGNAL_WHALE_DUMP = "whale_dump"

_EXIT_REASON_BY_SIGNAL = {
    SIGNAL_DEV_SELL: ExitReason.DEV_SELL_EXIT,
    SIGNAL_LP_REMOVAL: ExitReason.LP_REMOVAL_EXIT,
    SIGNAL_WHALE_DUMP: ExitReason.WHALE_DUMP_EXIT,
}

# Evaluated in this order when several critical signals arrive together.
_SIGNAL_PRIORITY = (SIGNAL_DEV_SELL, SIGNAL_LP_REMOVAL, SIGNAL_WHALE_DUMP)


@dataclass(frozen=True)
class RugSignal:
    kind: str
    mint: str
    timestamp: float
    # Percent of holdings sold for dev_sell/whale_dump; remaining base-asset
    # liquidity for lp_removal.
    value: float = 0.0
    detail: str = ""

    @property
    def critical(self) -> bool:
        if self.kind == SIGNAL_DEV_SELL:
            return self.value >= float(getattr(config, "DEV_SELL_CRITICAL_PERCENT", 25.0))
        if self.kind == SIGNAL_LP_REMOVAL:
            return self.value < float(getattr(config, "LP_REMOVAL_MIN_LIQUIDITY", 5.0))
        if self.kind == SIGNAL_WHALE_DUMP:
            return self.value >= float(getattr(config, "WHALE_DUMP_CRITICAL_PERCENT", 10.0))
        return False


class RugSignalSource(Protocol):
    async def fetch_rug_signals(self, mint: str) -> list[RugSignal]: ...


def evaluate_rug_signals(signals: Iterable[RugSignal]) -> ExitDecision:
    """Full exit on the highest-priority critical signal, otherwise hold."""
    critical = {s.kind: s for s in signals if s.critical}
    for kind in _SIGNAL_PRIORITY:
        signal = critical.get(kind)
        if signal is not None:
            detail = signal.detail or f"{kind} value={signal.value:.2f}"
            return ExitDecision.full(_EXIT_REASON_BY_SIGNAL[kind], detail)
    return ExitDecision.hold()
