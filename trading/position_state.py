"""Write-through persistence for open positions and risk counters."""

from __future__ import annotations

import logging
from typing import Any

import config
from utils.state_file import StateFileError, read_json_locked, write_json_atomic_locked

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def save_state(manager: Any) -> bool:
    payload = {
        "version": STATE_VERSION,
        "saved_at": manager._clock(),
        "risk": manager.risk_gate.snapshot(),
        "total_opened": manager.total_opened,
        "total_closed": manager.total_closed,
        "total_realized_pnl": manager.total_realized_pnl,
        "open_positions": [manager._serialize_pos(p) for p in manager.get_active_positions()],
    }
    try:
        write_json_atomic_locked(
            manager.state_file,
            payload,
            timeout_seconds=float(getattr(config, "STATE_LOCK_TIMEOUT_SECONDS", 2.0)),
        )
    except (StateFileError, OSError, TypeError, ValueError) as exc:
        logger.warning("POSITION_STATE_SAVE_FAILED path=%s err=%s", manager.state_file, exc)
        return False
    return True


def load_state(manager: Any) -> int:
    """Populate `manager` from disk once; returns the number of open positions restored."""
    try:
        payload = read_json_locked(
            manager.state_file,
            timeout_seconds=float(getattr(config, "STATE_LOCK_TIMEOUT_SECONDS", 2.0)),
            default=None,
        )
    except (StateFileError, OSError) as exc:
        logger.warning("POSITION_STATE_LOAD_FAILED path=%s err=%s", manager.state_file, exc)
        return 0
    if not isinstance(payload, dict):
        return 0

    risk = payload.get("risk")
    if isinstance(risk, dict):
        manager.risk_gate.restore(risk)
    manager.total_opened = int(payload.get("total_opened", 0) or 0)
    manager.total_closed = int(payload.get("total_closed", 0) or 0)
    manager.total_realized_pnl = float(payload.get("total_realized_pnl", 0.0) or 0.0)

    restored = 0
    for row in payload.get("open_positions", []) or []:
        pos = manager._deserialize_pos(row)
        if pos is None or not pos.is_open:
            continue
        manager.restore_position(pos)
        restored += 1

    logger.info(
        "POSITION_STATE_LOADED path=%s open=%s trades_today=%s pnl_today=%.4f",
        manager.state_file,
        restored,
        manager.risk_gate.state.trade_count_today,
        manager.risk_gate.state.pnl_today,
    )
    return restored
