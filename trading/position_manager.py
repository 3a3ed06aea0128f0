"""Open positions, tranche accounting and realized P&L booking."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import config
from trading import position_state
from trading.risk_gate import RiskGate
from utils.addressing import normalize_mint, short_mint

logger = logging.getLogger(__name__)

STATUS_PENDING_ENTRY = "pending_entry"
STATUS_PARTIAL_FILL = "partial_fill"
STATUS_ACTIVE = "active"
STATUS_PARTIAL_EXIT = "partial_exit"
STATUS_CLOSED = "closed"

CLOSED_HISTORY_LIMIT = 200


class PositionNotFoundError(LookupError):
    pass


@dataclass
class Tranche:
    size: float
    price: float
    quantity: float
    timestamp: float


@dataclass
class Position:
    id: str
    mint: str
    symbol: str
    entry_price: float
    current_price: float
    quantity: float
    cost_basis: float
    entry_time: float
    highest_price: float
    last_high_at: float
    tranches: list[Tranche] = field(default_factory=list)
    tp_rungs_hit: set[int] = field(default_factory=set)
    status: str = STATUS_ACTIVE
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    closed_quantity: float = 0.0
    realized_pnl: float = 0.0
    last_price_at: float = 0.0
    closed_at: float | None = None
    close_reason: str = ""

    @property
    def is_open(self) -> bool:
        return self.status != STATUS_CLOSED

    @property
    def filled_quantity(self) -> float:
        return sum(t.quantity for t in self.tranches)


@dataclass
class CloseResult:
    realized_pnl: float
    proceeds: float
    quantity_sold: float
    percent_sold: float
    remaining_position: Position | None


class PositionManager:
    """Sole owner of positions and the only writer of realized P&L.

    The in-memory map is authoritative; the state file is written through on
    every structural change and only read once, at construction. Mutations of
    one position are serialized through a per-position asyncio lock.
    """

    def __init__(
        self,
        risk_gate: RiskGate,
        state_file: str | None = None,
        clock: Callable[[], float] = time.time,
        dust_quantity: float | None = None,
    ) -> None:
        self.risk_gate = risk_gate
        self.state_file = state_file
        self._clock = clock
        self._dust_quantity = dust_quantity
        self._positions: dict[str, Position] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.closed_positions: list[Position] = []
        self.total_opened = 0
        self.total_closed = 0
        self.total_realized_pnl = 0.0
        self._last_flush_ts = 0.0
        if self.state_file:
            position_state.load_state(self)

    @property
    def dust_quantity(self) -> float:
        if self._dust_quantity is not None:
            return max(0.0, float(self._dust_quantity))
        return max(0.0, float(getattr(config, "DUST_QUANTITY", 0.0001)))

    def _lock(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[position_id] = lock
        return lock

    def _require(self, position_id: str) -> Position:
        pos = self._positions.get(position_id)
        if pos is None or not pos.is_open:
            raise PositionNotFoundError(position_id)
        return pos

    def _save(self, *, force: bool = True) -> None:
        if not self.state_file:
            return
        now = self._clock()
        interval = float(getattr(config, "STATE_FLUSH_INTERVAL_SECONDS", 5.0))
        if not force and now - self._last_flush_ts < interval:
            return
        if position_state.save_state(self):
            self._last_flush_ts = now

    @staticmethod
    def _serialize_pos(pos: Position) -> dict[str, Any]:
        row = asdict(pos)
        row["tp_rungs_hit"] = sorted(pos.tp_rungs_hit)
        return row

    @staticmethod
    def _deserialize_pos(row: Any) -> Position | None:
        if not isinstance(row, dict):
            return None
        try:
            tranches = [
                Tranche(
                    size=float(t["size"]),
                    price=float(t["price"]),
                    quantity=float(t["quantity"]),
                    timestamp=float(t["timestamp"]),
                )
                for t in row.get("tranches", []) or []
            ]
            return Position(
                id=str(row["id"]),
                mint=normalize_mint(row["mint"]),
                symbol=str(row.get("symbol", "") or "N/A"),
                entry_price=float(row["entry_price"]),
                current_price=float(row.get("current_price", row["entry_price"])),
                quantity=float(row["quantity"]),
                cost_basis=float(row["cost_basis"]),
                entry_time=float(row["entry_time"]),
                highest_price=float(row.get("highest_price", row["entry_price"])),
                last_high_at=float(row.get("last_high_at", row["entry_time"])),
                tranches=tranches,
                tp_rungs_hit={int(r) for r in row.get("tp_rungs_hit", []) or []},
                status=str(row.get("status", STATUS_ACTIVE)),
                unrealized_pnl=float(row.get("unrealized_pnl", 0.0) or 0.0),
                unrealized_pnl_percent=float(row.get("unrealized_pnl_percent", 0.0) or 0.0),
                closed_quantity=float(row.get("closed_quantity", 0.0) or 0.0),
                realized_pnl=float(row.get("realized_pnl", 0.0) or 0.0),
                last_price_at=float(row.get("last_price_at", 0.0) or 0.0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("POSITION_ROW_INVALID err=%s row_id=%s", exc, row.get("id"))
            return None

    def restore_position(self, position: Position) -> None:
        """Register a deserialized open position without touching risk counters."""
        self._positions[position.id] = position

    def create_position(
        self,
        mint: str,
        symbol: str,
        entry_price: float,
        quantity: float,
        cost_basis: float,
        *,
        status: str = STATUS_ACTIVE,
    ) -> Position:
        if entry_price <= 0 or quantity <= 0 or cost_basis <= 0:
            raise ValueError(f"invalid fill price={entry_price} quantity={quantity} cost={cost_basis}")
        now = self._clock()
        mint = normalize_mint(mint)
        pos = Position(
            id=f"pos_{uuid.uuid4().hex[:12]}",
            mint=mint,
            symbol=symbol,
            entry_price=float(entry_price),
            current_price=entry_price,
            quantity=quantity,
            cost_basis=cost_basis,
            entry_time=now,
            highest_price=entry_price,
            last_high_at=now,
            tranches=[Tranche(size=cost_basis, price=float(entry_price), quantity=quantity, timestamp=now)],
            status=status,
            last_price_at=now,
        )
        self._recompute_pnl(pos)
        self._positions[pos.id] = pos
        self.total_opened += 1
        self.risk_gate.record_trade()
        logger.info(
            "POSITION_OPEN id=%s symbol=%s mint=%s price=%.10f qty=%.4f cost=%.4f",
            pos.id,
            symbol,
            short_mint(mint),
            pos.entry_price,
            quantity,
            cost_basis,
        )
        self._save()
        return pos

    async def add_tranche(self, position_id: str, price: float, size: float, quantity: float | None = None) -> Position:
        """Append a fill of `size` capital; `quantity` defaults to size/price."""
        if price <= 0 or size <= 0:
            raise ValueError(f"invalid tranche price={price} size={size}")
        async with self._lock(position_id):
            pos = self._require(position_id)
            qty = float(quantity) if quantity else size / price
            pos.tranches.append(Tranche(size=size, price=size / qty, quantity=qty, timestamp=self._clock()))
            pos.quantity += qty
            pos.cost_basis += size
            pos.entry_price = pos.cost_basis / pos.quantity
            if pos.status in (STATUS_PENDING_ENTRY, STATUS_PARTIAL_FILL):
                pos.status = STATUS_ACTIVE
            self._recompute_pnl(pos)
            logger.info(
                "POSITION_TRANCHE id=%s n=%s price=%.10f size=%.4f avg_entry=%.10f",
                pos.id,
                len(pos.tranches),
                price,
                size,
                pos.entry_price,
            )
            self._save()
            return pos

    async def finalize_entry(self, position_id: str) -> Position:
        """Promote a partially filled entry to active when no further tranche will come."""
        async with self._lock(position_id):
            pos = self._require(position_id)
            if pos.status in (STATUS_PENDING_ENTRY, STATUS_PARTIAL_FILL):
                pos.status = STATUS_ACTIVE
                self._save()
            return pos

    @staticmethod
    def _recompute_pnl(pos: Position) -> None:
        pos.unrealized_pnl = pos.quantity * pos.current_price - pos.cost_basis
        pos.unrealized_pnl_percent = (pos.unrealized_pnl / pos.cost_basis * 100.0) if pos.cost_basis > 0 else 0.0

    async def update_position(self, position_id: str, current_price: float, sampled_at: float | None = None) -> Position:
        async with self._lock(position_id):
            pos = self._require(position_id)
            pos.current_price = float(current_price)
            pos.last_price_at = float(sampled_at if sampled_at is not None else self._clock())
            if pos.current_price > pos.highest_price:
                pos.highest_price = pos.current_price
                pos.last_high_at = pos.last_price_at
            self._recompute_pnl(pos)
            self._save(force=False)
            return pos

    async def close_position(
        self,
        position_id: str,
        sell_price: float,
        percent_to_sell: float,
        reason: str,
        *,
        proceeds: float | None = None,
        quantity_sold: float | None = None,
        rung: int | None = None,
    ) -> CloseResult:
        """Sell a share of the position and book the realized P&L.

        `proceeds` overrides `quantity_sold * sell_price` when the execution
        provider reports actual proceeds. `quantity_sold` books the exact token
        amount that was sold; the percent is then derived from the quantity held
        at booking time, so a tranche that landed while the sell was in flight
        stays on the position. `rung` records a take-profit rung hit in the same
        critical section.
        """
        async with self._lock(position_id):
            pos = self._require(position_id)
            if quantity_sold is not None and pos.quantity > 0:
                percent_to_sell = min(float(quantity_sold), pos.quantity) / pos.quantity * 100.0
            pct = max(0.0, min(100.0, float(percent_to_sell)))
            qty_sold = pos.quantity * pct / 100.0
            if pct >= 100.0 or pos.quantity - qty_sold < self.dust_quantity:
                pct = 100.0
                qty_sold = pos.quantity
            cost_sold = pos.cost_basis if pct >= 100.0 else pos.cost_basis * pct / 100.0
            gross = float(proceeds) if proceeds is not None else qty_sold * float(sell_price)
            realized = gross - cost_sold

            pos.closed_quantity += qty_sold
            pos.realized_pnl += realized
            if pct >= 100.0:
                pos.quantity = 0.0
                pos.cost_basis = 0.0
            else:
                pos.quantity -= qty_sold
                pos.cost_basis -= cost_sold
            pos.current_price = float(sell_price)
            if rung is not None:
                pos.tp_rungs_hit.add(int(rung))
            self._recompute_pnl(pos)
            self.risk_gate.record_realized_pnl(realized)
            self.total_realized_pnl += realized

            remaining: Position | None = pos
            if pct >= 100.0:
                pos.status = STATUS_CLOSED
                pos.closed_at = self._clock()
                pos.close_reason = reason
                self._positions.pop(pos.id, None)
                self._locks.pop(pos.id, None)
                self.closed_positions.append(pos)
                del self.closed_positions[:-CLOSED_HISTORY_LIMIT]
                self.total_closed += 1
                remaining = None
            else:
                pos.status = STATUS_PARTIAL_EXIT

            logger.info(
                "POSITION_CLOSE id=%s symbol=%s reason=%s pct=%.1f qty=%.4f proceeds=%.6f pnl=%+.6f status=%s",
                pos.id,
                pos.symbol,
                reason,
                pct,
                qty_sold,
                gross,
                realized,
                pos.status,
            )
            self._save()
            return CloseResult(
                realized_pnl=realized,
                proceeds=gross,
                quantity_sold=qty_sold,
                percent_sold=pct,
                remaining_position=remaining,
            )

    def get_active_positions(self) -> list[Position]:
        return [p for p in self._positions.values() if p.is_open]

    def get_position(self, position_id: str) -> Position | None:
        return self._positions.get(position_id)

    def get_position_by_mint(self, mint: str) -> Position | None:
        mint = normalize_mint(mint)
        for pos in self._positions.values():
            if pos.mint == mint and pos.is_open:
                return pos
        return None

    def open_count(self) -> int:
        return len(self.get_active_positions())

    def flush(self) -> None:
        self._save()

    def get_stats(self) -> dict[str, object]:
        active = self.get_active_positions()
        return {
            "open_positions": len(active),
            "total_opened": self.total_opened,
            "total_closed": self.total_closed,
            "total_realized_pnl": round(self.total_realized_pnl, 6),
            "unrealized_pnl": round(sum(p.unrealized_pnl for p in active), 6),
            "committed_capital": round(sum(p.cost_basis for p in active), 6),
        }
