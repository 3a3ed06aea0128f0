"""Monitoring loop: refresh prices, ask the exit engine, execute exits."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import config
from trading.candidate_queue import EXITED_PREFIX, CandidateQueue
from trading.collaborators import Candle, CollaboratorUnavailable, ExecutionProvider, MarketDataProvider
from trading.exit_engine import (
    RUNG_TP2,
    ExitDecision,
    ExitReason,
    ExitRules,
    check_exit,
    sell_slippage_percent,
)
from trading.position_manager import CloseResult, Position, PositionManager, PositionNotFoundError
from trading.risk_gate import RiskGate
from trading.rug_signals import RugSignalSource, evaluate_rug_signals
from trading.trade_journal import TradeJournal
from utils.addressing import normalize_mint, short_mint

logger = logging.getLogger(__name__)


class PositionMonitor:
    """Evaluates every open position once per tick.

    A mint with an exit in flight is skipped until that exit returns, so a
    slow sell can never be duplicated by the next tick. A failed sell leaves
    the position untouched and the decision is re-derived next tick.
    """

    def __init__(
        self,
        positions: PositionManager,
        market: MarketDataProvider,
        executor: ExecutionProvider,
        queue: CandidateQueue,
        risk_gate: RiskGate,
        journal: TradeJournal | None = None,
        rug_source: RugSignalSource | None = None,
        *,
        clock: Callable[[], float] = time.time,
        rules: ExitRules | None = None,
    ) -> None:
        self.positions = positions
        self.market = market
        self.executor = executor
        self.queue = queue
        self.risk_gate = risk_gate
        self.journal = journal
        self.rug_source = rug_source
        self._clock = clock
        self._rules = rules
        self._exiting: set[str] = set()
        self._requested: dict[str, ExitReason] = {}
        self.total_exits = 0
        self.total_sell_failures = 0

    @property
    def rules(self) -> ExitRules:
        return self._rules or ExitRules.from_config()

    def request_exit(self, mint: str, reason: ExitReason = ExitReason.MANUAL_EXIT) -> bool:
        mint = normalize_mint(mint)
        if self.positions.get_position_by_mint(mint) is None:
            return False
        self._requested[mint] = reason
        logger.info("EXIT_REQUESTED mint=%s reason=%s", short_mint(mint), reason.value)
        return True

    def is_exiting(self, mint: str) -> bool:
        return normalize_mint(mint) in self._exiting

    async def _candles(self, position: Position) -> list[Candle]:
        if RUNG_TP2 not in position.tp_rungs_hit:
            return []
        interval = int(getattr(config, "CANDLE_INTERVAL_SECONDS", 15))
        try:
            return await self.market.fetch_candles(position.mint, interval, self.rules.stall_window_candles)
        except CollaboratorUnavailable:
            return []

    async def _rug_decision(self, mint: str) -> ExitDecision:
        if self.rug_source is None:
            return ExitDecision.hold()
        try:
            signals = await self.rug_source.fetch_rug_signals(mint)
        except CollaboratorUnavailable as exc:
            logger.debug("RUG_SIGNALS_UNAVAILABLE mint=%s err=%s", short_mint(mint), exc)
            return ExitDecision.hold()
        return evaluate_rug_signals(signals)

    async def evaluate(self, position: Position) -> ExitDecision:
        """Refresh the position's price and derive a decision; does not execute it."""
        mint = position.mint
        requested = self._requested.get(mint)
        if requested is not None:
            return ExitDecision.full(requested, "requested")

        try:
            sample = await self.market.fetch_price(mint)
        except CollaboratorUnavailable as exc:
            logger.debug("PRICE_UNAVAILABLE mint=%s err=%s", short_mint(mint), exc)
            return ExitDecision.hold("no_price")
        if sample is None or sample.price <= 0:
            return ExitDecision.hold("no_price")

        try:
            position = await self.positions.update_position(position.id, sample.price, sampled_at=sample.timestamp)
        except PositionNotFoundError:
            return ExitDecision.hold("closed")

        if bool(getattr(config, "EXIT_ON_DAILY_LIMIT", False)) and self.risk_gate.daily_loss_breached():
            return ExitDecision.full(ExitReason.DAILY_LIMIT_EXIT, "daily loss ceiling breached")

        rug = await self._rug_decision(mint)
        if rug.is_exit:
            return rug

        now = self._clock()
        return check_exit(
            position,
            now=now,
            candles=await self._candles(position),
            price_age_seconds=max(0.0, now - sample.timestamp),
            rules=self.rules,
        )

    async def check_position(self, position: Position) -> ExitDecision:
        if position.mint in self._exiting:
            return ExitDecision.hold("exit_in_flight")
        decision = await self.evaluate(position)
        if decision.is_exit:
            current = self.positions.get_position(position.id)
            if current is not None and current.is_open:
                await self.execute_exit(current, decision)
        return decision

    async def execute_exit(self, position: Position, decision: ExitDecision) -> CloseResult | None:
        mint = position.mint
        reason = decision.reason or ExitReason.EMERGENCY_EXIT
        if mint in self._exiting:
            return None
        self._exiting.add(mint)
        try:
            pct = min(100.0, max(0.0, decision.percent_to_sell))
            quantity = position.quantity * pct / 100.0
            if pct >= 100.0 or position.quantity - quantity < self.positions.dust_quantity:
                pct, quantity = 100.0, position.quantity
            if quantity <= 0:
                return None

            logger.info(
                "AUTO_SELL symbol=%s mint=%s reason=%s pct=%.1f pnl=%.2f%% detail=%s",
                position.symbol,
                short_mint(mint),
                reason.value,
                pct,
                position.unrealized_pnl_percent,
                decision.detail,
            )
            sell = await self.executor.sell(mint, quantity, sell_slippage_percent(reason))
            if not sell.success:
                self.total_sell_failures += 1
                logger.error("AUTO_SELL_FAILED symbol=%s reason=%s err=%s", position.symbol, reason.value, sell.error)
                self._journal(position, "trade_partial", "sell_failed", error=sell.error or "")
                return None

            result = await self.positions.close_position(
                position.id,
                position.current_price,
                pct,
                reason.value,
                proceeds=sell.proceeds,
                quantity_sold=quantity,
                rung=decision.rung,
            )
            self.total_exits += 1
            closed = result.remaining_position is None
            self._journal(
                position,
                "trade_close" if closed else "trade_partial",
                reason.value,
                percent_sold=result.percent_sold,
                quantity=result.quantity_sold,
                proceeds=result.proceeds,
                realized_pnl=result.realized_pnl,
                position_realized_pnl=position.realized_pnl,
                signature=sell.signature or "",
            )
            if closed:
                self._requested.pop(mint, None)
                self.queue.mark_rejected(mint, f"{EXITED_PREFIX}{reason.value}")
            return result
        except PositionNotFoundError:
            logger.warning("AUTO_SELL_STALE symbol=%s reason=%s position already closed", position.symbol, reason.value)
            return None
        finally:
            self._exiting.discard(mint)

    def _journal(self, position: Position, stage: str, reason: str, **extra: Any) -> None:
        if self.journal is None:
            return
        event = {
            "decision_stage": stage,
            "decision": "exit",
            "reason": reason,
            "mint": position.mint,
            "symbol": position.symbol,
            "position_id": position.id,
            "price": position.current_price,
            "entry_price": position.entry_price,
            "pnl_percent": position.unrealized_pnl_percent,
            "hold_seconds": max(0.0, self._clock() - position.entry_time),
        }
        event.update(extra)
        self.journal.record(event)

    async def tick(self) -> list[ExitDecision]:
        active = self.positions.get_active_positions()
        if not active:
            return []
        results = await asyncio.gather(*(self.check_position(p) for p in active), return_exceptions=True)
        decisions: list[ExitDecision] = []
        for pos, result in zip(active, results):
            if isinstance(result, BaseException):
                logger.error("MONITOR_ERROR symbol=%s err=%r", pos.symbol, result)
                continue
            decisions.append(result)
        return decisions

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("MONITOR_START open=%s", self.positions.open_count())
        while not stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=float(getattr(config, "MONITOR_POLL_SECONDS", 1.0)))
            except asyncio.TimeoutError:
                pass
        logger.info("MONITOR_STOP open=%s", self.positions.open_count())

    def get_stats(self) -> dict[str, Any]:
        return {
            "exits": self.total_exits,
            "sell_failures": self.total_sell_failures,
            "exiting": len(self._exiting),
            "pending_requests": len(self._requested),
        }
