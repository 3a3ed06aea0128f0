"""Trade pipeline: gates, sizing and tranche entry for one candidate at a time."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import config
from trading.candidate_queue import Candidate, CandidateQueue
from trading.collaborators import (
    ChecklistResult,
    CollaboratorUnavailable,
    ExecutionProvider,
    MarketDataProvider,
    SafetyChecks,
)
from trading.entry_logic import compute_position_size, plan_tranches, wait_for_confirmation
from trading.position_manager import STATUS_ACTIVE, STATUS_PARTIAL_FILL, Position, PositionManager, PositionNotFoundError
from trading.risk_gate import RiskGate
from trading.trade_journal import TradeJournal
from utils.addressing import normalize_mint, short_mint

logger = logging.getLogger(__name__)

STAGE_BUSY = "busy"
STAGE_RISK = "risk_gate"
STAGE_PRECHECK = "precheck"
STAGE_CHECKLIST = "checklist"
STAGE_SIZING = "sizing"
STAGE_ENTRY = "entry"

ResultCallback = Callable[["PipelineResult"], Any]


@dataclass
class PipelineResult:
    mint: str
    symbol: str
    entered: bool
    rejected: bool
    reason: str
    stage: str = ""
    position: Position | None = None
    checklist: ChecklistResult | None = None

    @property
    def skipped(self) -> bool:
        return not self.entered and not self.rejected


class TradePipeline:
    """Runs a candidate through risk gate, pre-check, checklist, sizing and entry.

    A mint is in flight at most once (`_processing` is the only guard and is
    released in `finally`). Busy, inter-trade cooldown and collaborator
    outages are skips that leave no cooldown behind; every other denial is a
    hard rejection that puts the mint into the queue's cooldown.
    """

    def __init__(
        self,
        queue: CandidateQueue,
        risk_gate: RiskGate,
        positions: PositionManager,
        market: MarketDataProvider,
        checks: SafetyChecks,
        executor: ExecutionProvider,
        journal: TradeJournal | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_entered: ResultCallback | None = None,
        on_rejected: ResultCallback | None = None,
    ) -> None:
        self.queue = queue
        self.risk_gate = risk_gate
        self.positions = positions
        self.market = market
        self.checks = checks
        self.executor = executor
        self.journal = journal
        self._clock = clock
        self._sleep = sleep
        self.on_entered = on_entered
        self.on_rejected = on_rejected
        self._processing: set[str] = set()
        self._entry_lock = asyncio.Lock()
        self.last_trade_at = 0.0
        self.total_processed = 0
        self.total_entered = 0
        self.total_rejected = 0
        self.total_skipped = 0

    @staticmethod
    def _max_concurrent() -> int:
        return max(1, int(getattr(config, "PIPELINE_MAX_CONCURRENT", 2)))

    @staticmethod
    def _max_open_positions() -> int:
        return max(1, int(getattr(config, "MAX_OPEN_POSITIONS", 1)))

    def cooldown_remaining(self) -> float:
        if self.last_trade_at <= 0:
            return 0.0
        cooldown = float(getattr(config, "TRADE_COOLDOWN_SECONDS", 60.0))
        return max(0.0, cooldown - (self._clock() - self.last_trade_at))

    def reset_cooldown(self) -> None:
        self.last_trade_at = 0.0

    def is_idle(self) -> bool:
        return not self._processing

    def _trade_denial(self) -> tuple[bool, str]:
        """(transient, reason) for the first failing trade-allowed rule; reason is empty when allowed."""
        remaining = self.cooldown_remaining()
        if remaining > 0:
            return True, f"trade_cooldown {remaining:.0f}s"
        open_count = self.positions.open_count()
        max_open = self._max_open_positions()
        if open_count >= max_open:
            return False, f"max_open_positions {open_count}/{max_open}"
        permission = self.risk_gate.is_trading_allowed()
        if not permission.allowed:
            return False, permission.reason
        return False, ""

    async def process(self, candidate: Candidate) -> PipelineResult:
        mint = normalize_mint(candidate.mint)
        symbol = candidate.symbol or "UNKNOWN"
        if mint in self._processing:
            return self._skip(mint, symbol, "already_processing", requeue=False)
        if len(self._processing) >= self._max_concurrent():
            return self._skip(mint, symbol, f"pipeline_busy {len(self._processing)}/{self._max_concurrent()}")

        self._processing.add(mint)
        self.total_processed += 1
        try:
            logger.info("PIPELINE_START symbol=%s mint=%s", symbol, short_mint(mint))
            return await self._run_stages(mint, symbol)
        except CollaboratorUnavailable as exc:
            self.queue.discard(mint)
            return self._skip(mint, symbol, f"collaborator_unavailable: {exc}", requeue=False)
        except Exception as exc:
            logger.exception("PIPELINE_ERROR symbol=%s mint=%s", symbol, short_mint(mint))
            return await self._reject(mint, symbol, f"pipeline_error:{type(exc).__name__}", STAGE_ENTRY)
        finally:
            self._processing.discard(mint)

    async def _run_stages(self, mint: str, symbol: str) -> PipelineResult:
        transient, reason = self._trade_denial()
        if reason:
            if transient:
                return self._skip(mint, symbol, reason)
            return await self._reject(mint, symbol, reason, STAGE_RISK)

        pre = await self.checks.quick_pre_check(mint)
        if not pre.should_analyze:
            return await self._reject(mint, symbol, f"precheck_failed: {pre.reason or 'unspecified'}", STAGE_PRECHECK)

        checklist = await self.checks.run_full_checklist(mint)
        if not checklist.passed:
            failures = ", ".join(checklist.failure_reasons) or "unspecified"
            return await self._reject(mint, symbol, f"checklist_failed: {failures}", STAGE_CHECKLIST, checklist)

        balance = await self.executor.get_balance()
        size = compute_position_size(balance)
        if size <= 0:
            return await self._reject(
                mint,
                symbol,
                f"insufficient_balance {balance:.4f}",
                STAGE_SIZING,
                checklist,
            )

        position = await self._enter(mint, symbol, size)
        if isinstance(position, PipelineResult):
            return position
        self.total_entered += 1
        result = PipelineResult(
            mint=mint,
            symbol=symbol,
            entered=True,
            rejected=False,
            reason="entered",
            stage=STAGE_ENTRY,
            position=position,
            checklist=checklist,
        )
        self._journal(
            {
                "decision_stage": "trade_open",
                "decision": "open",
                "reason": "entered",
                "mint": mint,
                "symbol": symbol,
                "position_id": position.id,
                "price": position.entry_price,
                "quantity": position.quantity,
                "cost_basis": position.cost_basis,
                "tranches": len(position.tranches),
                "checks_passed": list(checklist.passed_checks),
            }
        )
        await self._fire(self.on_entered, result)
        return result

    async def _enter(self, mint: str, symbol: str, size: float) -> Position | PipelineResult:
        plan = plan_tranches(size)
        slippage = float(getattr(config, "SLIPPAGE_BUY_PERCENT", 10.0))
        async with self._entry_lock:
            # Another slot may have opened a position while this one was in checks.
            transient, reason = self._trade_denial()
            if reason:
                if transient:
                    return self._skip(mint, symbol, reason)
                return await self._reject(mint, symbol, reason, STAGE_RISK)
            buy1 = await self.executor.buy(mint, plan.tranche1, slippage)
            if not buy1.success or not buy1.quantity_received or buy1.quantity_received <= 0:
                return await self._reject(
                    mint,
                    symbol,
                    f"tranche1_failed: {buy1.error or 'no fill'}",
                    STAGE_ENTRY,
                )
            cost1 = float(buy1.capital_spent or plan.tranche1)
            position = self.positions.create_position(
                mint,
                symbol,
                cost1 / buy1.quantity_received,
                buy1.quantity_received,
                cost1,
                status=STATUS_PARTIAL_FILL if plan.tranche2 > 0 else STATUS_ACTIVE,
            )
            # Before the tranche-2 wait, so an early exit can still set the exit cooldown.
            self.last_trade_at = self._clock()
            self.queue.mark_processed(mint)

        if plan.tranche2 > 0:
            try:
                position = await self._enter_tranche2(position, plan.tranche2, slippage)
            except Exception:
                logger.exception("TRANCHE2_ERROR symbol=%s mint=%s", symbol, short_mint(mint))
                position = await self._finalize(position)
        return position

    async def _enter_tranche2(self, position: Position, size: float, slippage: float) -> Position:
        mint = position.mint
        sample = await wait_for_confirmation(self.market, mint, position.entry_price, sleep=self._sleep)
        current = self.positions.get_position(position.id)
        if current is None or not current.is_open:
            logger.warning("TRANCHE2_ABORTED symbol=%s reason=position_closed_during_wait", position.symbol)
            return position
        if sample is None:
            logger.warning("TRANCHE2_SKIPPED symbol=%s reason=not_confirmed", position.symbol)
            return await self._finalize(position)

        buy2 = await self.executor.buy(mint, size, slippage)
        if not buy2.success or not buy2.quantity_received or buy2.quantity_received <= 0:
            logger.warning("TRANCHE2_FAILED symbol=%s err=%s", position.symbol, buy2.error or "no fill")
            return await self._finalize(position)
        cost2 = float(buy2.capital_spent or size)
        try:
            return await self.positions.add_tranche(
                position.id,
                price=cost2 / buy2.quantity_received,
                size=cost2,
                quantity=buy2.quantity_received,
            )
        except PositionNotFoundError:
            logger.error("TRANCHE2_ORPHANED symbol=%s mint=%s qty=%.4f", position.symbol, mint, buy2.quantity_received)
            return position

    async def _finalize(self, position: Position) -> Position:
        try:
            return await self.positions.finalize_entry(position.id)
        except PositionNotFoundError:
            return position

    def _skip(self, mint: str, symbol: str, reason: str, *, requeue: bool = True) -> PipelineResult:
        if requeue:
            self.queue.release(mint)
        self.total_skipped += 1
        logger.info("PIPELINE_SKIP symbol=%s mint=%s reason=%s", symbol, short_mint(mint), reason)
        return PipelineResult(mint=mint, symbol=symbol, entered=False, rejected=False, reason=reason, stage=STAGE_BUSY)

    async def _reject(
        self,
        mint: str,
        symbol: str,
        reason: str,
        stage: str,
        checklist: ChecklistResult | None = None,
    ) -> PipelineResult:
        self.queue.mark_rejected(mint, reason)
        self.total_rejected += 1
        logger.info("PIPELINE_REJECT symbol=%s mint=%s stage=%s reason=%s", symbol, short_mint(mint), stage, reason)
        self._journal(
            {
                "decision_stage": stage,
                "decision": "reject",
                "reason": reason,
                "mint": mint,
                "symbol": symbol,
                "failure_reasons": list(checklist.failure_reasons) if checklist else [],
            }
        )
        result = PipelineResult(
            mint=mint,
            symbol=symbol,
            entered=False,
            rejected=True,
            reason=reason,
            stage=stage,
            checklist=checklist,
        )
        await self._fire(self.on_rejected, result)
        return result

    def _journal(self, event: dict[str, Any]) -> None:
        if self.journal is not None:
            self.journal.record(event)

    @staticmethod
    async def _fire(callback: ResultCallback | None, result: PipelineResult) -> None:
        if callback is None:
            return
        try:
            out = callback(result)
            if inspect.isawaitable(out):
                await out
        except Exception:
            logger.exception("PIPELINE_CALLBACK_FAILED mint=%s", short_mint(result.mint))

    def get_stats(self) -> dict[str, Any]:
        return {
            "processing": len(self._processing),
            "total_processed": self.total_processed,
            "total_entered": self.total_entered,
            "total_rejected": self.total_rejected,
            "total_skipped": self.total_skipped,
            "last_trade_at": self.last_trade_at or None,
            "cooldown_remaining": round(self.cooldown_remaining(), 1),
        }
