"""Top-level control loop: discovery -> queue -> pipeline, with positions monitored alongside."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import config
from trading.candidate_queue import CandidateQueue
from trading.collaborators import CollaboratorUnavailable, DiscoverySource
from trading.pipeline import PipelineResult, TradePipeline
from trading.position_manager import PositionManager
from trading.position_monitor import PositionMonitor
from trading.trade_journal import TradeJournal
from utils.addressing import short_mint

logger = logging.getLogger(__name__)

RESUME_IMMEDIATE = "immediate"
RESUME_AFTER_COOLDOWN = "after_cooldown"


class AutoOrchestrator:
    """Owns the queue, pipeline and monitor for one running instance.

    Persisted positions are put under monitoring before discovery starts, and
    discovery stays paused while any position is open. Stopping lets both
    loops finish their current iteration; open positions are left open.
    """

    def __init__(
        self,
        queue: CandidateQueue,
        pipeline: TradePipeline,
        monitor: PositionMonitor,
        positions: PositionManager,
        discovery: DiscoverySource,
        journal: TradeJournal | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.queue = queue
        self.pipeline = pipeline
        self.monitor = monitor
        self.positions = positions
        self.discovery = discovery
        self.journal = journal
        self._clock = clock
        self._stop = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()
        self._last_poll_ts = 0.0
        self._last_status_ts = 0.0
        self._pause_reason = ""
        self.started_at = 0.0
        self.total_polls = 0
        self.total_new_candidates = 0
        pipeline.on_entered = self._handle_entered
        pipeline.on_rejected = self._handle_rejected

    @staticmethod
    def _resume_policy() -> str:
        policy = str(getattr(config, "DISCOVERY_RESUME_POLICY", RESUME_AFTER_COOLDOWN) or "").strip().lower()
        return policy if policy in {RESUME_IMMEDIATE, RESUME_AFTER_COOLDOWN} else RESUME_AFTER_COOLDOWN

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("ORCH_STOP_REQUESTED open=%s", self.positions.open_count())
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def restore_positions(self) -> int:
        restored = self.positions.get_active_positions()
        adopt = getattr(self.monitor.executor, "adopt_holding", None)
        for pos in restored:
            if callable(adopt):
                adopt(pos.mint, pos.quantity, pos.cost_basis)
            logger.info(
                "RESTORE_MONITORING symbol=%s mint=%s qty=%.4f entry=%.10f rungs=%s",
                pos.symbol,
                short_mint(pos.mint),
                pos.quantity,
                pos.entry_price,
                sorted(pos.tp_rungs_hit),
            )
        return len(restored)

    def mark_recently_traded(self) -> int:
        if self.journal is None:
            return 0
        lookback = float(getattr(config, "RECENT_TRADE_LOOKBACK_MINUTES", 60.0)) * 60.0
        open_mints = {p.mint for p in self.positions.get_active_positions()}
        mints = self.journal.recent_trade_mints(lookback) - open_mints
        count = self.queue.mark_recently_traded(mints)
        if count:
            logger.info("ORCH_RECENT_TRADES_COOLDOWN count=%s", count)
        return count

    def discovery_pause_reason(self) -> str:
        open_count = self.positions.open_count()
        if open_count > 0:
            return f"position_open {open_count}"
        if self._resume_policy() == RESUME_AFTER_COOLDOWN and self.pipeline.cooldown_remaining() > 0:
            return f"trade_cooldown {self.pipeline.cooldown_remaining():.0f}s"
        return ""

    async def poll_discovery(self) -> int:
        self._last_poll_ts = self._clock()
        self.total_polls += 1
        try:
            candidates = await self.discovery.poll()
        except CollaboratorUnavailable as exc:
            logger.warning("DISCOVERY_UNAVAILABLE err=%s", exc)
            return 0
        added = sum(1 for c in candidates if self.queue.add(c))
        self.total_new_candidates += added
        if added:
            logger.info("DISCOVERY_POLL seen=%s new=%s queued=%s", len(candidates), added, self.queue.get_stats()["queue_size"])
        return added

    def _dispatch_next(self) -> bool:
        max_concurrent = max(1, int(getattr(config, "PIPELINE_MAX_CONCURRENT", 2)))
        if len(self._inflight) >= max_concurrent or self.pipeline.cooldown_remaining() > 0:
            return False
        candidate = self.queue.get_next()
        if candidate is None:
            return False
        task = asyncio.create_task(self.pipeline.process(candidate))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return True

    async def tick(self) -> None:
        self.queue.cleanup_expired_rejections()
        reason = self.discovery_pause_reason()
        if reason != self._pause_reason:
            if reason:
                logger.info("DISCOVERY_PAUSED reason=%s", reason)
            else:
                logger.info("DISCOVERY_RESUMED")
            self._pause_reason = reason
        if reason:
            return
        poll_every = float(getattr(config, "DISCOVERY_POLL_SECONDS", 5.0))
        if self._clock() - self._last_poll_ts >= poll_every:
            await self.poll_discovery()
        self._dispatch_next()

    async def run(self) -> None:
        self._stop.clear()
        self.started_at = self._clock()
        restored = self.restore_positions()
        self.mark_recently_traded()
        logger.info("ORCH_START restored=%s policy=%s", restored, self._resume_policy())

        monitor_task = asyncio.create_task(self.monitor.run(self._stop))
        tick_seconds = float(getattr(config, "ORCHESTRATOR_TICK_SECONDS", 0.1))
        try:
            while not self._stop.is_set():
                try:
                    await self.tick()
                except Exception:
                    logger.exception("ORCH_TICK_FAILED")
                self._maybe_log_status()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=tick_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._stop.set()
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)
            await monitor_task
            self.positions.flush()
            logger.info("ORCH_STOPPED %s", self.get_status())

    def _maybe_log_status(self) -> None:
        now = self._clock()
        if now - self._last_status_ts < float(getattr(config, "STATUS_LOG_SECONDS", 60.0)):
            return
        self._last_status_ts = now
        q = self.queue.get_stats()
        r = self.positions.risk_gate.get_stats()
        logger.info(
            "ORCH_STATUS open=%s queue=%s rejected=%s trades_today=%s pnl_today=%.4f paused=%s",
            self.positions.open_count(),
            q["queue_size"],
            q["active_rejections"],
            r["trade_count_today"],
            r["pnl_today"],
            self._pause_reason or "no",
        )

    def _handle_entered(self, result: PipelineResult) -> None:
        pos = result.position
        if pos is not None:
            logger.info(
                "TRADE_ENTERED symbol=%s cost=%.4f entry=%.10f tranches=%s",
                result.symbol,
                pos.cost_basis,
                pos.entry_price,
                len(pos.tranches),
            )

    def _handle_rejected(self, result: PipelineResult) -> None:
        logger.debug("TRADE_REJECTED symbol=%s reason=%s", result.symbol, result.reason)

    def get_status(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(self._clock() - self.started_at, 1) if self.started_at else 0.0,
            "polls": self.total_polls,
            "new_candidates": self.total_new_candidates,
            "discovery_paused": self._pause_reason,
            "queue": self.queue.get_stats(),
            "pipeline": self.pipeline.get_stats(),
            "positions": self.positions.get_stats(),
            "risk": self.positions.risk_gate.get_stats(),
            "monitor": self.monitor.get_stats(),
        }
