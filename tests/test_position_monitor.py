from __future__ import annotations

import asyncio
import json
import os
import tempfile
import unittest

import config
from trading.candidate_queue import CandidateQueue
from trading.collaborators import BuyResult, PriceSample, SellResult
from trading.exit_engine import RUNG_TP1, ExitAction, ExitReason, ExitRules
from trading.position_manager import STATUS_PARTIAL_EXIT, PositionManager
from trading.position_monitor import PositionMonitor
from trading.risk_gate import RiskGate
from trading.rug_signals import SIGNAL_LP_REMOVAL, RugSignal
from trading.trade_journal import TradeJournal


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class _Clock:
    def __init__(self, now: float = 1_800_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeMarket:
    def __init__(self, clock: _Clock) -> None:
        self.clock = clock
        self.prices: dict[str, float] = {}
        self.errors: dict[str, BaseException] = {}

    async def fetch_price(self, mint: str) -> PriceSample | None:
        if mint in self.errors:
            raise self.errors[mint]
        price = self.prices.get(mint)
        if price is None:
            return None
        return PriceSample(price=price, timestamp=self.clock())

    async def fetch_candles(self, mint: str, interval_seconds: int, count: int) -> list:
        return []


class FakeExecutor:
    def __init__(self) -> None:
        self.sells: list[tuple[str, float, float]] = []
        self.fail = False
        self.gate: asyncio.Event | None = None

    async def buy(self, mint: str, capital_amount: float, max_slippage_percent: float) -> BuyResult:
        return BuyResult(success=False, error="not_used")

    async def sell(self, mint: str, quantity: float, max_slippage_percent: float) -> SellResult:
        self.sells.append((mint, quantity, max_slippage_percent))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            return SellResult(success=False, error="route_not_found")
        return SellResult(success=True, signature="sig")

    async def get_balance(self) -> float:
        return 0.0


class FakeRugSource:
    def __init__(self) -> None:
        self.signals: list[RugSignal] = []

    async def fetch_rug_signals(self, mint: str) -> list[RugSignal]:
        return list(self.signals)


class PositionMonitorTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            SLIPPAGE_SELL_PERCENT=12.0,
            SLIPPAGE_EMERGENCY_PERCENT=18.0,
            EXIT_ON_DAILY_LIMIT=False,
            LP_REMOVAL_MIN_LIQUIDITY=5.0,
            TRADE_DECISIONS_LOG_ENABLED=True,
            RUN_TAG="",
        )
        self.clock = _Clock()
        self.gate = RiskGate(self.clock, max_daily_trades=10, max_daily_loss=50.0, max_weekly_loss=100.0)
        self.queue = CandidateQueue(max_size=10, cooldown_seconds=900, clock=self.clock)
        self.positions = PositionManager(self.gate, clock=self.clock)
        self.market = FakeMarket(self.clock)
        self.executor = FakeExecutor()
        self.rugs = FakeRugSource()
        self.monitor = PositionMonitor(
            self.positions,
            self.market,
            self.executor,
            self.queue,
            self.gate,
            rug_source=self.rugs,
            clock=self.clock,
            rules=ExitRules(),
        )
        self.pos = self.positions.create_position("mintA", "AAA", 1.0, 100.0, 100.0)

    async def test_stop_loss_closes_position_and_sets_exit_cooldown(self) -> None:
        self.market.prices["mintA"] = 0.93
        decision = await self.monitor.check_position(self.pos)
        self.assertEqual(decision.reason, ExitReason.STOP_LOSS)
        self.assertEqual(self.executor.sells, [("mintA", 100.0, 18.0)])
        self.assertEqual(self.positions.open_count(), 0)
        self.assertAlmostEqual(self.gate.state.pnl_today, -7.0)
        rejection = self.queue.rejection_for("mintA")
        self.assertIsNotNone(rejection)
        self.assertEqual(rejection.reason, "exited_stop_loss")
        self.assertEqual(self.monitor.get_stats()["exits"], 1)

    async def test_take_profit_sells_share_and_keeps_position(self) -> None:
        self.market.prices["mintA"] = 1.25
        decision = await self.monitor.check_position(self.pos)
        self.assertEqual(decision.action, ExitAction.PARTIAL_EXIT)
        self.assertEqual(self.executor.sells[0][1:], (40.0, 12.0))
        pos = self.positions.get_position(self.pos.id)
        self.assertAlmostEqual(pos.quantity, 60.0)
        self.assertEqual(pos.status, STATUS_PARTIAL_EXIT)
        self.assertIn(RUNG_TP1, pos.tp_rungs_hit)
        self.assertFalse(self.queue.is_rejected("mintA"))

        again = await self.monitor.check_position(pos)
        self.assertEqual(again.action, ExitAction.HOLD)
        self.assertEqual(len(self.executor.sells), 1)

    async def test_failed_sell_leaves_position_unchanged_and_retries(self) -> None:
        self.market.prices["mintA"] = 1.25
        self.executor.fail = True
        await self.monitor.check_position(self.pos)
        pos = self.positions.get_position(self.pos.id)
        self.assertAlmostEqual(pos.quantity, 100.0)
        self.assertEqual(pos.tp_rungs_hit, set())
        self.assertEqual(self.monitor.get_stats()["sell_failures"], 1)
        self.assertFalse(self.monitor.is_exiting("mintA"))

        self.executor.fail = False
        decision = await self.monitor.check_position(pos)
        self.assertEqual(decision.reason, ExitReason.TP1)
        self.assertAlmostEqual(self.positions.get_position(self.pos.id).quantity, 60.0)

    async def test_critical_rug_signal_forces_emergency_exit(self) -> None:
        self.market.prices["mintA"] = 1.05
        self.rugs.signals = [RugSignal(kind=SIGNAL_LP_REMOVAL, mint="mintA", timestamp=self.clock(), value=1.5)]
        decision = await self.monitor.check_position(self.pos)
        self.assertEqual(decision.reason, ExitReason.LP_REMOVAL_EXIT)
        self.assertEqual(self.executor.sells, [("mintA", 100.0, 18.0)])
        self.assertEqual(self.queue.rejection_for("mintA").reason, "exited_lp_removal_exit")

    async def test_non_critical_rug_signal_is_ignored(self) -> None:
        self.market.prices["mintA"] = 1.05
        self.rugs.signals = [RugSignal(kind=SIGNAL_LP_REMOVAL, mint="mintA", timestamp=self.clock(), value=40.0)]
        decision = await self.monitor.check_position(self.pos)
        self.assertEqual(decision.action, ExitAction.HOLD)
        self.assertEqual(self.executor.sells, [])

    async def test_daily_loss_breach_closes_open_positions_when_enabled(self) -> None:
        self.market.prices["mintA"] = 1.0
        self.gate.record_realized_pnl(-60.0)
        self.assertEqual((await self.monitor.check_position(self.pos)).action, ExitAction.HOLD)

        self.patch_cfg(EXIT_ON_DAILY_LIMIT=True)
        decision = await self.monitor.check_position(self.pos)
        self.assertEqual(decision.reason, ExitReason.DAILY_LIMIT_EXIT)
        self.assertEqual(self.positions.open_count(), 0)

    async def test_manual_exit_request(self) -> None:
        self.assertFalse(self.monitor.request_exit("unknownMint"))
        self.assertTrue(self.monitor.request_exit("mintA"))
        self.assertEqual(self.monitor.get_stats()["pending_requests"], 1)

        decisions = await self.monitor.tick()
        self.assertEqual([d.reason for d in decisions], [ExitReason.MANUAL_EXIT])
        self.assertEqual(self.positions.open_count(), 0)
        self.assertEqual(self.monitor.get_stats()["pending_requests"], 0)
        self.assertEqual(self.executor.sells[0][2], 12.0)

    async def test_missing_price_holds(self) -> None:
        decision = await self.monitor.check_position(self.pos)
        self.assertEqual(decision.action, ExitAction.HOLD)
        self.assertEqual(decision.detail, "no_price")
        self.assertEqual(self.executor.sells, [])

    async def test_exit_in_flight_is_not_duplicated(self) -> None:
        self.market.prices["mintA"] = 0.9
        self.executor.gate = asyncio.Event()
        first = asyncio.create_task(self.monitor.check_position(self.pos))
        await asyncio.sleep(0)
        self.assertTrue(self.monitor.is_exiting("mintA"))

        second = await self.monitor.check_position(self.pos)
        self.assertEqual(second.detail, "exit_in_flight")
        self.executor.gate.set()
        await first
        self.assertEqual(len(self.executor.sells), 1)
        self.assertEqual(self.positions.open_count(), 0)

    async def test_tranche_filled_during_partial_sell_stays_on_position(self) -> None:
        self.market.prices["mintA"] = 1.25
        self.executor.gate = asyncio.Event()
        exit_task = asyncio.create_task(self.monitor.check_position(self.pos))
        await asyncio.sleep(0)
        self.assertEqual(self.executor.sells, [("mintA", 40.0, 12.0)])

        await self.positions.add_tranche(self.pos.id, price=1.0, size=100.0)
        self.executor.gate.set()
        decision = await exit_task

        self.assertEqual(decision.reason, ExitReason.TP1)
        pos = self.positions.get_position(self.pos.id)
        self.assertAlmostEqual(pos.closed_quantity, 40.0)
        self.assertAlmostEqual(pos.quantity, 160.0)
        self.assertAlmostEqual(pos.cost_basis, 160.0)
        self.assertAlmostEqual(self.gate.state.pnl_today, 10.0)
        self.assertIn(RUNG_TP1, pos.tp_rungs_hit)

    async def test_tranche_filled_during_full_sell_keeps_unsold_tokens_open(self) -> None:
        self.market.prices["mintA"] = 0.9
        self.executor.gate = asyncio.Event()
        exit_task = asyncio.create_task(self.monitor.check_position(self.pos))
        await asyncio.sleep(0)
        self.assertEqual(self.executor.sells, [("mintA", 100.0, 18.0)])

        await self.positions.add_tranche(self.pos.id, price=0.9, size=90.0)
        self.executor.gate.set()
        await exit_task

        pos = self.positions.get_position(self.pos.id)
        self.assertIsNotNone(pos)
        self.assertEqual(pos.status, STATUS_PARTIAL_EXIT)
        self.assertAlmostEqual(pos.closed_quantity, 100.0)
        self.assertAlmostEqual(pos.quantity, 100.0)
        self.assertEqual(self.positions.open_count(), 1)
        self.assertFalse(self.queue.is_rejected("mintA"))

    async def test_tick_isolates_failing_position(self) -> None:
        other = self.positions.create_position("mintB", "BBB", 1.0, 10.0, 10.0)
        self.market.prices["mintA"] = 0.9
        self.market.errors["mintB"] = RuntimeError("boom")
        decisions = await self.monitor.tick()
        self.assertEqual([d.reason for d in decisions], [ExitReason.STOP_LOSS])
        self.assertIsNotNone(self.positions.get_position(other.id))

    async def test_run_stops_on_event(self) -> None:
        self.patch_cfg(MONITOR_POLL_SECONDS=0.01)
        self.market.prices["mintA"] = 0.9
        stop = asyncio.Event()
        task = asyncio.create_task(self.monitor.run(stop))
        for _ in range(50):
            if self.positions.open_count() == 0:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        self.assertEqual(self.positions.open_count(), 0)

    async def test_exits_are_journaled(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "decisions.jsonl")
            self.monitor.journal = TradeJournal(path, clock=self.clock)
            self.market.prices["mintA"] = 1.25
            self.executor.fail = True
            await self.monitor.check_position(self.pos)
            self.executor.fail = False
            self.market.prices["mintA"] = 0.9
            await self.monitor.check_position(self.positions.get_position(self.pos.id))

            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f if line.strip()]
        self.assertEqual([r["reason_code"] for r in rows], ["EXEC_SELL_FAIL", "EXIT_STOP_LOSS"])
        self.assertEqual(rows[1]["decision_stage"], "trade_close")
        self.assertAlmostEqual(rows[1]["realized_pnl"], -10.0)
        self.assertEqual(rows[1]["position_id"], self.pos.id)
        self.assertEqual(self.monitor.journal.daily_stats()["losses"], 1)


if __name__ == "__main__":
    unittest.main()
