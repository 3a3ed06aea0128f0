from __future__ import annotations

import unittest
from datetime import datetime

import config
from trading.risk_gate import RiskGate, local_day_id


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
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RiskGateTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.clock = _Clock(datetime(2026, 6, 10, 12, 0, 0).timestamp())
        self.gate = RiskGate(self.clock, max_daily_trades=2, max_daily_loss=0.2, max_weekly_loss=0.5)

    def test_fresh_gate_allows_trading(self) -> None:
        permission = self.gate.is_trading_allowed()
        self.assertTrue(permission.allowed)
        self.assertEqual(permission.reason, "")

    def test_daily_trade_limit(self) -> None:
        self.gate.record_trade()
        self.assertTrue(self.gate.is_trading_allowed().allowed)
        self.gate.record_trade()
        permission = self.gate.is_trading_allowed()
        self.assertFalse(permission.allowed)
        self.assertTrue(permission.reason.startswith("daily_trade_limit"))

    def test_daily_loss_limit_is_inclusive(self) -> None:
        self.gate.record_realized_pnl(-0.1)
        self.assertTrue(self.gate.is_trading_allowed().allowed)
        self.gate.record_realized_pnl(-0.1)
        permission = self.gate.is_trading_allowed()
        self.assertFalse(permission.allowed)
        self.assertTrue(permission.reason.startswith("daily_loss_limit"))
        self.assertTrue(self.gate.daily_loss_breached())

    def test_rules_are_reported_in_order(self) -> None:
        self.gate.record_trade()
        self.gate.record_trade()
        self.gate.record_realized_pnl(-0.6)
        self.assertTrue(self.gate.is_trading_allowed().reason.startswith("daily_trade_limit"))

        gate = RiskGate(self.clock, max_daily_trades=5, max_daily_loss=0.2, max_weekly_loss=0.5)
        gate.record_realized_pnl(-0.6)
        self.assertTrue(gate.is_trading_allowed().reason.startswith("daily_loss_limit"))

    def test_weekly_loss_survives_day_rollover(self) -> None:
        self.gate.record_realized_pnl(-0.15)
        self.clock.now += 86_400
        self.gate.record_realized_pnl(-0.15)
        self.clock.now += 86_400
        self.gate.record_realized_pnl(-0.15)
        self.assertTrue(self.gate.is_trading_allowed().allowed)
        self.clock.now += 86_400
        self.gate.record_realized_pnl(-0.06)
        permission = self.gate.is_trading_allowed()
        self.assertFalse(permission.allowed)
        self.assertTrue(permission.reason.startswith("weekly_loss_limit"))

        self.gate.reset_weekly()
        self.assertTrue(self.gate.is_trading_allowed().allowed)

    def test_day_rollover_resets_daily_counters_only(self) -> None:
        self.clock.now = datetime(2026, 6, 10, 23, 59, 0).timestamp()
        self.gate.record_trade()
        self.gate.record_trade()
        self.gate.record_realized_pnl(-0.1)
        self.assertFalse(self.gate.is_trading_allowed().allowed)

        self.clock.now += 120
        self.assertTrue(self.gate.is_trading_allowed().allowed)
        snap = self.gate.snapshot()
        self.assertEqual(snap["day_id"], "2026-06-11")
        self.assertEqual(snap["trade_count_today"], 0)
        self.assertEqual(snap["pnl_today"], 0.0)
        self.assertAlmostEqual(snap["pnl_this_week"], -0.1)

    def test_zero_loss_ceiling_disables_rule(self) -> None:
        gate = RiskGate(self.clock, max_daily_trades=5, max_daily_loss=0.0, max_weekly_loss=0.0)
        gate.record_realized_pnl(-10.0)
        self.assertTrue(gate.is_trading_allowed().allowed)
        self.assertFalse(gate.daily_loss_breached())

    def test_limits_follow_config(self) -> None:
        self.patch_cfg(MAX_DAILY_TRADES=1)
        gate = RiskGate(self.clock)
        gate.record_trade()
        self.assertFalse(gate.is_trading_allowed().allowed)

    def test_restore_from_previous_day_keeps_weekly_pnl(self) -> None:
        self.gate.restore(
            {
                "day_id": "2026-06-09",
                "trade_count_today": 2,
                "pnl_today": -0.1,
                "pnl_this_week": -0.3,
            }
        )
        snap = self.gate.snapshot()
        self.assertEqual(snap["day_id"], local_day_id(self.clock.now))
        self.assertEqual(snap["trade_count_today"], 0)
        self.assertAlmostEqual(snap["pnl_this_week"], -0.3)

    def test_restore_same_day_keeps_counters(self) -> None:
        self.gate.restore({"day_id": "2026-06-10", "trade_count_today": 2, "pnl_today": -0.05})
        self.assertFalse(self.gate.is_trading_allowed().allowed)
        stats = self.gate.get_stats()
        self.assertEqual(stats["trade_count_today"], 2)
        self.assertFalse(stats["trading_allowed"])


if __name__ == "__main__":
    unittest.main()
