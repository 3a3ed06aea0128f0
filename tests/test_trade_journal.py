from __future__ import annotations

import json
import os
import tempfile
import unittest
from datetime import datetime

import config
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


class TradeJournalTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(TRADE_DECISIONS_LOG_ENABLED=True, RUN_TAG="paper-01")
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "logs", "decisions.jsonl")
        self.now = datetime(2026, 6, 10, 15, 0, 0).timestamp()
        self.journal = TradeJournal(self.path, clock=lambda: self.now)

    def tearDown(self) -> None:
        self.tmp.cleanup()
        super().tearDown()

    def _rows(self) -> list[dict]:
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def test_candidate_and_trade_rows_use_their_schema(self) -> None:
        self.journal.record({"decision_stage": "checklist", "reason": "checklist_failed: liquidity", "mint": "m1"})
        self.journal.record({"decision_stage": "trade_open", "reason": "entered", "mint": "m2", "price": "0.5"})
        rows = self._rows()
        self.assertEqual(rows[0]["schema_name"], "candidate_decision.v1")
        self.assertEqual(rows[0]["reason_code"], "CHECK_CHECKLIST_FAILED")
        self.assertEqual(rows[0]["failure_reasons"], [])
        self.assertEqual(rows[1]["schema_name"], "trade_decision.v1")
        self.assertEqual(rows[1]["price"], 0.5)
        self.assertEqual(rows[1]["run_tag"], "paper-01")
        self.assertEqual(rows[1]["ts"], self.now)

    def test_disabled_journal_writes_nothing(self) -> None:
        self.patch_cfg(TRADE_DECISIONS_LOG_ENABLED=False)
        row = self.journal.record({"decision_stage": "precheck", "reason": "precheck_failed: too_old", "mint": "m"})
        self.assertEqual(row["reason_code"], "PRE_PRECHECK_FAILED")
        self.assertFalse(os.path.exists(self.path))

    def test_recent_trade_mints(self) -> None:
        self.journal.record({"decision_stage": "trade_open", "reason": "entered", "mint": "fresh", "ts": self.now - 120})
        self.journal.record({"decision_stage": "trade_close", "reason": "tp1", "mint": "old", "ts": self.now - 7200})
        self.journal.record({"decision_stage": "precheck", "reason": "precheck_failed", "mint": "rejected"})
        self.assertEqual(self.journal.recent_trade_mints(3600), {"fresh"})
        self.assertEqual(self.journal.recent_trade_mints(3 * 3600), {"fresh", "old"})

    def test_corrupt_lines_are_skipped(self) -> None:
        self.journal.record({"decision_stage": "trade_open", "reason": "entered", "mint": "ok"})
        with open(self.path, "a", encoding="utf-8") as f:
            f.write("{not json\n")
        self.assertEqual(self.journal.recent_trade_mints(60), {"ok"})

    def test_daily_stats(self) -> None:
        self.journal.record({"decision_stage": "trade_partial", "reason": "tp1", "mint": "a", "realized_pnl": 0.05})
        self.journal.record(
            {
                "decision_stage": "trade_close",
                "reason": "runner_exit",
                "mint": "a",
                "realized_pnl": 0.02,
                "position_realized_pnl": 0.07,
            }
        )
        self.journal.record(
            {
                "decision_stage": "trade_close",
                "reason": "stop_loss",
                "mint": "b",
                "realized_pnl": -0.03,
                "position_realized_pnl": -0.03,
            }
        )
        self.journal.record(
            {
                "decision_stage": "trade_close",
                "reason": "stop_loss",
                "mint": "c",
                "realized_pnl": -0.5,
                "ts": self.now - 86_400,
            }
        )
        stats = self.journal.daily_stats()
        self.assertEqual(stats["day"], "2026-06-10")
        self.assertEqual(stats["exits"], 3)
        self.assertEqual(stats["closed_trades"], 2)
        self.assertEqual((stats["wins"], stats["losses"]), (1, 1))
        self.assertAlmostEqual(stats["realized_pnl"], 0.04)

    def test_missing_file_means_no_history(self) -> None:
        self.assertEqual(self.journal.recent_trade_mints(3600), set())
        self.assertEqual(self.journal.daily_stats()["exits"], 0)


if __name__ == "__main__":
    unittest.main()
