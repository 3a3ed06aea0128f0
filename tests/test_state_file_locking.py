from __future__ import annotations

import json
import multiprocessing
import os
import tempfile
import unittest

from utils.state_file import (
    StateFileCorruptError,
    StateFileLockError,
    append_jsonl,
    read_json_locked,
    state_file_lock,
    write_json_atomic_locked,
)


def _hold_lock_worker(path: str, ready: multiprocessing.Event, release: multiprocessing.Event) -> None:
    with state_file_lock(path, timeout_seconds=2.0, poll_seconds=0.01):
        ready.set()
        release.wait(2.0)


class StateFileLockingTests(unittest.TestCase):
    def test_atomic_locked_write_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "data", "positions.json")
            payload = {
                "version": 1,
                "positions": [{"id": "pos_1", "mint": "mintA", "symbol": "ÄÖ", "quantity": 1200.5}],
                "risk": {"day_id": "2026-06-10", "trade_count_today": 1},
            }
            write_json_atomic_locked(state_path, payload, timeout_seconds=0.5)
            with open(state_path, "r", encoding="utf-8") as f:
                raw = f.read()
            self.assertIn("ÄÖ", raw)
            self.assertEqual(json.loads(raw), payload)
            self.assertEqual(read_json_locked(state_path, timeout_seconds=0.5), payload)
            leftovers = [name for name in os.listdir(os.path.dirname(state_path)) if name.endswith(".tmp")]
            self.assertEqual(leftovers, [])

    def test_missing_file_uses_default(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "absent.json")
            self.assertEqual(read_json_locked(path, default={}), {})
            with self.assertRaises(FileNotFoundError):
                read_json_locked(path)

    def test_corrupt_file_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "positions.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write('{"positions": [')
            with self.assertRaises(StateFileCorruptError) as ctx:
                read_json_locked(path, timeout_seconds=0.5)
            self.assertEqual(ctx.exception.code, "E_STATE_CORRUPT")

    def test_append_jsonl_creates_parent_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "logs", "trade_decisions.jsonl")
            append_jsonl(path, {"mint": "a", "reason": "entered"})
            append_jsonl(path, {"mint": "b", "reason": "tp1"})
            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f]
            self.assertEqual([r["mint"] for r in rows], ["a", "b"])

    def test_state_lock_is_exclusive(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "positions.json")
            ctx = multiprocessing.get_context("spawn")
            ready = ctx.Event()
            release = ctx.Event()
            proc = ctx.Process(target=_hold_lock_worker, args=(state_path, ready, release))
            proc.start()
            try:
                self.assertTrue(ready.wait(2.0), "worker did not acquire state lock in time")
                with self.assertRaises(StateFileLockError):
                    with state_file_lock(state_path, timeout_seconds=0.08, poll_seconds=0.01):
                        pass
            finally:
                release.set()
                proc.join(2.0)
                if proc.is_alive():
                    proc.terminate()
                    proc.join(1.0)
            self.assertEqual(proc.exitcode, 0)


if __name__ == "__main__":
    unittest.main()
