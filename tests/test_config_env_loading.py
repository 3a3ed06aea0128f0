from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run_import(self, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", "import config; print('ok')"],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        missing_path = "data/__definitely_missing_env_for_test__.env"
        result = self._run_import(missing_path)
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("UNITTEST_BOT_ENV_FLAG=loaded\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    "import os, config; print(os.getenv('UNITTEST_BOT_ENV_FLAG', ''))",
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def _print_config(self, env_lines: list[str], expr: str) -> subprocess.CompletedProcess[str]:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("\n".join(env_lines) + "\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            return subprocess.run(
                [sys.executable, "-c", f"import config; print({expr})"],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )

    def test_queue_and_risk_keys_are_loaded_from_env(self) -> None:
        result = self._print_config(
            [
                "QUEUE_MAX_SIZE=12",
                "QUEUE_COOLDOWN_MINUTES=7.5",
                "MAX_DAILY_TRADES=4",
                "MAX_WEEKLY_LOSS=0.9",
                "DISCOVERY_RESUME_POLICY=Immediate",
            ],
            "f'{config.QUEUE_MAX_SIZE}|{config.QUEUE_COOLDOWN_MINUTES}|{config.MAX_DAILY_TRADES}|"
            "{config.MAX_WEEKLY_LOSS}|{config.DISCOVERY_RESUME_POLICY}'",
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "12|7.5|4|0.9|immediate")

    def test_out_of_range_values_are_clamped(self) -> None:
        result = self._print_config(
            [
                "HARD_STOP_PERCENT=6",
                "TP1_SELL_PERCENT=140",
                "DEX_BATCH_SIZE=80",
                "PIPELINE_MAX_CONCURRENT=0",
            ],
            "f'{config.HARD_STOP_PERCENT}|{config.TP1_SELL_PERCENT}|{config.DEX_BATCH_SIZE}|"
            "{config.PIPELINE_MAX_CONCURRENT}'",
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "-6.0|100.0|30|1")

    def test_source_rate_limits_are_parsed(self) -> None:
        result = self._print_config(
            ["HTTP_SOURCE_RATE_LIMITS=dexscreener:50/60, broken, geckoterminal:x/60,jupiter:10/1"],
            "sorted(config.HTTP_SOURCE_RATE_LIMITS.items())",
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "[('dexscreener', (50, 60.0)), ('jupiter', (10, 1.0))]")


if __name__ == "__main__":
    unittest.main()
