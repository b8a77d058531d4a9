from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from config import TOKEN_2022_PROGRAM_ID, load_settings


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run(self, code: str, env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["SNIPER_ENV_FILE"] = env_file
        return subprocess.run(
            [sys.executable, "-c", code],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_env_file_fails_fast(self) -> None:
        result = self._run("import config; print('ok')", "data/__definitely_missing_env_for_test__.env")
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("sniper_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "sniper.env"
            env_path.write_text(
                "\n".join(["MAX_HOLD_TIME_MS=2500", "TAKE_PROFIT_PCT=off", "MAX_CONCURRENT_SNIPES=3"]) + "\n",
                encoding="utf-8",
            )
            result = self._run(
                (
                    "import config; s = config.load_settings(); "
                    "print(f'{s.exits.max_hold_seconds}|{s.exits.take_profit_percent}|"
                    "{s.execution.max_concurrent_positions}')"
                ),
                str(env_path),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "2.5|None|3")


class LoadSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = load_settings({})
        self.assertEqual(settings.exits.take_profit_percent, 10.0)
        self.assertIsNone(settings.exits.stop_loss_percent)
        self.assertEqual(settings.exits.max_hold_seconds, 10.0)
        self.assertEqual(settings.execution.max_concurrent_positions, 1)
        self.assertEqual(settings.execution.capital_per_position, 0.01)
        self.assertTrue(settings.risk.skip_security_check)
        self.assertEqual(settings.risk.expected_token_program, TOKEN_2022_PROGRAM_ID)
        self.assertEqual(settings.risk.source_min_intervals["rugcheck"], 0.2)
        self.assertFalse(settings.execution.dry_run)

    def test_primary_rpc_is_placed_first(self) -> None:
        settings = load_settings(
            {"HELIUS_RPC_URL": "https://primary.example", "RPC_ENDPOINTS": "https://a.example, https://b.example"}
        )
        self.assertEqual(
            settings.endpoints.rpc_endpoints,
            ("https://primary.example", "https://a.example", "https://b.example"),
        )

    def test_overrides_and_clamps(self) -> None:
        settings = load_settings(
            {
                "STOP_LOSS_PCT": "15",
                "MAX_CONCURRENT_SNIPES": "0",
                "MIN_SAFETY_SCORE": "250",
                "DRY_RUN": "yes",
                "RISK_SOURCE_MIN_INTERVALS": "goplus:1.5,broken,dexscreener:x",
                "DATA_DIR": "run1",
            }
        )
        self.assertEqual(settings.exits.stop_loss_percent, 15.0)
        self.assertEqual(settings.execution.max_concurrent_positions, 1)
        self.assertEqual(settings.risk.min_safety_score, 100.0)
        self.assertTrue(settings.execution.dry_run)
        self.assertEqual(settings.risk.source_min_intervals["goplus"], 1.5)
        self.assertEqual(settings.risk.source_min_intervals["dexscreener"], 0.2)
        self.assertEqual(settings.paths.trades_file, os.path.join("run1", "sniper_trades.jsonl"))

    def test_bad_number_names_the_variable(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            load_settings({"MAX_HOLD_TIME_MS": "ten seconds"})
        self.assertIn("MAX_HOLD_TIME_MS", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
