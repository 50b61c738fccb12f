from __future__ import annotations

import contextlib
import io
import os
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest
from unittest.mock import patch

from pokerelay import cli
from pokerelay.config import load_config
from pokerelay.credentials import CachedToken, StaticToken
from pokerelay.ledger import LEDGER_HEADER
from pokerelay.paths import runtime_paths
from tests.helpers import SAMPLE_LOG, FakeGitHub

FULL_ENV = {
    "GITHUB_TOKEN": "ghp_test",
    "RELAY_REPO": "me/relay",
    "CLAUDE_API_KEY": "sk-test",
    "POKE_API_KEY": "poke-test",
}


def _run(argv: list[str]) -> tuple[int, str, str]:
    out = io.StringIO()
    err = io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = cli.main(argv)
    return code, out.getvalue(), err.getvalue()


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.config = str(self.root / "pokerelay.toml")

    def test_doctor_reports_problems(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            code, out, _err = _run(["--config", self.config, "doctor"])
        self.assertEqual(1, code)
        self.assertIn("problem: GITHUB_TOKEN is not set", out)

    def test_doctor_ok_with_full_environment(self) -> None:
        with patch.dict(os.environ, FULL_ENV, clear=True):
            code, out, _err = _run(["--config", self.config, "doctor"])
        self.assertEqual(0, code)
        self.assertIn("conversation log: me/relay/POKE_MESSAGES.md", out)
        self.assertIn("doctor: ok", out)

    def test_run_refuses_incomplete_config(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            code, _out, err = _run(["--config", self.config, "run", "--once"])
        self.assertEqual(2, code)
        self.assertIn("config: GITHUB_TOKEN is not set", err)

    def test_interrupt_shuts_down_cleanly(self) -> None:
        with patch.dict(os.environ, FULL_ENV, clear=True), patch.object(
            cli, "runtime_paths", return_value=runtime_paths(self.root)
        ), patch.object(cli, "_run_relay", side_effect=KeyboardInterrupt):
            code, out, _err = _run(["--config", self.config, "run", "--no-health"])
        self.assertEqual(0, code)
        self.assertIn("Shutting down relay.", out)
        self.assertTrue((self.root / ".pokerelay" / "logs").is_dir())

    def test_github_app_settings_select_installation_tokens(self) -> None:
        key_path = self.root / "relay-app.pem"
        key_path.write_text("pem\n", encoding="utf-8")
        env = {
            **FULL_ENV,
            "GITHUB_APP_ID": "1",
            "GITHUB_APP_INSTALLATION_ID": "2",
            "GITHUB_APP_PRIVATE_KEY_PATH": str(key_path),
        }
        with patch.dict(os.environ, env, clear=True):
            cfg, _warn = load_config(Path(self.config))
        credentials = cli.github_credentials(cfg)
        self.assertIsInstance(credentials, CachedToken)

        with patch.dict(os.environ, FULL_ENV, clear=True):
            cfg, _warn = load_config(Path(self.config))
        self.assertIsInstance(cli.github_credentials(cfg), StaticToken)

    def test_turns_prints_parsed_log(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): SAMPLE_LOG})
        with patch.dict(os.environ, FULL_ENV, clear=True), patch.object(cli, "GitHubClient", return_value=github):
            code, out, _err = _run(["--config", self.config, "turns", "--limit", "1"])
        self.assertEqual(0, code)
        self.assertIn("2 turns at version", out)
        self.assertIn("[assistant] Claude: You have the design review at 2pm. Also the lab report is due Friday.", out)
        self.assertNotIn("[operator]", out)

    def test_tasks_lists_nothing_for_fresh_ledger(self) -> None:
        github = FakeGitHub({("me/relay", "TASKS.md"): LEDGER_HEADER})
        with patch.dict(os.environ, FULL_ENV, clear=True), patch.object(cli, "GitHubClient", return_value=github):
            code, out, _err = _run(["--config", self.config, "tasks", "--hours", "12"])
        self.assertEqual(0, code)
        self.assertIn("no tasks finished in the last 12h", out)

    def test_turns_read_failure_exits_nonzero(self) -> None:
        with patch.dict(os.environ, FULL_ENV, clear=True), patch.object(cli, "GitHubClient", return_value=FakeGitHub()):
            code, _out, err = _run(["--config", self.config, "turns"])
        self.assertEqual(1, code)
        self.assertIn("read failed: me/relay/POKE_MESSAGES.md not found", err)


if __name__ == "__main__":
    unittest.main()
