from __future__ import annotations

import json
import tempfile
import unittest
from unittest import mock

from typer.testing import CliRunner

from _fakes import SERVER_URL, mcp_server
from oauth_stepper import app as app_mod


def _payload(output: str) -> dict:
    # The JSON envelope is always the last stdout line.
    return json.loads(output.strip().splitlines()[-1])


class NormalizeArgvTest(unittest.TestCase):
    def test_hoists_global_options(self) -> None:
        self.assertEqual(
            app_mod.normalize_cli_argv(
                ["flow", "status", "srv", "--store-dir", "/tmp/s", "--log=flow", "--log-stderr"]
            ),
            ["--store-dir", "/tmp/s", "--log=flow", "--log-stderr", "flow", "status", "srv"],
        )

    def test_keeps_subcommand_option_values(self) -> None:
        argv = ["flow", "start", SERVER_URL, "--scope", "--log", "--log", "http"]
        self.assertEqual(
            app_mod.normalize_cli_argv(argv),
            ["--log", "http", "flow", "start", SERVER_URL, "--scope", "--log"],
        )

    def test_stops_at_double_dash(self) -> None:
        argv = ["flow", "callback", "--", "--log"]
        self.assertEqual(app_mod.normalize_cli_argv(argv), argv)


class FlowCliTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store_dir = self._tmp.name
        self.runner = CliRunner()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def invoke(self, *args: str):
        return self.runner.invoke(app_mod.app, ["--store-dir", self.store_dir, *args])

    def test_start_no_browser_then_status(self) -> None:
        with mock.patch("oauth_stepper.flow.UrllibTransport", return_value=mcp_server()):
            result = self.invoke("flow", "start", SERVER_URL, "--no-browser")

        self.assertEqual(result.exit_code, 0, result.output)
        payload = _payload(result.stdout)
        self.assertTrue(payload["ok"])
        self.assertEqual(payload["result"]["step"], "redirect_to_authorize")
        self.assertIn("code_challenge=", payload["result"]["action"]["url"])

        status = self.invoke("flow", "status", "mcp.example.com-mcp")
        self.assertEqual(status.exit_code, 0, status.output)
        self.assertEqual(_payload(status.stdout)["result"]["step"], "redirect_to_authorize")

    def test_unknown_flow_is_json_error(self) -> None:
        result = self.invoke("flow", "status", "nobody")

        self.assertEqual(result.exit_code, 1)
        self.assertEqual(
            _payload(result.stdout),
            {"ok": False, "error": "no persisted flow for server id: nobody"},
        )

    def test_invalid_version_is_json_error(self) -> None:
        result = self.invoke("flow", "start", SERVER_URL, "--version", "2024-11-05")

        self.assertEqual(result.exit_code, 1)
        self.assertIn("unsupported protocol version", _payload(result.stdout)["error"])

    def test_reset(self) -> None:
        result = self.invoke("flow", "reset", "srv", "--scope", "tokens")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(
            _payload(result.stdout),
            {"ok": True, "result": {"server_id": "srv", "step": "idle", "reset": "tokens"}},
        )

    def test_log_all_writes_every_domain_to_file(self) -> None:
        log_path = f"{self.store_dir}/stepper.log"
        with mock.patch("oauth_stepper.flow.UrllibTransport", return_value=mcp_server()):
            result = self.invoke(
                "--log", "all:debug", "--log-file", log_path, "flow", "start", SERVER_URL, "--no-browser"
            )

        self.assertEqual(result.exit_code, 0, result.output)
        with open(log_path, encoding="utf-8") as fh:
            text = fh.read()
        self.assertIn("stepper.app", text)
        self.assertIn("flow.redirect", text)

    def test_invalid_log_domain(self) -> None:
        result = self.invoke("--log", "proxy", "flow", "reset", "srv")
        self.assertNotEqual(result.exit_code, 0)

    def test_help_lists_flow_commands_in_order(self) -> None:
        result = self.runner.invoke(app_mod.app, ["flow", "--help"])

        self.assertEqual(result.exit_code, 0)
        names = ["start", "step", "callback", "status", "refresh", "reset"]
        positions = [result.stdout.index(f" {name} ") for name in names]
        self.assertEqual(positions, sorted(positions))


if __name__ == "__main__":
    unittest.main()
