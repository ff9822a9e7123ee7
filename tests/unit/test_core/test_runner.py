# SPDX-License-Identifier: LGPL-3.0-or-later
import subprocess
import unittest
from unittest.mock import patch

from fakes.fake_logger import FakeLogger
from vmdiskman.core.runner import CommandResult, ProcessRunner


class TestProcessRunner(unittest.TestCase):
    def setUp(self):
        self.runner = ProcessRunner(FakeLogger())

    @patch("vmdiskman.core.runner.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["echo"], 0, stdout="hi\n", stderr="")
        res = self.runner.run(["echo", "hi"], timeout=5)

        self.assertTrue(res.ok)
        self.assertEqual(res.stdout, "hi\n")
        self.assertEqual(res.argv, ("echo", "hi"))
        _, kwargs = mock_run.call_args
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["env"]["LC_ALL"], "C")
        self.assertIs(kwargs["stdin"], subprocess.DEVNULL)

    @patch("vmdiskman.core.runner.subprocess.run")
    def test_input_text_is_passed(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["ntfsresize"], 0, stdout="", stderr="")
        self.runner.run(["ntfsresize", "--force", "/dev/x"], input_text="y\n")
        _, kwargs = mock_run.call_args
        self.assertEqual(kwargs["input"], "y\n")
        self.assertNotIn("stdin", kwargs)

    @patch("vmdiskman.core.runner.subprocess.run")
    def test_nonzero_exit_is_data(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["false"], 3, stdout="", stderr="bad thing\n")
        res = self.runner.run(["false"])
        self.assertFalse(res.ok)
        self.assertEqual(res.returncode, 3)
        self.assertEqual(res.diagnostic(), "bad thing")

    @patch("vmdiskman.core.runner.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(["sleep", "9"], 1, output=b"partial")
        res = self.runner.run(["sleep", "9"], timeout=1)
        self.assertTrue(res.timed_out)
        self.assertFalse(res.ok)
        self.assertEqual(res.returncode, ProcessRunner.TIMEOUT_RC)
        self.assertEqual(res.stdout, "partial")
        self.assertIn("timed out", res.diagnostic())

    @patch("vmdiskman.core.runner.subprocess.run")
    def test_missing_tool(self, mock_run):
        mock_run.side_effect = FileNotFoundError(2, "No such file")
        res = self.runner.run(["sgdisk", "-e", "/dev/nbd0"])
        self.assertEqual(res.returncode, ProcessRunner.NOT_FOUND_RC)
        self.assertIn("command not found", res.stderr)

    @patch("vmdiskman.core.runner.subprocess.run")
    def test_default_timeout(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["true"], 0)
        ProcessRunner(FakeLogger(), default_timeout=42).run(["true"])
        self.assertEqual(mock_run.call_args[1]["timeout"], 42)


class TestCommandResult(unittest.TestCase):
    def test_output_joins_streams(self):
        res = CommandResult(("x",), 1, "out\n", "err\n")
        self.assertEqual(res.output, "out\nerr")

    def test_diagnostic_without_output(self):
        self.assertEqual(CommandResult(("x",), 5).diagnostic(), "exit status 5")

    def test_diagnostic_tail(self):
        res = CommandResult(("x",), 1, "", "a\nb\nc\n")
        self.assertEqual(res.diagnostic(1), "c")


class TestProbes(unittest.TestCase):
    def test_pid_alive_for_self(self):
        import os

        self.assertTrue(ProcessRunner(FakeLogger()).pid_alive(os.getpid()))

    def test_read_text_missing(self):
        self.assertIsNone(ProcessRunner(FakeLogger()).read_text("/nonexistent/vmdiskman/x"))
        self.assertEqual(ProcessRunner(FakeLogger()).list_dir("/nonexistent/vmdiskman"), [])


if __name__ == "__main__":
    unittest.main()
