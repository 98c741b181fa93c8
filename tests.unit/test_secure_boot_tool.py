## @file test_secure_boot_tool.py
# This contains unit tests for the secure-boot command line
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import MagicMock, patch

from sbmanager import secure_boot_tool
from sbmanager.exceptions import KeysNotGenerated


class Test_secure_boot_tool_cli(unittest.TestCase):
    def test_command_is_required(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as context:
                secure_boot_tool.get_cli_options([])
        self.assertNotEqual(context.exception.code, 0)

    def test_unknown_command(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as context:
                secure_boot_tool.get_cli_options(["install-everything"])
        self.assertNotEqual(context.exception.code, 0)

    def test_options(self):
        options = secure_boot_tool.get_cli_options(["generate-keys", "--force", "-c", "/tmp/sb.yaml", "--debug"])
        self.assertEqual(options.command, "generate-keys")
        self.assertTrue(options.force)
        self.assertTrue(options.debug)
        self.assertEqual(options.config_file, "/tmp/sb.yaml")
        self.assertIsNone(options.log_dir)
        self.assertFalse(options.resume)

    def test_every_command_is_accepted(self):
        for command in secure_boot_tool.COMMANDS:
            self.assertEqual(secure_boot_tool.get_cli_options([command]).command, command)


class Test_secure_boot_tool_main(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = self.temp_dir.name

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_invalid_configuration_fails_before_anything_runs(self):
        config_file = os.path.join(self.root, "config.yaml")
        with open(config_file, "w") as f:
            f.write(f"ucode: sparc\nkeys-dir: {self.root}/keys\n")

        with patch("sbmanager.secure_boot_tool.Orchestrator") as orchestrator:
            self.assertEqual(secure_boot_tool.main(["initial-setup", "-c", config_file]), 1)
        orchestrator.assert_not_called()
        self.assertFalse(os.path.exists(os.path.join(self.root, "keys")))

    @patch("sbmanager.secure_boot_tool.load_configuration")
    @patch("sbmanager.secure_boot_tool.Orchestrator")
    def test_operation_failure_exits_with_one(self, orchestrator, load_configuration):
        load_configuration.return_value.describe.return_value = ["kernel = linux"]
        orchestrator.return_value.generate_efi.side_effect = KeysNotGenerated("/etc/secure-boot/keys")
        with self.assertLogs(level="ERROR") as logs:
            self.assertEqual(secure_boot_tool.main(["generate-efi"]), 1)
        self.assertTrue(any("generate-keys first" in line for line in logs.output))
        self.assertTrue(any("kernel = linux" in line for line in logs.output))

    @patch("sbmanager.secure_boot_tool.load_configuration")
    @patch("sbmanager.secure_boot_tool.Orchestrator")
    def test_unexpected_failure_exits_with_two(self, orchestrator, load_configuration):
        load_configuration.return_value.describe.return_value = []
        orchestrator.return_value.add_efi.side_effect = RuntimeError("boom")
        with self.assertLogs(level="ERROR"):
            self.assertEqual(secure_boot_tool.main(["add-efi"]), 2)

    @patch("sbmanager.secure_boot_tool.load_configuration")
    @patch("sbmanager.secure_boot_tool.Orchestrator")
    def test_status_prints_lines(self, orchestrator, load_configuration):
        load_configuration.return_value.describe.return_value = []
        orchestrator.return_value.status.return_value = ["state = NO_KEYS", "enrolled = none"]
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            self.assertEqual(secure_boot_tool.main(["status"]), 0)
        self.assertIn("state = NO_KEYS\nenrolled = none\n", stdout.getvalue())

    @patch("sbmanager.secure_boot_tool.load_configuration")
    @patch("sbmanager.secure_boot_tool.Orchestrator")
    def test_force_is_passed_through(self, orchestrator, load_configuration):
        load_configuration.return_value.describe.return_value = []
        self.assertEqual(secure_boot_tool.main(["generate-keys", "--force"]), 0)
        orchestrator.return_value.generate_keys.assert_called_once_with(force=True)

    @patch("sbmanager.secure_boot_tool.load_configuration")
    @patch("sbmanager.secure_boot_tool.Orchestrator")
    def test_initial_setup_with_enrollment_error_still_succeeds(self, orchestrator, load_configuration):
        load_configuration.return_value.describe.return_value = []
        report = MagicMock(enrolled=False)
        report.enrollment.summary.return_value = ["db: written", "KEK: written", "PK: failed"]
        orchestrator.return_value.initial_setup.return_value = report
        with self.assertLogs(level="WARNING") as logs:
            self.assertEqual(secure_boot_tool.main(["initial-setup"]), 0)
        self.assertTrue(any("PK: failed" in line for line in logs.output))

    @patch("sbmanager.secure_boot_tool.load_configuration")
    @patch("sbmanager.secure_boot_tool.Orchestrator")
    def test_resume_is_passed_to_enroll_keys(self, orchestrator, load_configuration):
        load_configuration.return_value.describe.return_value = []
        orchestrator.return_value.enroll_keys.return_value = MagicMock(written=["PK"])
        self.assertEqual(secure_boot_tool.main(["enroll-keys", "--resume"]), 0)
        orchestrator.return_value.enroll_keys.assert_called_once_with(resume=True)

    @patch("sbmanager.secure_boot_tool.load_configuration")
    @patch("sbmanager.secure_boot_tool.Orchestrator")
    def test_enroll_keys_writes_everything_by_default(self, orchestrator, load_configuration):
        load_configuration.return_value.describe.return_value = []
        orchestrator.return_value.enroll_keys.return_value = MagicMock(written=["db", "KEK", "PK"])
        with self.assertLogs(level="INFO") as logs:
            self.assertEqual(secure_boot_tool.main(["enroll-keys"]), 0)
        orchestrator.return_value.enroll_keys.assert_called_once_with(resume=False)
        self.assertTrue(any("enrolled: db, KEK, PK" in line for line in logs.output))

    def test_log_dir(self):
        with patch("sbmanager.secure_boot_tool.load_configuration") as load_configuration, patch(
            "sbmanager.secure_boot_tool.Orchestrator"
        ):
            load_configuration.return_value.describe.return_value = []
            self.assertEqual(secure_boot_tool.main(["generate-snapshots", "--log-dir", self.root]), 0)
        self.assertTrue(any(name.endswith(".txt") for name in os.listdir(self.root)))


if __name__ == "__main__":
    unittest.main()
