## @file test_boot_manager.py
# This contains unit tests for the efibootmgr / efivarfs wrapper
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import os
import tempfile
import unittest
from unittest.mock import patch

from lifecycle_support import write

from sbmanager.exceptions import BootEntryFailure, VarFsUnavailable
from sbmanager.firmware.boot_manager import FirmwareBootMgr, parse_boot_entries

EFIBOOTMGR_OUTPUT = """BootCurrent: 0001
Timeout: 1 seconds
BootOrder: 0001,0000,0002
Boot0000* Windows Boot Manager\tHD(1,GPT,c0ffee,0x800,0x100000)/File(\\EFI\\Microsoft\\Boot\\bootmgfw.efi)
Boot0001* secure-boot-linux\tHD(1,GPT,c0ffee,0x800,0x100000)/File(\\EFI\\arch\\secure-boot-linux.efi)
Boot0002  UEFI Shell\tFvFile(c57ad6b7-0515-40a8-9d21-551652854e37)
"""

OLD_EFIBOOTMGR_OUTPUT = """BootCurrent: 000A
BootOrder: 000A
Boot000a* Linux Boot Manager
"""


class ScriptedRunCmd(object):
    """Answers RunCmd calls from a {tool: (return code, output)} table and records the command lines."""

    def __init__(self, responses):
        self.responses = responses
        self.commands = []

    def __call__(self, cmd, params, outstream=None, **kwargs):
        self.commands.append(f"{cmd} {params}".strip())
        ret, output = self.responses[cmd]
        if callable(output):
            output = output(params)
        if outstream is not None:
            outstream.write(output)
        return ret


class Test_parse_boot_entries(unittest.TestCase):
    def test_new_format(self):
        self.assertEqual(
            parse_boot_entries(EFIBOOTMGR_OUTPUT),
            [
                ("0000", "Windows Boot Manager", True, "\\EFI\\Microsoft\\Boot\\bootmgfw.efi"),
                ("0001", "secure-boot-linux", True, "\\EFI\\arch\\secure-boot-linux.efi"),
                ("0002", "UEFI Shell", False, None),
            ],
        )

    def test_old_format(self):
        self.assertEqual(parse_boot_entries(OLD_EFIBOOTMGR_OUTPUT), [("000A", "Linux Boot Manager", True, None)])

    def test_verbose_format(self):
        output = (
            "Boot0003* secure-boot-linux\tHD(1,GPT,c0ffee,0x800,0x100000)/File(\\EFI\\systemd\\systemd-bootx64.efi)"
            "0000424f\n"
            "Boot0004* UEFI Shell\tFvVol(7cb8bdc9-f8eb-4f34-aaea-3ee4af6516a1)"
            "/FvFile(c57ad6b7-0515-40a8-9d21-551652854e37)\n"
        )
        self.assertEqual(
            parse_boot_entries(output),
            [
                ("0003", "secure-boot-linux", True, "\\EFI\\systemd\\systemd-bootx64.efi"),
                ("0004", "UEFI Shell", True, None),
            ],
        )

    def test_no_entries(self):
        self.assertEqual(parse_boot_entries("BootOrder: \n"), [])


class Test_firmware_boot_mgr(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = self.temp_dir.name
        self.mounts = os.path.join(self.root, "mounts")
        self.sysfs = os.path.join(self.root, "sys", "class", "block")
        self.manager = FirmwareBootMgr("/sys/firmware/efi/efivars", self.mounts, self.sysfs)

    def tearDown(self):
        self.temp_dir.cleanup()

    def write_mounts(self, options=None):
        lines = ["/dev/nvme0n1p2 / btrfs rw,relatime,subvol=/@ 0 0\n"]
        if options is not None:
            lines.append(f"efivarfs /sys/firmware/efi/efivars efivarfs {options} 0 0\n")
        write(self.mounts, "".join(lines))

    def test_efivarfs_state(self):
        self.write_mounts()
        self.assertIsNone(self.manager.efivarfs_state())
        self.write_mounts("ro,nosuid,nodev,noexec,relatime")
        self.assertEqual(self.manager.efivarfs_state(), "ro")
        self.write_mounts("rw,nosuid,nodev,noexec,relatime")
        self.assertEqual(self.manager.efivarfs_state(), "rw")

    def test_writable_efivarfs_is_left_alone(self):
        self.write_mounts("rw,relatime")
        run_cmd = ScriptedRunCmd({"mount": (0, "")})
        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=run_cmd):
            self.manager.ensure_efivarfs_writable()
        self.assertEqual(run_cmd.commands, [])

    def test_read_only_efivarfs_is_remounted(self):
        self.write_mounts("ro,relatime")
        run_cmd = ScriptedRunCmd({"mount": (0, "")})
        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=run_cmd):
            self.manager.ensure_efivarfs_writable()
        self.assertEqual(run_cmd.commands, ['mount -o remount,rw "/sys/firmware/efi/efivars"'])

    def test_missing_efivarfs_is_mounted(self):
        self.write_mounts()
        run_cmd = ScriptedRunCmd({"mount": (0, "")})
        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=run_cmd):
            self.manager.ensure_efivarfs_writable()
        self.assertEqual(run_cmd.commands, ['mount -t efivarfs efivarfs "/sys/firmware/efi/efivars"'])

    def test_mount_failure(self):
        self.write_mounts()
        run_cmd = ScriptedRunCmd({"mount": (32, "mount: permission denied")})
        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=run_cmd):
            with self.assertRaises(VarFsUnavailable) as context:
                self.manager.ensure_efivarfs_writable()
        self.assertEqual(context.exception.returncode, 32)
        self.assertIn("permission denied", str(context.exception))

    def test_resolve_partition(self):
        write(os.path.join(self.sysfs, "nvme0n1p1", "partition"), "1\n")
        run_cmd = ScriptedRunCmd({"findmnt": (0, "/dev/nvme0n1p1\n"), "lsblk": (0, "nvme0n1\n")})
        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=run_cmd):
            self.assertEqual(self.manager.resolve_partition("/efi"), ("/dev/nvme0n1", 1))
        self.assertEqual(
            run_cmd.commands,
            ['findmnt -n -o SOURCE --target "/efi"', 'lsblk -no PKNAME "/dev/nvme0n1p1"'],
        )

    def test_resolve_partition_failures(self):
        cases = [
            {"findmnt": (1, ""), "lsblk": (0, "sda\n")},
            {"findmnt": (0, "systemd-1\n"), "lsblk": (0, "sda\n")},
            {"findmnt": (0, "/dev/sda\n"), "lsblk": (0, "\n")},
            # no sysfs partition file for sda1
            {"findmnt": (0, "/dev/sda1\n"), "lsblk": (0, "sda\n")},
        ]
        for responses in cases:
            with self.subTest(responses=responses):
                with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=ScriptedRunCmd(responses)):
                    with self.assertRaises(BootEntryFailure):
                        self.manager.resolve_partition("/efi")

    def test_list_entries(self):
        run_cmd = ScriptedRunCmd({"efibootmgr": (0, EFIBOOTMGR_OUTPUT)})
        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=run_cmd):
            self.assertEqual(len(self.manager.list_entries()), 3)
        self.assertEqual(run_cmd.commands, ["efibootmgr -v"])

    def test_create_entry(self):
        created = EFIBOOTMGR_OUTPUT + "Boot0003* secure-boot-linux\tHD(1,GPT,c0ffee)/File(\\EFI\\Linux\\x.efi)\n"

        def efibootmgr(params):
            return created if params.startswith("--create") else EFIBOOTMGR_OUTPUT

        run_cmd = ScriptedRunCmd({"efibootmgr": (0, efibootmgr)})
        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=run_cmd):
            number = self.manager.create_entry("/dev/nvme0n1", 1, "\\EFI\\Linux\\x.efi", "secure-boot-linux")

        self.assertEqual(number, "0003")
        self.assertEqual(
            run_cmd.commands[-1],
            'efibootmgr --create --disk "/dev/nvme0n1" --part 1 --loader "\\EFI\\Linux\\x.efi" '
            '--label "secure-boot-linux" --unicode',
        )

    def test_create_entry_failure(self):
        def efibootmgr(params):
            return "Could not prepare Boot variable" if params else ""

        responses = {"efibootmgr": (0, efibootmgr)}
        run_cmd = ScriptedRunCmd(responses)

        def failing_create(cmd, params, outstream=None, **kwargs):
            if params.startswith("--create"):
                responses["efibootmgr"] = (5, efibootmgr)
            return run_cmd(cmd, params, outstream=outstream)

        with patch("sbmanager.firmware.boot_manager.RunCmd", side_effect=failing_create):
            with self.assertRaises(BootEntryFailure) as context:
                self.manager.create_entry("/dev/sda", 1, "\\EFI\\arch\\x.efi", "x")
        self.assertEqual(context.exception.returncode, 5)
        self.assertIn("--create", context.exception.command)


if __name__ == "__main__":
    unittest.main()
