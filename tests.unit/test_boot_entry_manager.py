## @file test_boot_entry_manager.py
# This contains unit tests for boot entry registration
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import os
import tempfile
import unittest

from lifecycle_support import FakeBootManager, make_config, write

from sbmanager.exceptions import ArtifactsNotGenerated
from sbmanager.firmware.boot_entry_manager import BootEntryManager, same_loader

MAIN_LOADER = "\\EFI\\arch\\secure-boot-linux.efi"
BOOT_MANAGER_LOADER = "\\EFI\\systemd\\systemd-bootx64.efi"


class Test_boot_entry_manager(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = self.temp_dir.name

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_creates_an_entry_for_the_main_image(self):
        config = make_config(self.root)
        write(config.main_artifact_path, b"signed")
        boot_manager = FakeBootManager([("0000", "Windows Boot Manager", True, "\\EFI\\Microsoft\\Boot\\bootmgfw.efi")])

        entry = BootEntryManager(config, boot_manager).register_entry()

        self.assertTrue(boot_manager.mounted)
        self.assertEqual(
            boot_manager.created,
            [("/dev/nvme0n1", 1, "\\EFI\\arch\\secure-boot-linux.efi", "secure-boot-linux")],
        )
        self.assertEqual(entry.boot_number, "0001")
        self.assertEqual(entry.firmware_device, "/dev/nvme0n1")
        self.assertEqual(entry.partition_number, 1)
        self.assertFalse(entry.reused)

    def test_existing_entry_is_reused(self):
        config = make_config(self.root)
        write(config.main_artifact_path, b"signed")
        boot_manager = FakeBootManager([("0004", "secure-boot-linux", True, "\\efi\\ARCH\\secure-boot-linux.efi")])

        entry = BootEntryManager(config, boot_manager).register_entry()

        self.assertEqual(boot_manager.created, [])
        self.assertTrue(entry.reused)
        self.assertEqual(entry.boot_number, "0004")

    def test_entry_with_another_loader_is_not_reused(self):
        write(os.path.join(self.root, "usr", "systemd-bootx64.efi"), b"MZ")
        config = make_config(self.root)
        write(config.main_artifact_path, b"signed")
        main_loader = config.loader_path(config.main_artifact_path)
        boot_manager = FakeBootManager()

        first = BootEntryManager(config, boot_manager).register_entry()
        self.assertEqual(first.loader_path, main_loader)

        # a signed boot manager staged later takes over the entry
        write(config.boot_manager_target_path, b"signed sd-boot")
        with self.assertLogs(level="WARNING") as logs:
            second = BootEntryManager(config, boot_manager).register_entry()

        self.assertFalse(second.reused)
        self.assertEqual(second.loader_path, BOOT_MANAGER_LOADER)
        self.assertEqual([created[2] for created in boot_manager.created], [main_loader, BOOT_MANAGER_LOADER])
        self.assertEqual(boot_manager.entries[-1], (second.boot_number, "secure-boot-linux", True, BOOT_MANAGER_LOADER))
        self.assertTrue(any(main_loader in line for line in logs.output))

    def test_entry_without_a_loader_is_not_reused(self):
        config = make_config(self.root)
        write(config.main_artifact_path, b"signed")
        boot_manager = FakeBootManager([("0004", "secure-boot-linux", True, None)])

        with self.assertLogs(level="WARNING"):
            entry = BootEntryManager(config, boot_manager).register_entry()

        self.assertFalse(entry.reused)
        self.assertEqual(len(boot_manager.created), 1)

    def test_same_loader(self):
        self.assertTrue(same_loader("\\EFI\\ARCH\\Secure-Boot-Linux.efi", MAIN_LOADER))
        self.assertTrue(same_loader("/EFI/arch/secure-boot-linux.efi", MAIN_LOADER))
        self.assertFalse(same_loader(BOOT_MANAGER_LOADER, MAIN_LOADER))
        self.assertFalse(same_loader(None, MAIN_LOADER))

    def test_dedupe_disabled_always_creates(self):
        config = make_config(self.root, dedupe_boot_entries="no")
        write(config.main_artifact_path, b"signed")
        boot_manager = FakeBootManager([("0004", "secure-boot-linux", True, MAIN_LOADER)])

        BootEntryManager(config, boot_manager).register_entry()
        BootEntryManager(config, boot_manager).register_entry()

        self.assertEqual(len(boot_manager.created), 2)
        self.assertEqual([e[1] for e in boot_manager.entries].count("secure-boot-linux"), 3)

    def test_signed_boot_manager_is_preferred(self):
        write(os.path.join(self.root, "usr", "systemd-bootx64.efi"), b"MZ")
        config = make_config(self.root)
        write(config.main_artifact_path, b"signed")
        write(config.boot_manager_target_path, b"signed sd-boot")
        boot_manager = FakeBootManager()

        entry = BootEntryManager(config, boot_manager).register_entry()

        self.assertEqual(entry.loader_path, "\\EFI\\systemd\\systemd-bootx64.efi")

    def test_no_signed_image(self):
        config = make_config(self.root)
        boot_manager = FakeBootManager()
        with self.assertRaises(ArtifactsNotGenerated):
            BootEntryManager(config, boot_manager).register_entry()
        self.assertFalse(boot_manager.mounted)
        self.assertEqual(boot_manager.created, [])


if __name__ == "__main__":
    unittest.main()
