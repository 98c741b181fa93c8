# @file boot_entry_manager.py
# Registers the signed boot image as a firmware boot entry.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Registers the signed boot image as a firmware boot entry."""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from sbmanager.configuration import BootConfiguration
from sbmanager.exceptions import ArtifactsNotGenerated
from sbmanager.firmware.boot_manager import FirmwareBootMgr


@dataclass(frozen=True)
class BootEntry:
    """A firmware boot entry pointing at a signed image.

    Attributes:
        firmware_device (str): disk holding the EFI system partition
        partition_number (int): partition number of the EFI system partition
        loader_path (str): image path as the firmware sees it, e.g. \\EFI\\Linux\\secure-boot-linux.efi
        label (str): boot entry description
        boot_number (str): BootXXXX number, when known
        reused (bool): an existing entry with the same label and loader was kept
    """

    firmware_device: str
    partition_number: int
    loader_path: str
    label: str
    boot_number: Optional[str] = None
    reused: bool = False


def same_loader(existing: Optional[str], loader: str) -> bool:
    """Compares firmware loader paths, which live on a case insensitive FAT partition."""
    if existing is None:
        return False
    return existing.replace("/", "\\").lower() == loader.replace("/", "\\").lower()


class BootEntryManager(object):
    """Creates (or reuses) the firmware boot entry of the signed image."""

    def __init__(self, config: BootConfiguration, boot_manager: Optional[FirmwareBootMgr] = None) -> None:
        """Inits the manager."""
        self.config = config
        self.boot_manager = boot_manager or FirmwareBootMgr()

    def loader_target(self) -> str:
        """The file the entry boots: the signed boot manager when staged, else the main image.

        Raises:
            (ArtifactsNotGenerated): neither exists
        """
        if os.path.isfile(self.config.boot_manager_target_path):
            return self.config.boot_manager_target_path
        if os.path.isfile(self.config.main_artifact_path):
            return self.config.main_artifact_path
        raise ArtifactsNotGenerated(self.config.main_artifact_path)

    def register_entry(self) -> BootEntry:
        """Registers the boot entry.

        Raises:
            (ArtifactsNotGenerated): no signed image to point the entry at
            (VarFsUnavailable): efivarfs could not be made writable
            (BootEntryFailure): the partition could not be resolved or the entry created
        """
        target = self.loader_target()
        loader = self.config.loader_path(target)
        label = self.config.name

        self.boot_manager.ensure_efivarfs_writable()
        disk, partition = self.boot_manager.resolve_partition(self.config.esp)

        if self.config.dedupe_boot_entries:
            for boot_number, existing_label, _, existing_loader in self.boot_manager.list_entries():
                if existing_label != label:
                    continue
                if same_loader(existing_loader, loader):
                    logging.info(f"Boot{boot_number} '{label}' already boots {loader}, keeping it")
                    return BootEntry(disk, partition, loader, label, boot_number, reused=True)
                logging.warning(f"Boot{boot_number} '{label}' boots {existing_loader}, adding a new entry for {loader}")

        boot_number = self.boot_manager.create_entry(disk, partition, loader, label)
        logging.info(f"Created boot entry '{label}' for {loader} on {disk} partition {partition}")
        return BootEntry(disk, partition, loader, label, boot_number)
