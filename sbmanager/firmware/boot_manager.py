# @file boot_manager.py
# Firmware boot manager access: efivarfs mount state, ESP device
# resolution and boot entries through efibootmgr.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Firmware boot manager access.

Every external command runs through RunCmd; a non-zero exit raises the
ToolFailure subclass of the step with the full command line attached.
"""

import io
import logging
import os
import re
from typing import Optional

from edk2toollib.utility_functions import RunCmd

from sbmanager.exceptions import BootEntryFailure, ToolFailure, VarFsUnavailable
from sbmanager.firmware.uefivariablesupport import EFIVARFS_PATH

MOUNTS_FILE = "/proc/self/mounts"
SYSFS_BLOCK = "/sys/class/block"

BOOT_ENTRY_REGEX = re.compile(r"^Boot([0-9A-Fa-f]{4})(\*?)\s+(.*)$")
LOADER_REGEX = re.compile(r"\bFile\(([^)]*)\)")


def parse_boot_entries(output: str) -> list:
    """Parses `efibootmgr` output into (boot number, label, active, loader) tuples.

    The device path follows the label after a tab; older efibootmgr releases
    only print it with -v. loader is the File() node of the path, None when
    the entry has none.
    """
    entries = []
    for line in output.splitlines():
        match = BOOT_ENTRY_REGEX.match(line.strip())
        if match is None:
            continue
        label, _, device_path = match.group(3).partition("\t")
        loader = LOADER_REGEX.search(device_path)
        entries.append(
            (match.group(1).upper(), label.strip(), match.group(2) == "*", loader.group(1) if loader else None)
        )
    return entries


class FirmwareBootMgr(object):
    """Linux implementation of the firmware boot manager operations."""

    def __init__(
        self, efivarfs_path: str = EFIVARFS_PATH, mounts_file: str = MOUNTS_FILE, sysfs_block: str = SYSFS_BLOCK
    ) -> None:
        """Inits the boot manager with the host paths it inspects."""
        self.efivarfs_path = efivarfs_path
        self.mounts_file = mounts_file
        self.sysfs_block = sysfs_block

    def _run(self, tool: str, params: str, error: type, message: str) -> str:
        results = io.StringIO()
        ret = RunCmd(tool, params, outstream=results, logging_level=logging.DEBUG)
        if ret != 0:
            raise error(f"{message}:\n{results.getvalue().strip()}", f"{tool} {params}", ret)
        return results.getvalue()

    def efivarfs_state(self) -> Optional[str]:
        """Returns None when efivarfs is not mounted, else "ro" or "rw"."""
        with open(self.mounts_file, "r") as mounts:
            for line in mounts:
                fields = line.split()
                if len(fields) < 4 or fields[2] != "efivarfs":
                    continue
                if os.path.normpath(fields[1]) != os.path.normpath(self.efivarfs_path):
                    continue
                return "ro" if "ro" in fields[3].split(",") else "rw"
        return None

    def ensure_efivarfs_writable(self) -> None:
        """Mounts efivarfs read-write, remounting it when it is read-only.

        Raises:
            (VarFsUnavailable): the mount command failed
        """
        state = self.efivarfs_state()
        if state == "rw":
            logging.debug(f"efivarfs is mounted read-write at {self.efivarfs_path}")
            return
        if state is None:
            params = f'-t efivarfs efivarfs "{self.efivarfs_path}"'
        else:
            params = f'-o remount,rw "{self.efivarfs_path}"'
        self._run("mount", params, VarFsUnavailable, "Unable to mount efivarfs read-write")

    def resolve_partition(self, mount_point: str) -> tuple:
        """Returns (disk device, partition number) of the filesystem mounted at `mount_point`.

        Raises:
            (BootEntryFailure): the device could not be resolved
        """
        source = self._run(
            "findmnt", f'-n -o SOURCE --target "{mount_point}"', BootEntryFailure, f"Unable to find {mount_point}"
        ).strip()
        if not source.startswith("/dev/"):
            raise BootEntryFailure(f"{mount_point} is not backed by a block device ({source})")

        parent = self._run(
            "lsblk", f'-no PKNAME "{source}"', BootEntryFailure, f"Unable to find the disk holding {source}"
        ).strip()
        if not parent:
            raise BootEntryFailure(f"{source} is not a partition")

        partition_file = os.path.join(self.sysfs_block, os.path.basename(source), "partition")
        try:
            with open(partition_file, "r") as partition:
                number = int(partition.read().strip())
        except (OSError, ValueError) as exc:
            raise BootEntryFailure(f"Unable to read the partition number of {source}: {exc}")

        disk = "/dev/" + parent.splitlines()[0].strip()
        logging.debug(f"{mount_point} is partition {number} of {disk}")
        return disk, number

    def list_entries(self) -> list:
        """Returns the firmware boot entries as (boot number, label, active, loader) tuples."""
        output = self._run("efibootmgr", "-v", ToolFailure, "Unable to list firmware boot entries")
        return parse_boot_entries(output)

    def create_entry(self, disk: str, partition: int, loader: str, label: str) -> Optional[str]:
        """Creates a firmware boot entry and returns its boot number.

        Raises:
            (BootEntryFailure): efibootmgr failed
        """
        before = {entry[0] for entry in self.list_entries()}
        params = f'--create --disk "{disk}" --part {partition} --loader "{loader}" --label "{label}" --unicode'
        output = self._run("efibootmgr", params, BootEntryFailure, f"Unable to create boot entry {label}")
        created = [entry[0] for entry in parse_boot_entries(output) if entry[0] not in before and entry[1] == label]
        return created[0] if created else None
