## @file lifecycle_support.py
# Shared test fixtures: a configuration rooted in a temporary directory,
# a populated /boot and firmware stand-ins.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import os

from efi_image_support import build_pe_image

from sbmanager.configuration import load_configuration

OS_RELEASE = b'NAME="Arch Linux"\nID=arch\n'
CMDLINE = "root=UUID=1234 rw rootflags=subvol=@ quiet\n"


def make_config(root, **overrides):
    """Builds a BootConfiguration whose every path lives below `root`."""
    options = {
        "esp": os.path.join(root, "efi"),
        "boot_dir": os.path.join(root, "boot"),
        "keys_dir": os.path.join(root, "etc", "keys"),
        "state_file": os.path.join(root, "var", "status.yaml"),
        "cmdline_file": os.path.join(root, "etc", "cmdline"),
        "cmdline_fallback": os.path.join(root, "proc", "cmdline"),
        "os_release": os.path.join(root, "etc", "os-release"),
        "stub": os.path.join(root, "usr", "linuxx64.efi.stub"),
        "efi_shell": os.path.join(root, "usr", "Shell_Full.efi"),
        "fwupd_efi": os.path.join(root, "usr", "fwupdx64.efi"),
        "boot_manager_efi": os.path.join(root, "usr", "systemd-bootx64.efi"),
        "snapshot_root": root,
        "key_size": "2048",
        "cert_days": "30",
    }
    options.update(overrides)
    environ = {"SECURE_BOOT_" + key.upper(): str(value) for key, value in options.items()}
    return load_configuration(os.path.join(root, "missing-config.yaml"), environ)


def write(path, contents):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = "wb" if isinstance(contents, bytes) else "w"
    with open(path, mode) as f:
        f.write(contents)
    return path


def read(path):
    with open(path, "rb") as f:
        return f.read()


def stage_trust_store(directory, guid):
    """Writes placeholder files for a complete key hierarchy."""
    write(os.path.join(directory, "uuid"), f"{guid}\n")
    for name in ("PK", "KEK", "db"):
        for ext in ("key", "crt", "esl", "auth"):
            write(os.path.join(directory, f"{name}.{ext}"), f"{name} {ext}".encode())


def populate_sources(config, ucode=("intel", "amd"), boot_manager=False):
    """Creates every file generate-efi reads. Returns {description: path}."""
    files = {
        "os_release": write(config.os_release, OS_RELEASE),
        "cmdline": write(config.cmdline_file, CMDLINE),
        "stub": write(config.stub, build_pe_image([(".text", 0x1000, b"stub code")])),
        "shell": write(config.efi_shell, build_pe_image([(".text", 0x1000, b"efi shell")])),
        "fwupd": write(config.fwupd_efi, build_pe_image([(".text", 0x1000, b"fwupd")])),
    }
    for flavor in (config.kernel, config.lts_kernel):
        files[f"vmlinuz-{flavor}"] = write(os.path.join(config.boot_dir, f"vmlinuz-{flavor}"), f"kernel {flavor}".encode())
        files[f"initramfs-{flavor}-fallback"] = write(
            os.path.join(config.boot_dir, f"initramfs-{flavor}-fallback.img"), f"fallback {flavor}".encode()
        )
    files[f"initramfs-{config.kernel}"] = write(
        os.path.join(config.boot_dir, f"initramfs-{config.kernel}.img"), f"initramfs {config.kernel}".encode()
    )
    for vendor in ucode:
        files[f"{vendor}-ucode"] = write(os.path.join(config.boot_dir, f"{vendor}-ucode.img"), f"{vendor} ucode".encode())
    if boot_manager:
        files["boot_manager"] = write(config.boot_manager_efi, build_pe_image([(".text", 0x1000, b"sd-boot")]))
    return files


class FakeBootManager(object):
    """FirmwareBootMgr stand-in keeping boot entries in memory."""

    def __init__(self, entries=None):
        self.entries = list(entries or [])
        self.mounted = False
        self.created = []

    def ensure_efivarfs_writable(self):
        self.mounted = True

    def resolve_partition(self, mount_point):
        return "/dev/nvme0n1", 1

    def list_entries(self):
        return list(self.entries)

    def create_entry(self, disk, partition, loader, label):
        boot_number = f"{len(self.entries):04X}"
        self.entries.append((boot_number, label, True, loader))
        self.created.append((disk, partition, loader, label))
        return boot_number


class FakeUefiVariable(object):
    """UefiVariable stand-in recording writes; writes to `fail_on` return failure.

    `contents` maps variable names to the data the firmware already holds.
    """

    def __init__(self, fail_on=None, setup_mode=1, contents=None):
        self.fail_on = fail_on
        self.setup_mode = setup_mode
        self.contents = dict(contents or {})
        self.writes = []
        self.last_error = None

    def GetUefiVar(self, name, guid):
        if name == "SetupMode" and self.setup_mode is not None:
            return (0, bytes([self.setup_mode]))
        if name in self.contents:
            return (0, self.contents[name])
        return (0xCB, None)

    def SetUefiVar(self, name, guid, var, attrs=None):
        self.writes.append((name, str(guid), var, attrs))
        if name == self.fail_on:
            self.last_error = OSError(22, "Invalid argument")
            return 0
        return 1
