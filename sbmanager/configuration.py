# @file configuration.py
# Resolves the runtime configuration of the secure-boot command.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Resolves the runtime configuration of the secure-boot command.

Configuration is built exactly once, from built-in defaults, an optional
yaml file and SECURE_BOOT_* environment variables (in increasing order of
precedence), validated, and then handed to every component as an immutable
BootConfiguration.

Example config.yaml:
    esp: /efi
    kernel: linux-zen
    ucode: amd
    cmdline-file: /etc/kernel/cmdline
    subvolume-root: "@"
    subvolume-snapshot: "@snapshots/%s/snapshot"
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

import yaml

from sbmanager.exceptions import ConfigurationError

DEFAULT_CONFIG_FILE = "/etc/secure-boot/config.yaml"
ENVIRONMENT_PREFIX = "SECURE_BOOT_"

# systemd-boot only picks up unified images from this directory
BOOT_MANAGER_EFI_SUBDIR = "/EFI/Linux"

UCODE_SELECTORS = ("*", "intel", "amd")

DEFAULTS = {
    "esp": "/efi",
    "efi_subdir": "/EFI/arch",
    "kernel": "linux",
    "lts_kernel": "linux-lts",
    "name": None,
    "cmdline_file": "/etc/kernel/cmdline",
    "cmdline_fallback": "/proc/cmdline",
    "ucode": "*",
    "subvolume_root": "@",
    "subvolume_snapshot": "@snapshots/%s/snapshot",
    "snapshot_root": "/",
    "keys_dir": "/etc/secure-boot/keys",
    "state_file": "/var/lib/secure-boot/status.yaml",
    "boot_dir": "/boot",
    "os_release": "/etc/os-release",
    "stub": "/usr/lib/systemd/boot/efi/linuxx64.efi.stub",
    "efi_shell": "/usr/share/edk2-shell/x64/Shell_Full.efi",
    "fwupd_efi": "/usr/lib/fwupd/efi/fwupdx64.efi",
    "boot_manager_efi": "/usr/lib/systemd/boot/efi/systemd-bootx64.efi",
    "boot_manager_target": "/EFI/systemd/systemd-bootx64.efi",
    "dedupe_boot_entries": True,
    "key_size": 4096,
    "cert_days": 3650,
}

# short environment names kept for the most commonly overridden values
ENVIRONMENT_ALIASES = {
    "EFI": "efi_subdir",
    "CMDLINE": "cmdline_file",
    "KEYS": "keys_dir",
    "STATE": "state_file",
}

_BOOLEAN_FIELDS = ("dedupe_boot_entries",)
_INTEGER_FIELDS = ("key_size", "cert_days")


@dataclass(frozen=True)
class BootConfiguration:
    """Resolved runtime parameters.

    Attributes:
        esp (str): mount point of the EFI system partition
        efi_subdir (str): directory on the ESP that receives the signed images, e.g. /EFI/arch
        kernel (str): primary kernel flavor, e.g. linux
        lts_kernel (str): alternate kernel flavor used for the -lts recovery image
        name (str): artifact base name, e.g. secure-boot-linux
        cmdline_file (str): kernel command line source
        cmdline_fallback (str): command line source used when cmdline_file does not exist
        ucode (str): microcode selector, one of *, intel, amd
        subvolume_root (str): root subvolume identifier in the kernel command line
        subvolume_snapshot (str): printf style snapshot subvolume template, one %s for the snapshot id
        snapshot_root (str): filesystem queried for snapshots
        keys_dir (str): trust store directory
        state_file (str): persisted lifecycle status record
        boot_dir (str): directory holding the kernels, initramfs and microcode images
        os_release (str): os-release file embedded as the .osrel section
        stub (str): EFI stub the unified images are built from
        efi_shell (str): UEFI shell binary copied and signed as the rescue shell
        fwupd_efi (str): firmware update driver, signed next to itself as .signed
        boot_manager_efi (str): third party boot manager binary; its presence enables boot manager mode
        boot_manager_target (str): ESP relative path the signed boot manager is staged to
        dedupe_boot_entries (bool): reuse a firmware entry with the same label and loader
        key_size (int): RSA modulus length of generated keys
        cert_days (int): validity period of generated certificates
        boot_manager_detected (bool): a systemd-class boot manager binary is installed
    """

    esp: str
    efi_subdir: str
    kernel: str
    lts_kernel: str
    name: str
    cmdline_file: str
    cmdline_fallback: str
    ucode: str
    subvolume_root: str
    subvolume_snapshot: str
    snapshot_root: str
    keys_dir: str
    state_file: str
    boot_dir: str
    os_release: str
    stub: str
    efi_shell: str
    fwupd_efi: str
    boot_manager_efi: str
    boot_manager_target: str
    dedupe_boot_entries: bool
    key_size: int
    cert_days: int
    boot_manager_detected: bool = False

    @property
    def efi_dir(self) -> str:
        """Absolute path of the image directory on the mounted ESP."""
        return os.path.join(self.esp, self.efi_subdir.lstrip("/"))

    def artifact_path(self, suffix: str = "") -> str:
        """Absolute path of <name><suffix>.efi in the image directory."""
        return os.path.join(self.efi_dir, f"{self.name}{suffix}.efi")

    @property
    def main_artifact_path(self) -> str:
        return self.artifact_path()

    @property
    def rescue_script_path(self) -> str:
        return os.path.join(self.esp, "recovery.nsh")

    @property
    def snapshots_path(self) -> str:
        return os.path.join(self.esp, "snapshots.txt")

    @property
    def boot_manager_target_path(self) -> str:
        """Absolute path the firmware boots the signed boot manager from."""
        return os.path.join(self.esp, self.boot_manager_target.lstrip("/"))

    def loader_path(self, path: str) -> str:
        r"""Converts an absolute path below the ESP into a firmware loader path (\EFI\...)."""
        relative = os.path.relpath(path, self.esp)
        if relative.startswith(".."):
            raise ConfigurationError(f"{path} is not located on the EFI system partition {self.esp}")
        return "\\" + relative.replace("/", "\\")

    def describe(self) -> list[str]:
        """Returns the active configuration as printable lines."""
        return [f"{field.name} = {getattr(self, field.name)}" for field in dataclasses.fields(self)]


def _normalize_subdir(subdir: str) -> str:
    subdir = "/" + subdir.strip().strip("/")
    if subdir == "/":
        raise ConfigurationError("The EFI image subdirectory can not be the root of the EFI system partition")
    return subdir


def _to_bool(key: str, value: object) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid boolean for {key}: {value}")


def _to_int(key: str, value: object) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid integer for {key}: {value}")


def load_options_file(path: str) -> dict:
    """Loads a yaml configuration file into a dictionary with underscore keys.

    A missing file yields an empty dictionary.
    """
    if path is None or not os.path.isfile(path):
        return {}

    try:
        with open(path, "r") as config_file:
            contents = yaml.safe_load(config_file)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Unable to parse configuration file {path}: {exc}")

    if contents is None:
        return {}
    if not isinstance(contents, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")

    options = {}
    for key, value in contents.items():
        key = str(key).replace("-", "_").lower()
        if key not in DEFAULTS:
            raise ConfigurationError(f"Unknown configuration option '{key}' in {path}")
        options[key] = value
    return options


def options_from_environment(environ: Mapping[str, str]) -> dict:
    """Collects SECURE_BOOT_* overrides from an environment mapping."""
    options = {}
    for variable, value in environ.items():
        if not variable.startswith(ENVIRONMENT_PREFIX):
            continue
        key = variable[len(ENVIRONMENT_PREFIX):]
        key = ENVIRONMENT_ALIASES.get(key, key.lower())
        if key in DEFAULTS:
            options[key] = value
        else:
            logging.warning(f"Ignoring unknown configuration variable {variable}")
    return options


def load_configuration(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> BootConfiguration:
    """Builds and validates the BootConfiguration.

    Args:
        path (str): yaml configuration file, defaults to DEFAULT_CONFIG_FILE
        environ (Mapping): environment to read overrides from, defaults to os.environ

    Raises:
        (ConfigurationError): invalid value or boot manager / image directory mismatch
    """
    if environ is None:
        environ = os.environ
    if path is None:
        path = DEFAULT_CONFIG_FILE

    overrides = load_options_file(path)
    overrides.update(options_from_environment(environ))

    options = dict(DEFAULTS)
    options.update(overrides)

    for key in _BOOLEAN_FIELDS:
        options[key] = _to_bool(key, options[key])
    for key in _INTEGER_FIELDS:
        options[key] = _to_int(key, options[key])

    options["kernel"] = str(options["kernel"]).strip()
    if not options["kernel"]:
        raise ConfigurationError("The kernel flavor can not be empty")

    name = options["name"]
    if name is None or not str(name).strip():
        name = f"secure-boot-{options['kernel']}"
    name = str(name).strip()
    if name.lower().endswith(".efi"):
        name = name[:-4]
    if "/" in name:
        raise ConfigurationError(f"The artifact name can not contain a path separator: {name}")
    options["name"] = name

    ucode = str(options["ucode"]).strip().lower()
    if ucode == "any":
        ucode = "*"
    if ucode not in UCODE_SELECTORS:
        raise ConfigurationError(f"Invalid microcode selector '{options['ucode']}', expected one of any, intel, amd")
    options["ucode"] = ucode

    if str(options["subvolume_snapshot"]).count("%s") != 1:
        raise ConfigurationError(
            f"The snapshot subvolume template must contain exactly one %s: {options['subvolume_snapshot']}"
        )

    options["efi_subdir"] = _normalize_subdir(str(options["efi_subdir"]))

    detected = os.path.isfile(options["boot_manager_efi"])
    if detected:
        if "efi_subdir" not in overrides:
            options["efi_subdir"] = BOOT_MANAGER_EFI_SUBDIR
        elif options["efi_subdir"].lower() != BOOT_MANAGER_EFI_SUBDIR.lower():
            raise ConfigurationError(
                f"A boot manager was found at {options['boot_manager_efi']}, it only loads images from "
                f"{BOOT_MANAGER_EFI_SUBDIR} but the configured EFI image directory is {options['efi_subdir']}"
            )

    return BootConfiguration(boot_manager_detected=detected, **options)
