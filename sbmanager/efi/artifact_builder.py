# @file artifact_builder.py
# Assembles the unsigned unified EFI images and the rescue script.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Assembles the unsigned unified EFI images and the rescue script.

The main image carries four sections injected into the EFI stub:

    .osrel    os-release metadata
    .cmdline  kernel command line
    .linux    kernel image
    .initrd   microcode images followed by the initramfs

Recovery images (one per kernel flavor) carry .osrel, .linux and the fallback
initramfs only, so they boot with whatever command line the caller passes.
The rescue shell is the vendor EFI shell, copied unmodified.
"""

import enum
import glob
import logging
import os
import re
import shutil
import string
from dataclasses import dataclass, field
from typing import Optional

from sbmanager.configuration import BootConfiguration
from sbmanager.efi.pe_editor import PeEditor
from sbmanager.exceptions import (
    MissingInitramfs,
    MissingKernelImage,
    MissingMicrocode,
    MissingSourceFile,
    SectionLayoutError,
    StubNotFound,
)

# load addresses the stub looks for; bump the version whenever one changes
SECTION_LAYOUT_VERSION = 1
SECTION_LAYOUT = {
    ".osrel": 0x20000,
    ".cmdline": 0x30000,
    ".linux": 0x2000000,
    ".initrd": 0x3000000,
}

RECOVERY_SUFFIX = "-recovery"
RESCUE_SHELL_SUFFIX = "-efi-shell"
LTS_SUFFIX = "-lts"

# tokens the boot loader adds to /proc/cmdline
BOOTLOADER_CMDLINE_TOKENS = ("BOOT_IMAGE=", "initrd=")

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
RESCUE_SCRIPT_TEMPLATE = os.path.join(TEMPLATE_DIR, "recovery.nsh")


class ArtifactKind(enum.Enum):
    MAIN = "main"
    RECOVERY = "recovery"
    RESCUE_SHELL = "rescue-shell"
    FIRMWARE_UPDATE = "firmware-update"
    BOOT_MANAGER = "boot-manager"


@dataclass(frozen=True)
class Section:
    """A file injected into the stub at a fixed load address."""

    name: str
    source: str
    address: int


@dataclass(frozen=True)
class UnsignedArtifact:
    """An assembled, not yet signed, EFI executable inside the work directory.

    Attributes:
        kind (ArtifactKind): role of the image
        file_name (str): name the signed image is staged under
        path (str): location of the unsigned image
        sections (tuple): injected sections, empty for copied binaries
        flavor (str): kernel flavor of main and recovery images
    """

    kind: ArtifactKind
    file_name: str
    path: str
    sections: tuple = ()
    flavor: Optional[str] = None


@dataclass(frozen=True)
class BuildResult:
    """Everything generate-efi stages, still inside the work directory."""

    artifacts: tuple
    rescue_script: str
    work_dir: str
    cmdline: str = ""
    layout_version: int = field(default=SECTION_LAYOUT_VERSION)


def clean_cmdline(text: str, drop_bootloader_tokens: bool = False) -> str:
    """Collapses a command line onto one line, optionally dropping boot loader tokens."""
    tokens = text.split()
    if drop_bootloader_tokens:
        tokens = [t for t in tokens if not t.startswith(BOOTLOADER_CMDLINE_TOKENS)]
    return " ".join(tokens)


def rewrite_root_subvolume(cmdline: str, root: str, replacement: str) -> tuple:
    """Replaces the first subvol=<root> option of a command line.

    Returns:
        (tuple): the new command line and whether the option was found
    """
    pattern = re.compile(r"(?:(?<=[\s,=])|^)subvol=" + re.escape(root) + r"(?=[\s,]|$)")
    rewritten, count = pattern.subn(lambda m: f"subvol={replacement}", cmdline, count=1)
    return rewritten, count == 1


class ArtifactBuilder(object):
    """Builds the unsigned artifact set for one BootConfiguration."""

    def __init__(self, config: BootConfiguration, pe_editor: Optional[PeEditor] = None) -> None:
        """Inits the builder."""
        self.config = config
        self.pe_editor = pe_editor or PeEditor()

    def kernel_image(self, flavor: str) -> str:
        return os.path.join(self.config.boot_dir, f"vmlinuz-{flavor}")

    def initramfs_image(self, flavor: str, fallback: bool = False) -> str:
        suffix = "-fallback" if fallback else ""
        return os.path.join(self.config.boot_dir, f"initramfs-{flavor}{suffix}.img")

    def microcode_images(self) -> list:
        """Returns the microcode images matching the selector, in a stable order."""
        pattern = os.path.join(self.config.boot_dir, f"{self.config.ucode}-ucode.img")
        return sorted(glob.glob(pattern))

    def recovery_flavors(self) -> list:
        return [(self.config.kernel, ""), (self.config.lts_kernel, LTS_SUFFIX)]

    def read_cmdline(self) -> str:
        """Reads the kernel command line embedded in the main image."""
        if os.path.isfile(self.config.cmdline_file):
            with open(self.config.cmdline_file, "r") as cmdline_file:
                return clean_cmdline(cmdline_file.read())

        logging.warning(f"{self.config.cmdline_file} not found, using {self.config.cmdline_fallback}")
        if not os.path.isfile(self.config.cmdline_fallback):
            raise MissingSourceFile(self.config.cmdline_file)
        with open(self.config.cmdline_fallback, "r") as cmdline_file:
            return clean_cmdline(cmdline_file.read(), drop_bootloader_tokens=True)

    def check_sources(self) -> list:
        """Verifies every input exists before anything is built.

        Returns:
            (list): microcode images for the main initrd

        Raises:
            (MissingSourceFile): the first missing input, as its specific subclass
        """
        for path in (self.config.stub, self.config.efi_shell):
            if not os.path.isfile(path):
                raise StubNotFound(path)
        if not os.path.isfile(self.config.os_release):
            raise MissingSourceFile(self.config.os_release)

        checks = [
            (self.kernel_image(self.config.kernel), MissingKernelImage),
            (self.initramfs_image(self.config.kernel), MissingInitramfs),
        ]
        for flavor, _ in self.recovery_flavors():
            checks.append((self.kernel_image(flavor), MissingKernelImage))
            checks.append((self.initramfs_image(flavor, fallback=True), MissingInitramfs))
        for path, error in checks:
            if not os.path.isfile(path):
                raise error(path)

        microcode = self.microcode_images()
        if not microcode:
            raise MissingMicrocode(os.path.join(self.config.boot_dir, f"{self.config.ucode}-ucode.img"))
        return microcode

    def build(self, work_dir: str) -> BuildResult:
        """Builds every unsigned artifact and the rescue script inside `work_dir`.

        Raises:
            (MissingSourceFile): an input does not exist
            (ToolFailure): section injection failed
            (SectionLayoutError): an image does not carry its sections where the stub expects them
        """
        microcode = self.check_sources()
        cmdline = self.read_cmdline()

        output_dir = os.path.join(work_dir, "unsigned")
        os.makedirs(output_dir, exist_ok=True)

        cmdline_path = os.path.join(work_dir, "cmdline.txt")
        with open(cmdline_path, "w") as cmdline_file:
            cmdline_file.write(cmdline)

        initrd_path = os.path.join(work_dir, f"initrd-{self.config.kernel}.img")
        self._concatenate(microcode + [self.initramfs_image(self.config.kernel)], initrd_path)

        artifacts = []
        main_sections = (
            Section(".osrel", self.config.os_release, SECTION_LAYOUT[".osrel"]),
            Section(".cmdline", cmdline_path, SECTION_LAYOUT[".cmdline"]),
            Section(".linux", self.kernel_image(self.config.kernel), SECTION_LAYOUT[".linux"]),
            Section(".initrd", initrd_path, SECTION_LAYOUT[".initrd"]),
        )
        artifacts.append(
            self._assemble(ArtifactKind.MAIN, f"{self.config.name}.efi", output_dir, main_sections, self.config.kernel)
        )

        for flavor, suffix in self.recovery_flavors():
            sections = (
                Section(".osrel", self.config.os_release, SECTION_LAYOUT[".osrel"]),
                Section(".linux", self.kernel_image(flavor), SECTION_LAYOUT[".linux"]),
                Section(".initrd", self.initramfs_image(flavor, fallback=True), SECTION_LAYOUT[".initrd"]),
            )
            file_name = f"{self.config.name}{RECOVERY_SUFFIX}{suffix}.efi"
            artifacts.append(self._assemble(ArtifactKind.RECOVERY, file_name, output_dir, sections, flavor))

        shell_name = f"{self.config.name}{RESCUE_SHELL_SUFFIX}.efi"
        shell_path = os.path.join(output_dir, shell_name)
        shutil.copyfile(self.config.efi_shell, shell_path)
        artifacts.append(UnsignedArtifact(ArtifactKind.RESCUE_SHELL, shell_name, shell_path))

        rescue_script = os.path.join(work_dir, "recovery.nsh")
        with open(rescue_script, "w") as script_file:
            script_file.write(self.render_rescue_script(cmdline))

        logging.info(f"Built {len(artifacts)} unsigned images (section layout v{SECTION_LAYOUT_VERSION})")
        return BuildResult(tuple(artifacts), rescue_script, work_dir, cmdline)

    def render_rescue_script(self, cmdline: str) -> str:
        """Renders the rescue script for the recovery images and a snapshot id passed as %1."""
        snapshot = self.config.subvolume_snapshot % "%1"
        snapshot_cmdline, found = rewrite_root_subvolume(cmdline, self.config.subvolume_root, snapshot)
        if not found:
            logging.warning(
                f"subvol={self.config.subvolume_root} not found in the kernel command line, "
                "the rescue script will always boot the current root"
            )

        with open(RESCUE_SCRIPT_TEMPLATE, "r") as template_file:
            template = string.Template(template_file.read())
        return template.safe_substitute(
            snapshots=self.config.loader_path(self.config.snapshots_path),
            recovery=self.config.loader_path(self.config.artifact_path(RECOVERY_SUFFIX)),
            recovery_lts=self.config.loader_path(self.config.artifact_path(RECOVERY_SUFFIX + LTS_SUFFIX)),
            cmdline=snapshot_cmdline,
        )

    def verify_sections(self, artifact: UnsignedArtifact) -> None:
        """Reads an assembled image back and checks each injected section.

        Raises:
            (SectionLayoutError): a section is missing, misplaced or differs from its source
        """
        found = self.pe_editor.read_sections(artifact.path)
        for section in artifact.sections:
            if section.name not in found:
                raise SectionLayoutError(f"{artifact.file_name} has no {section.name} section")
            address, data = found[section.name]
            if address != section.address:
                raise SectionLayoutError(
                    f"{artifact.file_name}: {section.name} loads at 0x{address:x}, expected 0x{section.address:x}"
                )
            with open(section.source, "rb") as source_file:
                if data != source_file.read():
                    raise SectionLayoutError(f"{artifact.file_name}: {section.name} differs from {section.source}")

    def _assemble(self, kind: ArtifactKind, file_name: str, output_dir: str, sections: tuple, flavor: str):
        path = os.path.join(output_dir, file_name)
        logging.debug(f"Assembling {file_name} from {self.config.stub}")
        self.pe_editor.add_sections(self.config.stub, list(sections), path)
        artifact = UnsignedArtifact(kind, file_name, path, sections, flavor)
        self.verify_sections(artifact)
        return artifact

    @staticmethod
    def _concatenate(sources: list, destination: str) -> None:
        with open(destination, "wb") as out_file:
            for source in sources:
                with open(source, "rb") as in_file:
                    shutil.copyfileobj(in_file, out_file)
