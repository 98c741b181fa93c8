# @file exceptions.py
# Error types raised by the secure boot lifecycle operations.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Error types raised by the secure boot lifecycle operations.

ConfigurationError is raised before any side effect takes place,
PreconditionError (and subclasses) when an operation runs before the stage it
depends on, and ToolFailure when a collaborator (certificate generation,
signing, objcopy, efibootmgr, efivarfs) reports an error.
"""

from typing import Optional


class SecureBootError(Exception):
    """Base class for every error the secure-boot tool reports."""


class ConfigurationError(SecureBootError):
    """The resolved configuration is invalid."""


class PreconditionError(SecureBootError):
    """An operation was invoked before the state it depends on exists."""


class KeysNotGenerated(PreconditionError):
    """The key directory does not hold a complete PK/KEK/db hierarchy."""

    def __init__(self, keys_dir: str, missing: Optional[list] = None) -> None:
        """Inits the error with the key directory and the missing files."""
        self.keys_dir = keys_dir
        self.missing = missing or []
        message = f"Secure boot keys have not been generated in {keys_dir}. Run generate-keys first."
        if self.missing:
            message += " Missing: " + ", ".join(self.missing)
        super().__init__(message)


class ArtifactsNotGenerated(PreconditionError):
    """No signed boot image exists at the path a boot entry would point to."""

    def __init__(self, path: str) -> None:
        """Inits the error with the expected artifact path."""
        self.path = path
        super().__init__(f"Signed EFI image {path} does not exist. Run generate-efi first.")


class AlreadyExists(PreconditionError):
    """The key directory is already populated."""

    def __init__(self, keys_dir: str) -> None:
        """Inits the error with the populated key directory."""
        self.keys_dir = keys_dir
        super().__init__(f"Key directory {keys_dir} is not empty. Use --force to replace the existing keys.")


class MissingSourceFile(PreconditionError):
    """A file an artifact is assembled or signed from does not exist."""

    description = "source file"

    def __init__(self, path: str) -> None:
        """Inits the error with the missing path."""
        self.path = path
        super().__init__(f"Missing {self.description}: {path}")


class MissingKernelImage(MissingSourceFile):
    """No vmlinuz for a configured kernel flavor in the boot directory."""

    description = "kernel image"


class MissingInitramfs(MissingSourceFile):
    """The initramfs image of a kernel flavor is missing."""

    description = "initramfs image"


class MissingMicrocode(MissingSourceFile):
    """The selected microcode vendor has no image in the boot directory."""

    description = "microcode image"


class StubNotFound(MissingSourceFile):
    """The EFI stub or the UEFI shell binary is not installed."""

    description = "EFI stub or shell binary"


class MissingTarget(MissingSourceFile):
    """A binary that is signed as is, such as the firmware update driver, is missing."""

    description = "signing target"


class ToolFailure(SecureBootError):
    """An external tool or firmware interface call returned non-success."""

    def __init__(self, message: str, command: Optional[str] = None, returncode: Optional[int] = None) -> None:
        """Inits the failure with the invoked command line and its return code."""
        self.command = command
        self.returncode = returncode
        if command is not None:
            message = f"{message}\nExitCode: {returncode}\nCmdLine: {command}"
        super().__init__(message)


class CertToolFailure(ToolFailure):
    """Certificate or private key generation failed."""


class SigningToolFailure(ToolFailure):
    """Signing a signature list or a PE image failed."""


class SectionLayoutError(ToolFailure):
    """An assembled image does not carry its sections at the expected addresses."""


class VarFsUnavailable(ToolFailure):
    """efivarfs could not be mounted read-write."""


class BootEntryFailure(ToolFailure):
    """The firmware boot entry could not be resolved or created."""


class VarWriteFailure(ToolFailure):
    """Writing a Secure Boot variable failed.

    Attributes:
        report (EnrollmentReport): per-variable results up to the failure
    """

    def __init__(self, message: str, report: object = None) -> None:
        """Inits the failure with the enrollment report."""
        self.report = report
        super().__init__(message)
