# @file uefivariablesupport.py
#
# Exports Class to allow OS level interaction
# with UEFI variables through the Linux efivarfs.
#
#
# Copyright (c), Microsoft Corporation
# SPDX-License-Identifier: BSD-2-Clause-Patent
"""Exports UefiVariable class to interact with UEFI variables through efivarfs.

This module provides:
- UefiVariable: Class to read and write UEFI variables from the OS.

efivarfs exposes every variable as <mount>/<Name>-<guid>. Reading or writing
a file transfers the variable attributes (UINT32, little endian) followed by
the variable data. Existing variables are created immutable by the kernel;
the flag is lifted for the duration of a write.
"""

import errno
import fcntl
import logging
import os
import struct
import uuid
from typing import Optional, Union

EFIVARFS_PATH = "/sys/firmware/efi/efivars"

FS_IOC_GETFLAGS = 0x80086601
FS_IOC_SETFLAGS = 0x40086602
FS_IMMUTABLE_FL = 0x00000010

# filesystems without inode flags (tmpfs and friends) report one of these
_FLAGS_UNSUPPORTED = (errno.ENOTTY, errno.EOPNOTSUPP, errno.ENOTSUP, errno.EINVAL)

EFI_VARIABLE_NON_VOLATILE = 0x00000001
EFI_VARIABLE_BOOTSERVICE_ACCESS = 0x00000002
EFI_VARIABLE_RUNTIME_ACCESS = 0x00000004
EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS = 0x00000020
EFI_VARIABLE_APPEND_WRITE = 0x00000040

DEFAULT_ATTRIBUTES = EFI_VARIABLE_NON_VOLATILE | EFI_VARIABLE_BOOTSERVICE_ACCESS | EFI_VARIABLE_RUNTIME_ACCESS


class UefiVariable(object):
    """Class to interact with Uefi Variables under Linux.

    Methods:
    -------
    GetUefiVar - Get a single Uefi Variable's data
    SetUefiVar - Set a single Uefi variable.
    """

    ERROR_ENVVAR_NOT_FOUND = 0xCB

    def __init__(self, efivarfs_path: str = EFIVARFS_PATH) -> None:
        """Initialize Class."""
        self.efivarfs_path = efivarfs_path
        self.last_error = None

    def variable_path(self, name: str, guid: Union[str, uuid.UUID]) -> str:
        """Returns the efivarfs file backing a variable."""
        return os.path.join(self.efivarfs_path, f"{name}-{str(guid).lower()}")

    def GetUefiVar(self, name: str, guid: Union[str, uuid.UUID]) -> tuple:
        """Retrieve Uefi Variable from the system.

        Args:
            name (str): Name of the variable.
            guid (str): Uefi Guid of the variable.

        Returns:
            Tuple: (error code, variable data without the attribute prefix)
        """
        path = self.variable_path(name, guid)
        if not os.path.exists(path):
            return (UefiVariable.ERROR_ENVVAR_NOT_FOUND, None)

        with open(path, "rb") as fd:
            efi_var = fd.read()

        return (0, efi_var[4:])

    def SetUefiVar(self, name: str, guid: Union[str, uuid.UUID], var: bytes, attrs: Optional[int] = None) -> int:
        """Set a Uefi Variable into the system.

        Args:
            name (str): name of variable to set
            guid (str): Guid to use when setting the variable
            var (bytes): Bytes to set to the variable.
            attrs (int, optional): Attributes to use when setting the variable. Defaults to NV|BS|RT.

        Returns:
            int: 0 for a failure, non-zero for success. The OSError of a failure is kept in last_error.
        """
        self.last_error = None
        path = self.variable_path(name, guid)

        if attrs is None:
            attrs = DEFAULT_ATTRIBUTES

        logging.info(f"Writing {name}-{guid}, length={len(var)}, attributes=0x{attrs:x}")
        old_flags = None
        try:
            if os.path.exists(path):
                old_flags = self._clear_immutable(path)

            # var data is attribute (UINT32) followed by data, written in a single call
            fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o644)
            try:
                os.write(fd, struct.pack("<I", attrs) + bytes(var))
            finally:
                os.close(fd)
        except OSError as exc:
            self.last_error = exc
            logging.error(f"Writing {name}-{guid} failed: {exc}")
            return 0
        finally:
            if old_flags is not None and os.path.exists(path):
                self._set_flags(path, old_flags)

        return 1

    def _clear_immutable(self, path: str) -> Optional[int]:
        """Lifts the immutable flag of a variable file, returning the previous flags."""
        flags = self._get_flags(path)
        if flags is None or not flags & FS_IMMUTABLE_FL:
            return None
        self._set_flags(path, flags & ~FS_IMMUTABLE_FL)
        return flags

    @staticmethod
    def _get_flags(path: str) -> Optional[int]:
        buffer = bytearray(4)
        fd = os.open(path, os.O_RDONLY)
        try:
            fcntl.ioctl(fd, FS_IOC_GETFLAGS, buffer, True)
        except OSError as exc:
            if exc.errno in _FLAGS_UNSUPPORTED:
                return None
            raise
        finally:
            os.close(fd)
        return struct.unpack("<I", buffer)[0]

    @staticmethod
    def _set_flags(path: str, flags: int) -> None:
        fd = os.open(path, os.O_RDONLY)
        try:
            fcntl.ioctl(fd, FS_IOC_SETFLAGS, bytearray(struct.pack("<I", flags)))
        finally:
            os.close(fd)
