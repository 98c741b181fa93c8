## @file test_uefivariablesupport.py
# This contains unit tests for efivarfs variable access
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import errno
import os
import struct
import tempfile
import unittest
import uuid
from unittest.mock import patch

from lifecycle_support import read, write

from sbmanager.firmware.uefivariablesupport import (
    FS_IMMUTABLE_FL,
    FS_IOC_GETFLAGS,
    FS_IOC_SETFLAGS,
    UefiVariable,
)

GLOBAL_VARIABLE = uuid.UUID("8be4df61-93ca-11d2-aa0d-00e098032b8c")


class FakeInodeFlags(object):
    """fcntl.ioctl stand-in keeping one set of inode flags for every file."""

    def __init__(self, flags=0, error=None):
        self.flags = flags
        self.error = error
        self.history = []

    def __call__(self, fd, request, arg, mutate_flag=True):
        if self.error is not None:
            raise OSError(self.error, os.strerror(self.error))
        if request == FS_IOC_GETFLAGS:
            arg[:] = struct.pack("<I", self.flags)
        elif request == FS_IOC_SETFLAGS:
            self.flags = struct.unpack("<I", bytes(arg))[0]
            self.history.append(self.flags)
        return 0


class Test_uefi_variable(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.efivars = self.temp_dir.name
        self.variables = UefiVariable(self.efivars)

    def tearDown(self):
        self.temp_dir.cleanup()

    def path(self, name, guid=GLOBAL_VARIABLE):
        return os.path.join(self.efivars, f"{name}-{guid}")

    def test_get(self):
        write(self.path("SetupMode"), struct.pack("<I", 6) + b"\x01")
        self.assertEqual(self.variables.GetUefiVar("SetupMode", GLOBAL_VARIABLE), (0, b"\x01"))
        self.assertEqual(self.variables.GetUefiVar("SecureBoot", GLOBAL_VARIABLE), (0xCB, None))

    def test_set_writes_the_attribute_prefix(self):
        flags = FakeInodeFlags()
        with patch("sbmanager.firmware.uefivariablesupport.fcntl.ioctl", side_effect=flags):
            self.assertEqual(self.variables.SetUefiVar("KEK", GLOBAL_VARIABLE, b"payload", 0x67), 1)
        self.assertEqual(read(self.path("KEK")), b"\x67\x00\x00\x00payload")
        self.assertIsNone(self.variables.last_error)

    def test_set_defaults_to_nv_bs_rt(self):
        with patch("sbmanager.firmware.uefivariablesupport.fcntl.ioctl", side_effect=FakeInodeFlags()):
            self.variables.SetUefiVar("Test", str(GLOBAL_VARIABLE).upper(), b"x")
        self.assertEqual(read(self.path("Test")), b"\x07\x00\x00\x00x")

    def test_immutable_flag_is_lifted_and_restored(self):
        write(self.path("db", "d719b2cb-3d3a-4596-a3bc-dad00e67656f"), b"\x27\x00\x00\x00old")
        flags = FakeInodeFlags(flags=FS_IMMUTABLE_FL | 0x80)
        with patch("sbmanager.firmware.uefivariablesupport.fcntl.ioctl", side_effect=flags):
            result = self.variables.SetUefiVar("db", "d719b2cb-3d3a-4596-a3bc-dad00e67656f", b"new", 0x67)
        self.assertEqual(result, 1)
        self.assertEqual(flags.history, [0x80, FS_IMMUTABLE_FL | 0x80])

    def test_filesystem_without_inode_flags(self):
        write(self.path("KEK"), b"\x27\x00\x00\x00old")
        flags = FakeInodeFlags(error=errno.ENOTTY)
        with patch("sbmanager.firmware.uefivariablesupport.fcntl.ioctl", side_effect=flags):
            self.assertEqual(self.variables.SetUefiVar("KEK", GLOBAL_VARIABLE, b"new", 0x27), 1)
        self.assertEqual(read(self.path("KEK")), b"\x27\x00\x00\x00new")

    def test_write_failure_returns_zero(self):
        with patch("sbmanager.firmware.uefivariablesupport.os.write", side_effect=OSError(errno.EINVAL, "Invalid argument")):
            self.assertEqual(self.variables.SetUefiVar("PK", GLOBAL_VARIABLE, b"payload", 0x27), 0)
        self.assertEqual(self.variables.last_error.errno, errno.EINVAL)


if __name__ == "__main__":
    unittest.main()
