## @file efi_image_support.py
# Test helpers that produce small but well formed PE32+ images and a
# PeEditor stand-in that assembles them without objcopy or sbsign.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import shutil
import struct

from sbmanager.efi.pe_editor import PeEditor
from sbmanager.exceptions import SigningToolFailure

FILE_ALIGNMENT = 0x200
SECTION_ALIGNMENT = 0x1000
PE_OFFSET = 0x40
OPTIONAL_HEADER_SIZE = 240
SECTION_HEADER_OFFSET = PE_OFFSET + 4 + 20 + OPTIONAL_HEADER_SIZE
IMAGE_SCN_MEM_READ_INITIALIZED_DATA = 0x40000040


def _align(value, alignment):
    return (value + alignment - 1) // alignment * alignment


def build_pe_image(sections, image_base=0):
    """Returns the bytes of an EFI application PE32+ image.

    sections is a list of (name, load address, contents); load addresses are
    relative to image_base.
    """
    header_size = _align(SECTION_HEADER_OFFSET + 40 * len(sections), FILE_ALIGNMENT)

    raw = b""
    headers = b""
    pointer = header_size
    size_of_image = SECTION_ALIGNMENT
    for name, address, data in sections:
        raw_size = _align(len(data), FILE_ALIGNMENT)
        headers += struct.pack(
            "<8sIIIIIIHHI",
            name.encode("ascii"),
            len(data),
            address,
            raw_size,
            pointer,
            0,
            0,
            0,
            0,
            IMAGE_SCN_MEM_READ_INITIALIZED_DATA,
        )
        raw += data + b"\x00" * (raw_size - len(data))
        pointer += raw_size
        size_of_image = max(size_of_image, _align(address + max(len(data), 1), SECTION_ALIGNMENT))

    dos = bytearray(PE_OFFSET)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, PE_OFFSET)

    coff = struct.pack("<HHIIIHH", 0x8664, len(sections), 0, 0, 0, OPTIONAL_HEADER_SIZE, 0x22)
    optional = struct.pack(
        "<HBBIIIIIQIIHHHHHHIIIIHHQQQQII",
        0x20B,
        0,
        0,
        0,
        len(raw),
        0,
        0,
        0,
        image_base,
        SECTION_ALIGNMENT,
        FILE_ALIGNMENT,
        0,
        0,
        0,
        0,
        0,
        0,
        0,
        size_of_image,
        header_size,
        0,
        10,
        0,
        0,
        0,
        0,
        0,
        0,
        16,
    )
    optional += b"\x00" * (OPTIONAL_HEADER_SIZE - len(optional))

    image = bytes(dos) + b"PE\x00\x00" + coff + optional + headers
    image += b"\x00" * (header_size - len(image))
    return image + raw


class FakePeEditor(PeEditor):
    """Builds images in-process; signing copies the image unchanged.

    Calls are recorded in `calls` as (operation, path) tuples. Set
    `fail_sign_on` to a file name to make signing that file fail.
    """

    def __init__(self, address_shift=0, fail_sign_on=None):
        super().__init__()
        self.calls = []
        self.address_shift = address_shift
        self.fail_sign_on = fail_sign_on

    def add_sections(self, stub, sections, output):
        self.calls.append(("add_sections", output))
        contents = []
        for section in sections:
            with open(section.source, "rb") as source:
                contents.append((section.name, section.address + self.address_shift, source.read()))
        with open(output, "wb") as image:
            image.write(build_pe_image(contents))

    def sign(self, input_path, output_path, key_path, cert_path):
        self.calls.append(("sign", input_path))
        if self.fail_sign_on is not None and input_path.endswith(self.fail_sign_on):
            raise SigningToolFailure(f"Unable to sign {input_path}", f"sbsign {input_path}", 1)
        shutil.copyfile(input_path, output_path)
