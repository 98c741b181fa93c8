# @file pe_editor.py
# Wraps the tools used to assemble and sign EFI (PE/COFF) images.
#
# Sections are injected with binutils objcopy and images are signed with
# sbsign; both are invoked through RunCmd so the full command line is logged.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Wraps the tools used to assemble and sign EFI (PE/COFF) images."""

import io
import logging
import os

import pefile
from edk2toollib.utility_functions import RunCmd

from sbmanager.exceptions import SectionLayoutError, SigningToolFailure, ToolFailure

OBJCOPY = "objcopy"
SBSIGN = "sbsign"


def quote(path: str) -> str:
    return f'"{path}"'


class PeEditor(object):
    """Section injection, detached (embedded) signing and section table inspection."""

    def __init__(self, objcopy: str = OBJCOPY, sbsign: str = SBSIGN) -> None:
        """Inits the editor with the tool names (or paths) to invoke."""
        self.objcopy = objcopy
        self.sbsign = sbsign

    def add_sections(self, stub: str, sections: list, output: str) -> None:
        """Writes `output`, a copy of `stub` carrying `sections` at their load addresses.

        Args:
            stub (str): EFI stub template
            sections (list): objects with name, source and address attributes
            output (str): image to create

        Raises:
            (ToolFailure): objcopy returned non-zero
        """
        params = []
        for section in sections:
            params += ["--add-section", f"{section.name}={quote(section.source)}"]
            params += ["--change-section-vma", f"{section.name}=0x{section.address:x}"]
        params += [quote(stub), quote(output)]

        cmd_line = f"{self.objcopy} {' '.join(params)}"
        results = io.StringIO()
        ret = RunCmd(self.objcopy, " ".join(params), outstream=results, logging_level=logging.DEBUG)
        if ret != 0:
            raise ToolFailure(f"Unable to add sections to {stub}:\n{results.getvalue()}", cmd_line, ret)

    def sign(self, input_path: str, output_path: str, key_path: str, cert_path: str) -> None:
        """Signs a PE image, embedding the signature in `output_path`.

        Raises:
            (SigningToolFailure): sbsign returned non-zero or produced no output
        """
        params = ["--key", quote(key_path), "--cert", quote(cert_path), "--output", quote(output_path), quote(input_path)]
        cmd_line = f"{self.sbsign} {' '.join(params)}"
        results = io.StringIO()
        ret = RunCmd(self.sbsign, " ".join(params), outstream=results, logging_level=logging.DEBUG)
        if ret != 0:
            raise SigningToolFailure(f"Unable to sign {input_path}:\n{results.getvalue()}", cmd_line, ret)
        if not os.path.isfile(output_path):
            raise SigningToolFailure(f"Signing {input_path} did not produce {output_path}", cmd_line, ret)

    def read_sections(self, path: str) -> dict:
        """Returns {section name: (load address, contents)} for a PE image.

        Raises:
            (SectionLayoutError): the file is not a PE image
        """
        try:
            pe = pefile.PE(path, fast_load=True)
        except pefile.PEFormatError as exc:
            raise SectionLayoutError(f"{path} is not a valid PE image: {exc}")

        try:
            sections = {}
            for section in pe.sections:
                name = section.Name.rstrip(b"\x00").decode("ascii", errors="replace")
                address = pe.OPTIONAL_HEADER.ImageBase + section.VirtualAddress
                data = section.get_data()
                if section.Misc_VirtualSize:
                    data = data[: section.Misc_VirtualSize]
                sections[name] = (address, data)
            return sections
        finally:
            pe.close()
