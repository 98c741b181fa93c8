# @file key_generator.py
# Generates the PK/KEK/db key hierarchy into the trust store.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Generates the PK/KEK/db key hierarchy into the trust store.

Each run creates one GUID and, for PK, KEK and db in that order, a self-signed
certificate, its signature list and its authenticated variable payload. The
set is written to a staging directory beside the key directory and moved into
place only once every file exists.
"""

import logging
import os
import shutil
import tempfile
import uuid
from typing import Optional

from sbmanager.exceptions import AlreadyExists
from sbmanager.keys.cert_authority import DEFAULT_KEY_SIZE, DEFAULT_VALID_DAYS, CertAuthority
from sbmanager.keys.efi_sig_tool import EfiSigTool
from sbmanager.trust_store import DIRECTORY_MODE, GUID_FILE_NAME, KEY_NAMES, TrustStore, write_file

# key whose private half signs each variable update
SIGNING_KEY = {
    "PK": "PK",
    "KEK": "PK",
    "db": "KEK",
}


def common_name(key_name: str) -> str:
    return f"SecureBoot {key_name}"


class KeyHierarchyGenerator(object):
    """Creates a fresh TrustStore.

    Attributes:
        trust_store (TrustStore): destination of the generated hierarchy
    """

    def __init__(
        self,
        trust_store: TrustStore,
        cert_authority: Optional[CertAuthority] = None,
        sig_tool: Optional[EfiSigTool] = None,
        key_size: int = DEFAULT_KEY_SIZE,
        days: int = DEFAULT_VALID_DAYS,
    ) -> None:
        """Inits the generator with its collaborators."""
        self.trust_store = trust_store
        self.cert_authority = cert_authority or CertAuthority()
        self.sig_tool = sig_tool or EfiSigTool()
        self.key_size = key_size
        self.days = days

    def generate(self, force: bool = False) -> TrustStore:
        """Generates the hierarchy.

        Args:
            force (bool): replace an existing hierarchy instead of refusing

        Raises:
            (AlreadyExists): the key directory is populated and force is not set
            (CertToolFailure): certificate creation failed
            (SigningToolFailure): signature list creation or signing failed
        """
        if self.trust_store.is_populated():
            if not force:
                raise AlreadyExists(self.trust_store.directory)
            logging.warning(f"Replacing the key hierarchy in {self.trust_store.directory}")

        parent = os.path.dirname(self.trust_store.directory)
        os.makedirs(parent, exist_ok=True)

        # same filesystem as the key directory so the commit is a rename
        staging = tempfile.mkdtemp(prefix=".keys-", dir=parent)
        try:
            os.chmod(staging, DIRECTORY_MODE)
            self._generate_into(staging)
            self.trust_store.commit(staging)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        return self.trust_store

    def _generate_into(self, directory: str) -> None:
        guid = uuid.uuid4()
        logging.info(f"Generating secure boot key hierarchy with GUID {guid}")
        write_file(os.path.join(directory, GUID_FILE_NAME), f"{guid}\n".encode())

        keys = {}
        for name in KEY_NAMES:
            entry = TrustStore.entry_in(directory, name)
            key_pem, cert_pem = self.cert_authority.create_self_signed(common_name(name), self.key_size, self.days)
            write_file(entry.key_path, key_pem, private=True)
            write_file(entry.cert_path, cert_pem)
            keys[name] = (key_pem, cert_pem)

            esl = self.sig_tool.cert_to_signature_list(cert_pem, guid)
            write_file(entry.esl_path, esl)

            signer_key, signer_cert = keys[SIGNING_KEY[name]]
            auth = self.sig_tool.sign_signature_list(name, esl, signer_key, signer_cert)
            write_file(entry.auth_path, auth, private=True)
            logging.debug(f"Created {name} key, certificate, signature list and authenticated payload")
