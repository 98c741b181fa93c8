# @file trust_store.py
# On-disk representation of the PK/KEK/db key hierarchy.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""On-disk representation of the PK/KEK/db key hierarchy.

Layout of the key directory:
    PK.key  PK.crt  PK.esl  PK.auth
    KEK.key KEK.crt KEK.esl KEK.auth
    db.key  db.crt  db.esl  db.auth
    uuid

All twelve key files share the GUID stored in `uuid`. A hierarchy is only
ever written as a complete set (see TrustStore.commit).
"""

import logging
import os
import uuid
from dataclasses import dataclass

from sbmanager.exceptions import KeysNotGenerated

KEY_NAMES = ("PK", "KEK", "db")
KEY_FILE_EXTENSIONS = ("key", "crt", "esl", "auth")
GUID_FILE_NAME = "uuid"

PRIVATE_FILE_MODE = 0o600
PUBLIC_FILE_MODE = 0o644
DIRECTORY_MODE = 0o700


@dataclass(frozen=True)
class KeyEntry:
    """Paths of the four files that make up one key of the hierarchy."""

    name: str
    key_path: str
    cert_path: str
    esl_path: str
    auth_path: str

    @property
    def paths(self) -> tuple:
        return (self.key_path, self.cert_path, self.esl_path, self.auth_path)

    def missing(self) -> list:
        """Returns the file names of this entry that do not exist."""
        return [os.path.basename(path) for path in self.paths if not os.path.isfile(path)]

    def read_key(self) -> bytes:
        with open(self.key_path, "rb") as key_file:
            return key_file.read()

    def read_certificate(self) -> bytes:
        with open(self.cert_path, "rb") as cert_file:
            return cert_file.read()


def is_private_file(file_name: str) -> bool:
    """Private keys and authenticated variable payloads are owner-only."""
    return file_name.endswith(".key") or file_name.endswith(".auth")


def write_file(path: str, contents: bytes, private: bool = False) -> None:
    """Creates (or truncates) a file, applying the restricted mode at creation time."""
    mode = PRIVATE_FILE_MODE if private else PUBLIC_FILE_MODE
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with open(fd, "wb") as out_file:
        out_file.write(contents)
    os.chmod(path, mode)


class TrustStore(object):
    """The key directory holding the PK/KEK/db hierarchy.

    Attributes:
        directory (str): absolute path of the key directory
    """

    def __init__(self, directory: str) -> None:
        """Inits the store for a key directory (which does not need to exist yet)."""
        self.directory = os.path.abspath(directory)

    @staticmethod
    def entry_in(directory: str, name: str) -> KeyEntry:
        """Returns the KeyEntry for key `name` laid out inside `directory`."""
        if name not in KEY_NAMES:
            raise ValueError(f"Unknown secure boot key {name}")
        paths = [os.path.join(directory, f"{name}.{ext}") for ext in KEY_FILE_EXTENSIONS]
        return KeyEntry(name, *paths)

    def entry(self, name: str) -> KeyEntry:
        return TrustStore.entry_in(self.directory, name)

    @property
    def guid_path(self) -> str:
        return os.path.join(self.directory, GUID_FILE_NAME)

    @property
    def guid(self) -> uuid.UUID:
        """The GUID shared by every signature list of the hierarchy."""
        try:
            with open(self.guid_path, "r") as guid_file:
                return uuid.UUID(guid_file.read().strip())
        except FileNotFoundError:
            raise KeysNotGenerated(self.directory, [GUID_FILE_NAME])
        except ValueError:
            raise KeysNotGenerated(self.directory, [f"{GUID_FILE_NAME} (not a valid GUID)"])

    def is_populated(self) -> bool:
        """True when the key directory exists and contains anything."""
        return os.path.isdir(self.directory) and len(os.listdir(self.directory)) > 0

    def missing_files(self) -> list:
        missing = []
        if not os.path.isfile(self.guid_path):
            missing.append(GUID_FILE_NAME)
        for name in KEY_NAMES:
            missing.extend(self.entry(name).missing())
        return missing

    def is_complete(self) -> bool:
        return len(self.missing_files()) == 0

    def require_complete(self) -> None:
        """Raises KeysNotGenerated unless every file of the hierarchy exists."""
        missing = self.missing_files()
        if missing:
            raise KeysNotGenerated(self.directory, missing)

    def commit(self, staging_directory: str) -> None:
        """Moves a freshly generated hierarchy from `staging_directory` into the key directory.

        The staging directory must hold a complete set and live on the same
        filesystem as the key directory. Existing files of the same names are
        replaced; files that are not part of a hierarchy are left alone.
        """
        staged = TrustStore(staging_directory)
        staged.require_complete()

        os.makedirs(self.directory, mode=DIRECTORY_MODE, exist_ok=True)
        os.chmod(self.directory, DIRECTORY_MODE)

        names = [GUID_FILE_NAME]
        for key_name in KEY_NAMES:
            names.extend(os.path.basename(path) for path in staged.entry(key_name).paths)

        for file_name in names:
            source = os.path.join(staged.directory, file_name)
            destination = os.path.join(self.directory, file_name)
            os.chmod(source, PRIVATE_FILE_MODE if is_private_file(file_name) else PUBLIC_FILE_MODE)
            os.replace(source, destination)
            logging.debug(f"Installed {destination}")

        logging.info(f"Key hierarchy {self.guid} stored in {self.directory}")
