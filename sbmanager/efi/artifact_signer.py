# @file artifact_signer.py
# Signs the built images with the db key and stages them on the EFI system partition.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Signs the built images with the db key and stages them on the EFI system partition.

Every image is signed inside the work directory first. Staging starts only
once all signatures exist, so a signing failure never leaves a partly
updated image directory behind.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional

from sbmanager.configuration import BootConfiguration
from sbmanager.efi.artifact_builder import ArtifactKind, BuildResult
from sbmanager.efi.pe_editor import PeEditor
from sbmanager.exceptions import KeysNotGenerated, MissingTarget
from sbmanager.trust_store import TrustStore

SIGNING_KEY_NAME = "db"
FIRMWARE_UPDATE_SUFFIX = ".signed"


@dataclass(frozen=True)
class SignedArtifact:
    """A signed image at its staged location.

    Attributes:
        kind (ArtifactKind): role of the image
        path (str): staged location
        source (str): the unsigned image it was signed from
    """

    kind: ArtifactKind
    path: str
    source: str


def stage_file(source: str, destination: str) -> None:
    """Copies `source` over `destination` through a temporary sibling and a rename."""
    directory = os.path.dirname(destination)
    os.makedirs(directory, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=".staging-", dir=directory)
    try:
        with open(fd, "wb") as out_file, open(source, "rb") as in_file:
            shutil.copyfileobj(in_file, out_file)
        os.replace(temp_path, destination)
    except BaseException:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise


class ArtifactSigner(object):
    """Signs and stages a BuildResult."""

    def __init__(self, config: BootConfiguration, pe_editor: Optional[PeEditor] = None) -> None:
        """Inits the signer."""
        self.config = config
        self.pe_editor = pe_editor or PeEditor()

    def sign_and_stage(self, build: BuildResult, trust: TrustStore) -> list:
        """Signs every built image plus the firmware update driver and boot manager, then stages them.

        Returns:
            (list): SignedArtifact per staged image, in signing order

        Raises:
            (KeysNotGenerated): the db key or certificate is missing
            (MissingTarget): the firmware update driver does not exist
            (SigningToolFailure): an image could not be signed
        """
        db = trust.entry(SIGNING_KEY_NAME)
        missing = [os.path.basename(p) for p in (db.key_path, db.cert_path) if not os.path.isfile(p)]
        if missing:
            raise KeysNotGenerated(trust.directory, missing)
        if not os.path.isfile(self.config.fwupd_efi):
            raise MissingTarget(self.config.fwupd_efi)

        signed_dir = os.path.join(build.work_dir, "signed")
        os.makedirs(signed_dir, exist_ok=True)

        # (kind, unsigned source, signed copy in the work directory, staged destination)
        plan = []
        for artifact in build.artifacts:
            plan.append(
                (
                    artifact.kind,
                    artifact.path,
                    os.path.join(signed_dir, artifact.file_name),
                    os.path.join(self.config.efi_dir, artifact.file_name),
                )
            )

        fwupd_name = os.path.basename(self.config.fwupd_efi) + FIRMWARE_UPDATE_SUFFIX
        plan.append(
            (
                ArtifactKind.FIRMWARE_UPDATE,
                self.config.fwupd_efi,
                os.path.join(signed_dir, fwupd_name),
                self.config.fwupd_efi + FIRMWARE_UPDATE_SUFFIX,
            )
        )

        if os.path.isfile(self.config.boot_manager_efi):
            plan.append(
                (
                    ArtifactKind.BOOT_MANAGER,
                    self.config.boot_manager_efi,
                    os.path.join(signed_dir, os.path.basename(self.config.boot_manager_efi)),
                    self.config.boot_manager_target_path,
                )
            )

        for kind, source, signed, _ in plan:
            logging.info(f"Signing {source}")
            self.pe_editor.sign(source, signed, db.key_path, db.cert_path)

        os.makedirs(self.config.efi_dir, exist_ok=True)
        staged = []
        for kind, source, signed, destination in plan:
            stage_file(signed, destination)
            logging.debug(f"Staged {destination}")
            staged.append(SignedArtifact(kind, destination, source))

        stage_file(build.rescue_script, self.config.rescue_script_path)
        logging.info(f"Staged {len(staged)} signed images in {self.config.efi_dir}")
        return staged
