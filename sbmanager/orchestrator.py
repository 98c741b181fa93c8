# @file orchestrator.py
# The secure boot lifecycle operations.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""The secure boot lifecycle operations.

    generate-keys   NO_KEYS            -> KEYS_GENERATED
    generate-efi    KEYS_GENERATED     -> ARTIFACTS_SIGNED
    add-efi         ARTIFACTS_SIGNED   -> BOOT_ENTRY_REGISTERED
    enroll-keys     KEYS_GENERATED     -> ENROLLED
    initial-setup   all of the above, tolerating an enrollment failure

Preconditions are read from the status record and confirmed against the
files the previous operation left behind. generate-snapshots only refreshes
the snapshot manifest.
"""

import dataclasses
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Optional

from sbmanager import sbm_logging
from sbmanager.configuration import BootConfiguration
from sbmanager.efi.artifact_builder import ArtifactBuilder
from sbmanager.efi.artifact_signer import ArtifactSigner
from sbmanager.efi.pe_editor import PeEditor
from sbmanager.exceptions import ArtifactsNotGenerated, KeysNotGenerated, VarWriteFailure
from sbmanager.firmware.boot_entry_manager import BootEntry, BootEntryManager
from sbmanager.firmware.boot_manager import FirmwareBootMgr
from sbmanager.firmware.variable_enroller import EnrollmentReport, VariableEnroller
from sbmanager.keys.cert_authority import CertAuthority
from sbmanager.keys.efi_sig_tool import EfiSigTool
from sbmanager.keys.key_generator import KeyHierarchyGenerator
from sbmanager.snapshots import generate_snapshot_manifest
from sbmanager.status import LifecycleState, StatusRecord
from sbmanager.trust_store import TrustStore


@dataclass
class SetupReport:
    """Outcome of initial-setup."""

    trust_store: Optional[TrustStore] = None
    signed: list = field(default_factory=list)
    boot_entry: Optional[BootEntry] = None
    enrollment: Optional[EnrollmentReport] = None
    enrollment_error: Optional[VarWriteFailure] = None

    @property
    def enrolled(self) -> bool:
        return self.enrollment is not None and self.enrollment_error is None and self.enrollment.succeeded


class Orchestrator(object):
    """Runs the lifecycle operations for one BootConfiguration.

    Collaborators default to the real implementations; tests hand in fakes.
    """

    def __init__(
        self,
        config: BootConfiguration,
        cert_authority: Optional[CertAuthority] = None,
        sig_tool: Optional[EfiSigTool] = None,
        pe_editor: Optional[PeEditor] = None,
        boot_manager: Optional[FirmwareBootMgr] = None,
        enroller: Optional[VariableEnroller] = None,
    ) -> None:
        """Inits the orchestrator."""
        self.config = config
        self.trust_store = TrustStore(config.keys_dir)
        self.cert_authority = cert_authority or CertAuthority()
        self.sig_tool = sig_tool or EfiSigTool()
        self.pe_editor = pe_editor or PeEditor()
        self.boot_manager = boot_manager or FirmwareBootMgr()
        self.enroller = enroller or VariableEnroller()
        self._record = None

    @property
    def record(self) -> StatusRecord:
        """The status record, rebuilt from evidence once when the file is missing."""
        if self._record is None:
            self._record = StatusRecord.load(self.config.state_file)
            if self._record is None:
                logging.info(f"No status record at {self.config.state_file}, reconstructing it")
                self._record = StatusRecord.reconstruct(self.config, self.trust_store)
        return self._record

    def _save(self) -> None:
        self.record.save(self.config.state_file)

    def _require_keys(self) -> None:
        if not self.record.at_least(LifecycleState.KEYS_GENERATED):
            raise KeysNotGenerated(self.config.keys_dir)
        self.trust_store.require_complete()
        if self.record.guid is not None and str(self.trust_store.guid) != self.record.guid:
            logging.warning(
                f"Key directory GUID {self.trust_store.guid} differs from the recorded {self.record.guid}"
            )

    def _require_artifacts(self) -> None:
        if not self.record.at_least(LifecycleState.ARTIFACTS_SIGNED):
            raise ArtifactsNotGenerated(self.config.main_artifact_path)

    def generate_keys(self, force: bool = False) -> TrustStore:
        """Generates the PK/KEK/db hierarchy."""
        sbm_logging.log_section("generate-keys")
        generator = KeyHierarchyGenerator(
            self.trust_store,
            self.cert_authority,
            self.sig_tool,
            key_size=self.config.key_size,
            days=self.config.cert_days,
        )
        generator.generate(force=force)
        self.record.keys_generated(str(self.trust_store.guid))
        self._save()
        return self.trust_store

    def generate_efi(self) -> list:
        """Builds, signs and stages the boot images."""
        sbm_logging.log_section("generate-efi")
        self._require_keys()

        with tempfile.TemporaryDirectory(prefix="secure-boot-") as work_dir:
            build = ArtifactBuilder(self.config, self.pe_editor).build(work_dir)
            signed = ArtifactSigner(self.config, self.pe_editor).sign_and_stage(build, self.trust_store)

        self.record.artifacts_signed([artifact.path for artifact in signed])
        self._save()
        return signed

    def add_efi(self) -> BootEntry:
        """Registers the firmware boot entry of the staged image."""
        sbm_logging.log_section("add-efi")
        self._require_artifacts()
        entry = BootEntryManager(self.config, self.boot_manager).register_entry()
        self.record.boot_entry_registered(dataclasses.asdict(entry))
        self._save()
        return entry

    def enroll_keys(self, resume: bool = False) -> EnrollmentReport:
        """Enrolls db, KEK and PK.

        With `resume`, variables the firmware already holds for this hierarchy
        are skipped; otherwise all three are written.
        """
        sbm_logging.log_section("enroll-keys")
        self._require_keys()

        self.boot_manager.ensure_efivarfs_writable()
        try:
            report = self.enroller.enroll(self.trust_store, resume=resume)
        except VarWriteFailure as failure:
            if failure.report is not None:
                self.record.variables_enrolled(failure.report.enrolled, error=str(failure))
                self._save()
            raise

        self.record.variables_enrolled(report.enrolled)
        self._save()
        for line in report.summary():
            logging.info(line)
        return report

    def generate_snapshots(self) -> list:
        """Refreshes <ESP>/snapshots.txt."""
        sbm_logging.log_section("generate-snapshots")
        return generate_snapshot_manifest(self.config)

    def initial_setup(self, force: bool = False) -> SetupReport:
        """Runs generate-keys, generate-efi, add-efi and enroll-keys in order.

        A failed enrollment is logged and recorded but does not fail the setup:
        keys, images and the boot entry stay in place, and enroll-keys can be
        rerun once the firmware is back in setup mode.
        """
        sbm_logging.log_section("initial-setup")
        report = SetupReport()
        report.trust_store = self.generate_keys(force=force)
        report.signed = self.generate_efi()
        report.boot_entry = self.add_efi()
        try:
            report.enrollment = self.enroll_keys()
        except VarWriteFailure as failure:
            logging.warning(f"Key enrollment failed, run enroll-keys again once the firmware is in setup mode: {failure}")
            report.enrollment = failure.report
            report.enrollment_error = failure
        return report

    def status(self) -> list:
        """Returns the status record merged with what exists on disk."""
        lines = self.record.describe()
        lines.append(f"key directory complete = {self.trust_store.is_complete()}")
        lines.append(f"main image staged = {os.path.isfile(self.config.main_artifact_path)}")
        return lines
