# @file variable_enroller.py
# Enrolls the key hierarchy into the firmware Secure Boot variables.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Enrolls the key hierarchy into the firmware Secure Boot variables.

The write order is fixed: db, then KEK, then PK. While no PK is enrolled the
platform is in setup mode and accepts the db and KEK updates; writing PK
leaves setup mode and turns enforcement on, so it always comes last.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from sbmanager.exceptions import SigningToolFailure, VarWriteFailure
from sbmanager.firmware.uefivariablesupport import (
    EFI_VARIABLE_APPEND_WRITE,
    EFI_VARIABLE_BOOTSERVICE_ACCESS,
    EFI_VARIABLE_NON_VOLATILE,
    EFI_VARIABLE_RUNTIME_ACCESS,
    EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS,
    UefiVariable,
)
from sbmanager.keys.cert_authority import pem_to_der
from sbmanager.keys.efi_sig_tool import EFI_GLOBAL_VARIABLE, EfiSigTool, variable_namespace
from sbmanager.trust_store import TrustStore

AUTHENTICATED_WRITE = (
    EFI_VARIABLE_NON_VOLATILE
    | EFI_VARIABLE_BOOTSERVICE_ACCESS
    | EFI_VARIABLE_RUNTIME_ACCESS
    | EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS
)

WRITTEN = "written"
SKIPPED = "skipped"
FAILED = "failed"
NOT_ATTEMPTED = "not attempted"


@dataclass(frozen=True)
class EnrollmentStep:
    """One variable write of the enrollment plan."""

    variable: str
    payload_path: str
    append: bool

    @property
    def attributes(self) -> int:
        return AUTHENTICATED_WRITE | (EFI_VARIABLE_APPEND_WRITE if self.append else 0)


@dataclass
class EnrollmentReport:
    """Per-step results of an enrollment, in plan order."""

    results: list = field(default_factory=list)
    setup_mode: Optional[bool] = None

    def record(self, step: EnrollmentStep, outcome: str, detail: str = "") -> None:
        self.results.append((step.variable, outcome, detail))

    @property
    def written(self) -> list:
        return [name for name, outcome, _ in self.results if outcome == WRITTEN]

    @property
    def enrolled(self) -> list:
        """Variables that hold this hierarchy after the run, written now or verified in firmware."""
        return [name for name, outcome, _ in self.results if outcome in (WRITTEN, SKIPPED)]

    @property
    def succeeded(self) -> bool:
        return all(outcome in (WRITTEN, SKIPPED) for _, outcome, _ in self.results)

    def summary(self) -> list:
        lines = []
        for name, outcome, detail in self.results:
            lines.append(f"{name}: {outcome}" + (f" ({detail})" if detail else ""))
        return lines


def enrollment_plan(trust: TrustStore) -> list:
    """Returns the fixed write plan: db and KEK appended, PK replaced last."""
    return [
        EnrollmentStep("db", trust.entry("db").auth_path, append=True),
        EnrollmentStep("KEK", trust.entry("KEK").auth_path, append=True),
        EnrollmentStep("PK", trust.entry("PK").auth_path, append=False),
    ]


class VariableEnroller(object):
    """Writes the authenticated payloads of a TrustStore through efivarfs."""

    def __init__(self, variables: Optional[UefiVariable] = None, sig_tool: Optional[EfiSigTool] = None) -> None:
        """Inits the enroller."""
        self.variables = variables or UefiVariable()
        self.sig_tool = sig_tool or EfiSigTool()

    def setup_mode(self) -> Optional[bool]:
        """Returns True in setup mode, False in user mode and None when SetupMode can not be read."""
        err, data = self.variables.GetUefiVar("SetupMode", EFI_GLOBAL_VARIABLE)
        if err != 0 or not data:
            return None
        return data[0] == 1

    def holds_certificate(self, variable: str, trust: TrustStore) -> bool:
        """True when the firmware variable already lists the certificate of `variable` from this hierarchy."""
        err, data = self.variables.GetUefiVar(variable, variable_namespace(variable))
        if err != 0 or not data:
            return False

        expected = pem_to_der(trust.entry(variable).read_certificate())
        try:
            entries = self.sig_tool.decode_signature_list(bytes(data))
        except SigningToolFailure as exc:
            logging.warning(f"Unable to decode the firmware {variable} variable: {exc}")
            return False
        return any(der == expected for _, der in entries)

    def enroll(self, trust: TrustStore, resume: bool = False) -> EnrollmentReport:
        """Enrolls db, KEK and PK in that order.

        Every variable is written unless `resume` is set. With `resume` a step
        is skipped only when the firmware variable already holds this
        hierarchy's certificate; anything else is written again.

        Args:
            trust (TrustStore): complete key hierarchy
            resume (bool): continue an interrupted enrollment

        Raises:
            (KeysNotGenerated): the trust store is incomplete
            (VarWriteFailure): a write failed; later steps were not attempted
        """
        trust.require_complete()

        report = EnrollmentReport(setup_mode=self.setup_mode())
        if report.setup_mode is False:
            logging.warning("Firmware is not in setup mode, the variable updates will most likely be rejected")
        elif report.setup_mode is None:
            logging.warning("Unable to read SetupMode, continuing")

        plan = enrollment_plan(trust)
        for index, step in enumerate(plan):
            if resume and self.holds_certificate(step.variable, trust):
                logging.info(f"{step.variable} already holds this hierarchy, skipping")
                report.record(step, SKIPPED, "already in firmware")
                continue

            with open(step.payload_path, "rb") as payload_file:
                payload = payload_file.read()

            mode = "append" if step.append else "replace"
            logging.info(f"Enrolling {step.variable} ({mode}) from {os.path.basename(step.payload_path)}")
            success = self.variables.SetUefiVar(step.variable, variable_namespace(step.variable), payload, step.attributes)
            if not success:
                error = getattr(self.variables, "last_error", None)
                report.record(step, FAILED, str(error) if error else "")
                for later in plan[index + 1:]:
                    report.record(later, NOT_ATTEMPTED)
                raise VarWriteFailure(f"Writing the {step.variable} variable failed: {error}", report)

            report.record(step, WRITTEN)

        return report
