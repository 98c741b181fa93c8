# @file status.py
# Persisted lifecycle status of the secure boot setup.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Persisted lifecycle status of the secure boot setup.

The record is a small yaml document written after every successful
operation:

    state: ARTIFACTS_SIGNED
    guid: 3c5f6e7a-...
    artifacts:
      - /efi/EFI/Linux/secure-boot-linux.efi
    boot_entry: null
    enrolled: []
    enrollment_error: null
    timestamps:
      generate-keys: '2024-01-01T10:00:00+00:00'

When the file is missing it is rebuilt from what exists on disk.
"""

import datetime
import enum
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from typing import Optional

import yaml

from sbmanager.configuration import BootConfiguration
from sbmanager.trust_store import TrustStore


class LifecycleState(enum.IntEnum):
    NO_KEYS = 0
    KEYS_GENERATED = 1
    ARTIFACTS_SIGNED = 2
    BOOT_ENTRY_REGISTERED = 3
    ENROLLED = 4


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


@dataclass
class StatusRecord:
    """What the lifecycle operations have completed so far."""

    state: LifecycleState = LifecycleState.NO_KEYS
    guid: Optional[str] = None
    artifacts: list = field(default_factory=list)
    boot_entry: Optional[dict] = None
    enrolled: list = field(default_factory=list)
    enrollment_error: Optional[str] = None
    timestamps: dict = field(default_factory=dict)
    reconstructed: bool = False

    def at_least(self, state: LifecycleState) -> bool:
        return self.state >= state

    def _advance(self, state: LifecycleState, operation: str) -> None:
        self.state = max(self.state, state)
        self.timestamps[operation] = _now()

    def keys_generated(self, guid: str) -> None:
        """A new hierarchy invalidates everything signed or enrolled with the previous one."""
        self.state = LifecycleState.KEYS_GENERATED
        self.guid = str(guid)
        self.artifacts = []
        self.boot_entry = None
        self.enrolled = []
        self.enrollment_error = None
        self.timestamps = {"generate-keys": _now()}

    def artifacts_signed(self, paths: list) -> None:
        self.artifacts = list(paths)
        self._advance(LifecycleState.ARTIFACTS_SIGNED, "generate-efi")

    def boot_entry_registered(self, entry: dict) -> None:
        self.boot_entry = dict(entry)
        self._advance(LifecycleState.BOOT_ENTRY_REGISTERED, "add-efi")

    def variables_enrolled(self, variables: list, error: Optional[str] = None) -> None:
        """Records the variables that hold the hierarchy after an enrollment run.

        The state only advances once PK is among them.
        """
        self.enrolled = [name for name in ("db", "KEK", "PK") if name in set(variables)]
        self.enrollment_error = error
        self.timestamps["enroll-keys"] = _now()
        if error is None and "PK" in self.enrolled:
            self.state = max(self.state, LifecycleState.ENROLLED)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.name
        del data["reconstructed"]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StatusRecord":
        """Builds a record from its yaml form.

        Raises:
            (ValueError): unknown state or malformed document
        """
        if not isinstance(data, dict):
            raise ValueError("status record must be a mapping")
        try:
            state = LifecycleState[str(data.get("state", "NO_KEYS"))]
        except KeyError:
            raise ValueError(f"unknown lifecycle state {data.get('state')}")
        return cls(
            state=state,
            guid=data.get("guid"),
            artifacts=list(data.get("artifacts") or []),
            boot_entry=data.get("boot_entry"),
            enrolled=list(data.get("enrolled") or []),
            enrollment_error=data.get("enrollment_error"),
            timestamps=dict(data.get("timestamps") or {}),
        )

    def save(self, path: str) -> None:
        """Writes the record through a temporary file and a rename."""
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=".status-", dir=directory)
        try:
            with open(fd, "w") as status_file:
                yaml.safe_dump(self.to_dict(), status_file, default_flow_style=False, sort_keys=False)
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    @classmethod
    def load(cls, path: str) -> Optional["StatusRecord"]:
        """Reads the record, returning None when it is missing or unreadable."""
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r") as status_file:
                return cls.from_dict(yaml.safe_load(status_file))
        except (yaml.YAMLError, ValueError) as exc:
            logging.warning(f"Ignoring unreadable status record {path}: {exc}")
            return None

    @classmethod
    def reconstruct(cls, config: BootConfiguration, trust: TrustStore) -> "StatusRecord":
        """Rebuilds a record from the key directory and the staged images.

        Boot entries and enrolled variables live in firmware and are not
        inferred.
        """
        record = cls(reconstructed=True)
        if not trust.is_complete():
            return record

        record.state = LifecycleState.KEYS_GENERATED
        record.guid = str(trust.guid)

        if os.path.isfile(config.main_artifact_path):
            record.state = LifecycleState.ARTIFACTS_SIGNED
            record.artifacts = [config.main_artifact_path]
        return record

    def describe(self) -> list:
        lines = [f"state = {self.state.name}" + (" (reconstructed)" if self.reconstructed else "")]
        lines.append(f"guid = {self.guid}")
        lines.extend(f"artifact = {path}" for path in self.artifacts)
        if self.boot_entry:
            lines.append(f"boot entry = {self.boot_entry.get('label')} -> {self.boot_entry.get('loader_path')}")
        lines.append(f"enrolled = {', '.join(self.enrolled) if self.enrolled else 'none'}")
        if self.enrollment_error:
            lines.append(f"enrollment error = {self.enrollment_error}")
        for operation, stamp in self.timestamps.items():
            lines.append(f"{operation} = {stamp}")
        return lines
