"""sbmanager package.

Lifecycle management for UEFI Secure Boot trust material and the signed boot
images that depend on it.

Modules:
    - trust_store: on-disk PK/KEK/db key hierarchy.
    - keys: key hierarchy generation (certificates, signature lists, authenticated variables).
    - efi: unified EFI image assembly, signing and staging on the EFI system partition.
    - firmware: firmware boot entries and authenticated variable enrollment.
    - orchestrator: the lifecycle operations exposed by the secure-boot command.

Copyright (c) Microsoft Corporation
SPDX-License-Identifier: BSD-2-Clause-Patent
"""
