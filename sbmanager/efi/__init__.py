"""Unified EFI image assembly, signing and staging.

Copyright (c) Microsoft Corporation
SPDX-License-Identifier: BSD-2-Clause-Patent
"""
