"""Firmware boot entries and Secure Boot variable enrollment.

Copyright (c) Microsoft Corporation
SPDX-License-Identifier: BSD-2-Clause-Patent
"""
