# @file snapshots.py
# Writes the snapshot manifest the rescue script lists.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Writes the snapshot manifest the rescue script lists.

Snapshots come from `btrfs subvolume list -s`; only subvolumes whose path
matches the snapshot template (e.g. @snapshots/%s/snapshot) are kept. Each
manifest line is `<snapshot id>  <date> <time>`.
"""

import io
import logging
import os
import re

from edk2toollib.utility_functions import RunCmd

from sbmanager.configuration import BootConfiguration
from sbmanager.exceptions import ToolFailure

BTRFS_LIST_REGEX = re.compile(r"^ID\s+\d+\s.*?\sotime\s+(\S+)\s+(\S+)\s+path\s+(.+)$")
FS_TREE_PREFIX = "<FS_TREE>/"


def snapshot_path_regex(template: str) -> re.Pattern:
    """Turns a snapshot template with one %s into a regex capturing the snapshot id."""
    before, after = template.split("%s", 1)
    return re.compile("^" + re.escape(before.lstrip("/")) + r"(\d+)" + re.escape(after) + "$")


def parse_snapshots(output: str, template: str) -> list:
    """Returns (id, date, time) for every listed snapshot matching `template`, sorted by id."""
    path_regex = snapshot_path_regex(template)
    snapshots = []
    for line in output.splitlines():
        match = BTRFS_LIST_REGEX.match(line.strip())
        if match is None:
            continue
        date, time, path = match.groups()
        if path.startswith(FS_TREE_PREFIX):
            path = path[len(FS_TREE_PREFIX):]
        path_match = path_regex.match(path.lstrip("/"))
        if path_match is None:
            logging.debug(f"Ignoring subvolume {path}")
            continue
        snapshots.append((int(path_match.group(1)), date, time))
    return sorted(snapshots)


def generate_snapshot_manifest(config: BootConfiguration) -> list:
    """Lists the snapshots of `config.snapshot_root` into <ESP>/snapshots.txt.

    Returns:
        (list): the (id, date, time) entries written

    Raises:
        (ToolFailure): btrfs returned non-zero
    """
    params = f'subvolume list -s "{config.snapshot_root}"'
    results = io.StringIO()
    ret = RunCmd("btrfs", params, outstream=results, logging_level=logging.DEBUG)
    if ret != 0:
        raise ToolFailure(f"Unable to list snapshots of {config.snapshot_root}", f"btrfs {params}", ret)

    snapshots = parse_snapshots(results.getvalue(), config.subvolume_snapshot)
    os.makedirs(os.path.dirname(config.snapshots_path), exist_ok=True)
    with open(config.snapshots_path, "w") as manifest:
        for snapshot_id, date, time in snapshots:
            manifest.write(f"{snapshot_id}  {date} {time}\n")

    logging.info(f"Wrote {len(snapshots)} snapshots to {config.snapshots_path}")
    return snapshots
