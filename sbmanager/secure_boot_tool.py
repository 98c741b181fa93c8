# @file secure_boot_tool.py
# This module contains the CLI interface of the secure boot lifecycle:
# key generation, signed boot images, boot entries and key enrollment.
#
##
# Copyright (C) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Command line entry point of the secure-boot tool."""

import argparse
import datetime
import logging
import os
import sys

from sbmanager import sbm_logging
from sbmanager.configuration import DEFAULT_CONFIG_FILE, load_configuration
from sbmanager.exceptions import SecureBootError
from sbmanager.orchestrator import Orchestrator

TOOL_DESCRIPTION = """
secure-boot manages a self owned UEFI Secure Boot setup: it generates the
PK/KEK/db key hierarchy, builds and signs unified kernel images, registers
them with the firmware and enrolls the keys.

A first installation is usually a single call:
%s initial-setup

Afterwards, regenerate the signed images whenever the kernel changes:
%s generate-efi
""" % (os.path.basename(sys.argv[0]), os.path.basename(sys.argv[0]))

COMMANDS = (
    "initial-setup",
    "generate-snapshots",
    "generate-efi",
    "add-efi",
    "enroll-keys",
    "generate-keys",
    "status",
)


def get_cli_options(args=None):
    """Parses the command line. If provided, takes the options as a list in the first parameter."""
    parser = argparse.ArgumentParser(description=TOOL_DESCRIPTION, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("command", choices=COMMANDS, help="lifecycle operation to run")
    parser.add_argument(
        "-c",
        "--config",
        dest="config_file",
        default=None,
        help=f"a yaml configuration file, defaults to {DEFAULT_CONFIG_FILE}",
    )
    parser.add_argument(
        "--force",
        default=False,
        action="store_true",
        help="replace an existing key hierarchy (generate-keys, initial-setup)",
    )
    parser.add_argument(
        "--resume",
        default=False,
        action="store_true",
        help="enroll-keys: skip variables the firmware already holds for this key hierarchy",
    )
    parser.add_argument("--debug", default=False, action="store_true", help="enable debug output")
    parser.add_argument("--log-dir", dest="log_dir", default=None, help="also write a plain text log to this directory")
    return parser.parse_args(args=args)


def run_command(orchestrator: Orchestrator, command: str, force: bool = False, resume: bool = False) -> int:
    """Runs one lifecycle operation and returns the process exit code."""
    if command == "generate-keys":
        trust_store = orchestrator.generate_keys(force=force)
        logging.info(f"Keys generated in {trust_store.directory}")
    elif command == "generate-efi":
        signed = orchestrator.generate_efi()
        for artifact in signed:
            logging.info(f"Signed {artifact.path}")
    elif command == "add-efi":
        entry = orchestrator.add_efi()
        logging.info(f"Boot entry '{entry.label}' -> {entry.loader_path}")
    elif command == "enroll-keys":
        report = orchestrator.enroll_keys(resume=resume)
        if report.written:
            logging.info(f"Secure boot keys enrolled: {', '.join(report.written)}")
        else:
            logging.info("The firmware already holds every key of this hierarchy, nothing written")
    elif command == "generate-snapshots":
        orchestrator.generate_snapshots()
    elif command == "initial-setup":
        report = orchestrator.initial_setup(force=force)
        if not report.enrolled:
            logging.warning("Initial setup finished without enrolling the keys")
            if report.enrollment is not None:
                for line in report.enrollment.summary():
                    logging.warning(line)
        else:
            logging.info("Initial setup finished")
    elif command == "status":
        for line in orchestrator.status():
            print(line)
    return 0


def main(args=None) -> int:
    """Main entry point of the secure-boot command."""
    options = get_cli_options(args)

    logger = logging.getLogger("")
    logger.setLevel(logging.NOTSET)
    sbm_logging.setup_section_level()
    handlers = [
        sbm_logging.setup_console_logging(
            logging.DEBUG if options.debug else logging.INFO, isVerbose=options.debug, use_color=sys.stdout.isatty()
        )
    ]
    if options.log_dir is not None:
        _, file_handler = sbm_logging.setup_txt_logger(options.log_dir, logging_level=logging.DEBUG, isVerbose=True)
        handlers.append(file_handler)

    logging.debug("Log Started: " + datetime.datetime.strftime(datetime.datetime.now(), "%A, %B %d, %Y %I:%M%p"))

    config = None
    try:
        config = load_configuration(options.config_file)
        logging.debug("Configuration:\n  " + "\n  ".join(config.describe()))
        return run_command(Orchestrator(config), options.command, force=options.force, resume=options.resume)
    except SecureBootError as exc:
        logging.error(f"{options.command} failed: {exc}")
        if config is not None:
            logging.error("Active configuration:\n  " + "\n  ".join(config.describe()))
        return 1
    except Exception:
        logging.exception(f"{options.command} failed unexpectedly")
        return 2
    finally:
        sbm_logging.stop_logging(handlers)


if __name__ == "__main__":
    sys.exit(main())
