# @file sbm_logging.py
# Handle basic logging config for the secure-boot command;
# console output plus an optional plain text log file.
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Handles basic logging config for the secure-boot command.

Every lifecycle operation opens a SECTION record, external commands are
logged with their full command line by RunCmd, and the console handler
redacts PEM encoded private key material should it ever reach a log record.
"""

import logging
import os
import re
from typing import Union

from edk2toollib.log import ansi_handler

# section marks a lifecycle operation
SECTION = logging.CRITICAL + 2


def get_section_level() -> int:
    """Returns SECTION."""
    return SECTION


def get_sbm_filter(verbose: bool = False) -> logging.Filter:
    """Returns a secure boot log filter."""
    sbm_filter = SecureBootLogFilter()
    if verbose:
        sbm_filter.setVerbose(verbose)
    return sbm_filter


def log_section(message: str) -> None:
    """Creates a logging message at the section level."""
    logging.log(get_section_level(), message)


def setup_section_level() -> None:
    """Registers the section level name."""
    if logging.getLevelName(SECTION) != "SECTION":
        logging.addLevelName(SECTION, "SECTION")


# creates the plaintext logger
def setup_txt_logger(
    directory: str,
    filename: str = "secure-boot",
    logging_level: int = logging.INFO,
    isVerbose: bool = False,
) -> tuple:
    """Configures a text logger on the root logger.

    Returns:
        (tuple): path of the log file and the installed handler
    """
    logger = logging.getLogger("")
    log_formatter = logging.Formatter("%(asctime)s %(levelname)s - %(message)s")

    if not os.path.isdir(directory):
        os.makedirs(directory)

    logfile_path = os.path.join(directory, filename + ".txt")

    # delete file before starting a new log
    if os.path.isfile(logfile_path):
        os.remove(logfile_path)

    filelogger = logging.FileHandler(filename=logfile_path, mode="a")
    filelogger.setLevel(logging_level)
    filelogger.setFormatter(log_formatter)
    filelogger.addFilter(get_sbm_filter(isVerbose))
    logger.addHandler(filelogger)

    return logfile_path, filelogger


# sets up a colored console logger
def setup_console_logging(
    logging_level: int = logging.INFO,
    isVerbose: bool = False,
    use_color: bool = True,
) -> logging.Handler:
    """Configures a console logger on the root logger."""
    if isVerbose:
        formatter_msg = "%(name)s: %(levelname)s - %(message)s"
    else:
        formatter_msg = "%(levelname)s - %(message)s"

    logger = logging.getLogger("")

    if use_color:
        handler = ansi_handler.ColoredStreamHandler()
        handler.setFormatter(ansi_handler.ColoredFormatter(formatter_msg))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(formatter_msg))

    handler.setLevel(logging_level)
    handler.addFilter(get_sbm_filter(isVerbose))
    logger.addHandler(handler)
    return handler


def stop_logging(loghandle: Union[list[logging.Handler], logging.Handler]) -> None:
    """Stops logging on a log handle."""
    logger = logging.getLogger("")
    if loghandle is None:
        return
    if isinstance(loghandle, list):
        for handle in loghandle:
            handle.close()
            logger.removeHandler(handle)
    else:
        loghandle.close()
        logger.removeHandler(loghandle)


class SecureBootLogFilter(logging.Filter):
    """Subclass of logging.Filter.

    Drops chatty records from library loggers unless verbose and redacts
    private key blocks from every record it lets through.
    """

    _allowedLoggers = ["root", "sbmanager"]

    _private_key_regex = re.compile(
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL
    )

    def __init__(self) -> None:
        """Inits a filter."""
        logging.Filter.__init__(self)
        self._verbose = False

    def setVerbose(self, isVerbose: bool = True) -> None:
        """Sets the filter verbosity."""
        self._verbose = isVerbose

    def filter(self, record: logging.LogRecord) -> bool:
        """Filters and redacts a record."""
        allowed = record.name in SecureBootLogFilter._allowedLoggers or record.name.startswith("sbmanager.")
        if not allowed and record.levelno < logging.WARNING and not self._verbose:
            return False
        if isinstance(record.msg, str) and "PRIVATE KEY" in record.msg:
            record.msg = self._private_key_regex.sub("*******", record.msg)
        return True
