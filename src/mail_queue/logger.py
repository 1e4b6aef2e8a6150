# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail queue.

The library never installs handlers. Level, format and handlers are set
once with ``logging.basicConfig()`` by the entry point (``main.py`` or the
``mail-queue serve`` command), so every module only asks for a named logger.

Example:
    Typical usage in a module::

        from mail_queue.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Task %s sent", queue_id)
"""

import logging

DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailQueue") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "MailQueue".

    Returns:
        A ``logging.Logger`` bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for an entry point.

    Args:
        level: Level name such as "DEBUG" or "INFO". Unknown names fall
            back to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=DEFAULT_FORMAT,
        datefmt=DEFAULT_DATEFMT,
        force=True,  # Replace handlers installed by imported libraries
    )
