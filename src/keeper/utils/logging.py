"""Logging configuration for Keeper.

The master and its workers log through the standard library ``logging``
module. This helper sets up the root logger once, at process start.
"""

import logging
import os
import sys


def configure_logging(level=None, format_string=None, log_file=None):
    """Configure logging for the Keeper master process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string for log messages
        log_file: Optional path of a file that receives a copy of every record.
            A daemonized master has no terminal, so this is the only place its
            logs survive.
    """
    # Get level from environment or use default
    if level is None:
        level = os.environ.get("KEEPER_LOG_LEVEL", "INFO")
    level = str(level).upper()

    # Convert string level to logging constant
    numeric_level = getattr(logging, level, logging.INFO)

    if format_string is None:
        if numeric_level == logging.DEBUG:
            # Worker logs interleave with the master's, so show the pid
            format_string = (
                "%(asctime)s [%(levelname)s] %(process)d %(name)s: %(message)s"
            )
        else:
            format_string = "%(asctime)s %(levelname)s: %(message)s"

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    # Configure root logger
    logging.basicConfig(
        level=numeric_level,
        format=format_string,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,  # Replace any existing configuration
    )

    if numeric_level == logging.DEBUG:
        logging.getLogger("keeper").setLevel(logging.DEBUG)
    else:
        logging.getLogger("keeper.supervisor").setLevel(logging.INFO)
        logging.getLogger("keeper.singleton").setLevel(logging.INFO)
        logging.getLogger("keeper.process").setLevel(logging.INFO)
        logging.getLogger("asyncio").setLevel(logging.WARNING)

