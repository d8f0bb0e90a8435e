"""
logging_config.py — Log Setup for the Marketplace Service

Called once at application start. Every module then logs through
`logging.getLogger(__name__)` and inherits the handlers configured here.

Log lines name the entity they concern in brackets, e.g. `[Order: <id>]`,
`[Cart: <consumer>]` or `[Producer: <id>]`, so one order can be followed
through checkout, payment and review with a single grep.

Environment:
    LOG_FILE   File to append to (default "marketplace.log"). Empty means console only.
    LOG_LEVEL  Root level (default INFO).
"""

import logging
import os
import sys

LOG_FILE = os.environ.get("LOG_FILE", "marketplace.log")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'

QUIET_LIBRARIES = ("pika", "httpx", "httpcore")


def setup_logging():
    """
    Installs the stdout handler, plus the file handler when LOG_FILE is set.

    The PID in every line tells uvicorn workers apart. Transport libraries are
    limited to WARNING so request-level chatter does not drown the order log.
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, handlers=handlers)

    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name):
    return logging.getLogger(name)
