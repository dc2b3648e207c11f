# utils/console_print.py
import logging
import sys
from typing import Optional, TextIO

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def configure_console(level: str = "INFO", stream: Optional[TextIO] = None) -> logging.Handler:
    """Send every logger to stderr (or `stream`) with one shared format. Returns the handler."""
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    return handler


def print_console(text: str, channel: str = "console", level: int = logging.INFO):
    """Publish an operator-facing line on `channel`."""
    logging.getLogger(channel).log(level, "%s", text)
