"""Root logger configuration."""

import logging
import sys


def setup_logging(level: str = "INFO", format_string: str | None = None) -> None:
    """
    Configure the root logger with a single stdout handler.

    Safe to call more than once; an existing handler installed by a previous
    call is replaced rather than duplicated.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(format_string))
    handler.set_name("rostersync")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for existing in list(root_logger.handlers):
        if existing.get_name() == "rostersync":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # httpx logs every request at INFO, which drowns out sync progress
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
