"""Shared logging format and configuration for notification-center processes."""

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%SZ"

# Driver loggers that are chatty at DEBUG (request signing, heartbeats).
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "pymongo")


def configure_logging(level: int = logging.INFO, *, debug: bool = False) -> None:
    """
    Configure the root logger for this process. Call once at application startup.

    debug=True lowers the level to DEBUG for application loggers while keeping
    driver loggers at WARNING.
    """
    if debug:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
