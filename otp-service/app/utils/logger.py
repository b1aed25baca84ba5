import logging
import re
import sys
from typing import Optional

from app.config import settings

FORMAT = "[%(levelname)s %(name)s %(module)s:%(lineno)s - %(funcName)s() - %(asctime)s] %(message)s"
TIME_FORMAT = "%d.%m.%Y %I:%M:%S %p"


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return a logger writing to stdout with the service-wide format."""
    logger_instance = logging.getLogger(name)
    logger_instance.setLevel((level or settings.LOG_LEVEL).upper())

    if not logger_instance.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(FORMAT, datefmt=TIME_FORMAT))
        logger_instance.addHandler(handler)
        logger_instance.propagate = False

    return logger_instance


def mask_identifier(value: Optional[str]) -> str:
    """Mask a phone number or email address for log output."""
    if not value:
        return "<none>"
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:2]}***@{domain}"
    # keep the last four digits only
    return re.sub(r".(?=.{4})", "*", value)
