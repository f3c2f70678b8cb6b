"""Log level names as written in configuration files."""

from __future__ import annotations

import logging

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "trace": TRACE,
    "trce": TRACE,
    "debug": logging.DEBUG,
    "dbug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "eror": logging.ERROR,
    "crit": logging.CRITICAL,
}


def level_from_string(text: str) -> int:
    """Return the logging level named by ``text``, ignoring case.

    Raises ValueError for an unknown name.
    """
    name = text.lower()
    try:
        return _LEVELS[name]
    except KeyError:
        raise ValueError(f"unknown level: {name}") from None