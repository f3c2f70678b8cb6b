"""Error wrapping for the JSON-RPC proxy."""

from __future__ import annotations


class ProxydError(Exception):
    """An error that carries the error it was raised because of."""

    def __init__(self, message: str, wrapped: object = None):
        super().__init__(message)
        self.wrapped = wrapped


def wrap_error(err: object, msg: str) -> ProxydError:
    """Return an error reading ``"<msg> <err>"`` whose cause is ``err``."""
    wrapped = ProxydError(f"{msg} {err}", err)
    if isinstance(err, BaseException):
        wrapped.__cause__ = err
    return wrapped