"""
Caller-supplied logger handling.

Public discovery coroutines accept any object with an ``info`` method as
their ``log``.  Levels the object does not provide are routed to the
calling module's own logger.
"""

import logging
from typing import Any, Optional

LEVELS = ("debug", "info", "warning", "error", "exception")


class ScanLog:
    """Forward each level to ``log`` when it has it, else to ``fallback``."""

    def __init__(self, log: Any, fallback: logging.Logger):
        self._log = log
        self._fallback = fallback
        for level in LEVELS:
            method = getattr(log, level, None)
            if not callable(method):
                method = getattr(fallback, level)
            setattr(self, level, method)

    def __repr__(self) -> str:
        return f"<ScanLog {self._log!r} -> {self._fallback.name}>"


def resolve_log(log: Optional[Any], fallback: logging.Logger):
    """Return a logger usable at every level.

    ``None`` gives ``fallback``; a full :class:`logging.Logger` (or
    adapter) is returned unchanged.
    """
    if log is None:
        return fallback
    if isinstance(log, (logging.Logger, logging.LoggerAdapter, ScanLog)):
        return log
    return ScanLog(log, fallback)
