"""qrforce/notify.py

User-visible notifications.

The engine reports terminal outcomes through a Notifier so each failure class
(configuration, timeout, validation, failure) reaches the user distinguishably.
"""

from __future__ import annotations

# Standard Library
import logging
from typing import Protocol, runtime_checkable

# Local Modules
from qrforce.errors import NoticeKind

logger = logging.getLogger(__name__)

_LEVELS: dict[NoticeKind, int] = {
    NoticeKind.CONFIGURATION: logging.ERROR,
    NoticeKind.TIMEOUT: logging.ERROR,
    NoticeKind.VALIDATION: logging.ERROR,
    NoticeKind.FAILURE: logging.ERROR,
    NoticeKind.WARNING: logging.WARNING,
    NoticeKind.SUCCESS: logging.INFO,
    NoticeKind.INFO: logging.INFO,
}


@runtime_checkable
class Notifier(Protocol):
    def notify(self, kind: NoticeKind, message: str, title: str = "") -> None: ...


class LogNotifier:
    """Default notifier: writes each notice to the log."""

    def notify(self, kind: NoticeKind, message: str, title: str = "") -> None:
        prefix = f"{title}: " if title else ""
        logger.log(_LEVELS.get(kind, logging.INFO), "[notice:%s] %s%s", kind.value, prefix, message)

