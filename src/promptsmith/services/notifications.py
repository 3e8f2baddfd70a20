from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import List, Literal, Protocol
import logging
import uuid


logger = logging.getLogger(__name__)

NotificationKind = Literal["success", "warning", "error", "info"]

_LOG_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class Notifier(Protocol):
    def notify(self, kind: NotificationKind, message: str) -> None: ...


@dataclass
class Notification:
    id: str
    kind: str
    message: str
    created_at: str


class NotificationCenter:
    """In-memory notification feed polled by the UI; keeps the most recent entries."""

    def __init__(self, limit: int = 100) -> None:
        self._items: List[Notification] = []
        self._limit = limit
        self._lock = RLock()

    def notify(self, kind: NotificationKind, message: str) -> None:
        logger.log(_LOG_LEVELS.get(kind, logging.INFO), "notification", extra={"kind": kind, "text": message})
        with self._lock:
            self._items.append(
                Notification(
                    id=uuid.uuid4().hex,
                    kind=kind,
                    message=message,
                    created_at=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                )
            )
            if len(self._items) > self._limit:
                del self._items[: len(self._items) - self._limit]

    def items(self) -> List[Notification]:
        with self._lock:
            return list(self._items)
