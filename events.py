"""
Notice emitter for user-visible messages (success, warnings, errors).
Stages push notices synchronously; the CLI or any other frontend subscribes.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class NoticeLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class NoticeAction:
    label: str
    path: str


@dataclass(frozen=True)
class Notice:
    """A single toast-style message."""
    level: NoticeLevel
    message: str
    description: Optional[str] = None
    action: Optional[NoticeAction] = None

    def to_dict(self) -> dict:
        result = {"level": self.level.value, "message": self.message}
        if self.description:
            result["description"] = self.description
        if self.action:
            result["action"] = {"label": self.action.label, "path": self.action.path}
        return result


class NoticeEmitter:
    """Records every notice and fans it out to subscribers."""

    def __init__(self):
        self.history: List[Notice] = []
        self._subscribers: List[Callable[[Notice], None]] = []

    def subscribe(self, callback: Callable[[Notice], None]) -> None:
        self._subscribers.append(callback)

    def emit(self, notice: Notice) -> Notice:
        self.history.append(notice)
        logger.debug("[notice] %s: %s", notice.level.value, notice.message)
        for callback in list(self._subscribers):
            callback(notice)
        return notice

    def info(self, message: str, description: Optional[str] = None, action: Optional[NoticeAction] = None) -> Notice:
        return self.emit(Notice(NoticeLevel.INFO, message, description, action))

    def success(self, message: str, description: Optional[str] = None, action: Optional[NoticeAction] = None) -> Notice:
        return self.emit(Notice(NoticeLevel.SUCCESS, message, description, action))

    def warning(self, message: str, description: Optional[str] = None, action: Optional[NoticeAction] = None) -> Notice:
        return self.emit(Notice(NoticeLevel.WARNING, message, description, action))

    def error(self, message: str, description: Optional[str] = None, action: Optional[NoticeAction] = None) -> Notice:
        return self.emit(Notice(NoticeLevel.ERROR, message, description, action))

    def of_level(self, level: NoticeLevel) -> List[Notice]:
        return [n for n in self.history if n.level is level]
