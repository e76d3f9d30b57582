"""
User Interaction Interfaces

The reconciliation core never renders anything. It reports through a
notifier and asks for consent through a confirmation collaborator; the
presentation layer provides both.

DESIGN DECISION: The defaults are safe for headless use. Notifications
go to the structured log and every confirmation is declined, so nothing
destructive happens unless a real confirmation layer is wired in.
"""

from abc import ABC, abstractmethod
from enum import Enum

import structlog


class NotificationLevel(str, Enum):
    """Visual weight of a dismissable notification."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotifierInterface(ABC):
    """Displays dismissable messages to the user."""

    @abstractmethod
    def notify(self, message: str, level: NotificationLevel = NotificationLevel.INFO) -> None:
        pass


class ConfirmationInterface(ABC):
    """Asks the user a yes/no question before a destructive or multi-step action."""

    @abstractmethod
    async def confirm(self, title: str, message: str, danger: bool = False) -> bool:
        """
        Ask for explicit confirmation.

        Args:
            title: Short dialog title
            message: What will happen if the user confirms
            danger: Whether the action is destructive

        Returns:
            True only if the user confirmed
        """
        pass


class LoggingNotifier(NotifierInterface):
    """Notifier that writes every message to the structured log."""

    def __init__(self):
        self._logger = structlog.get_logger(__name__)

    def notify(self, message: str, level: NotificationLevel = NotificationLevel.INFO) -> None:
        level = NotificationLevel(level)
        if level == NotificationLevel.ERROR:
            self._logger.error("notification", message=message, level=level.value)
        elif level == NotificationLevel.WARNING:
            self._logger.warning("notification", message=message, level=level.value)
        else:
            self._logger.info("notification", message=message, level=level.value)


class DenyConfirmation(ConfirmationInterface):
    """Declines every confirmation request."""

    async def confirm(self, title: str, message: str, danger: bool = False) -> bool:
        structlog.get_logger(__name__).info(
            "confirmation_declined", title=title, danger=danger
        )
        return False
