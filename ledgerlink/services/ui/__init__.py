"""Notification and confirmation collaborators."""

from ledgerlink.services.ui.interface import (
    ConfirmationInterface,
    DenyConfirmation,
    LoggingNotifier,
    NotificationLevel,
    NotifierInterface,
)

__all__ = [
    "ConfirmationInterface",
    "DenyConfirmation",
    "LoggingNotifier",
    "NotificationLevel",
    "NotifierInterface",
]
