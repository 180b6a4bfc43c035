# accrual/notifications.py
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

EXTENSION_KEY = "accrual_notifier"


class Notifier(ABC):
    """
    Outbound notification collaborator.
    The engine only issues the call; storage and delivery belong to whoever
    implements send().
    """

    @abstractmethod
    def send(self, user_id: Optional[int], title: str, message: str,
             category: str = "info", priority: str = "normal",
             metadata: Optional[Dict[str, Any]] = None) -> None:
        """user_id None addresses the administrators."""


class LoggingNotifier(Notifier):
    """Default notifier: writes the dispatch call to the log."""

    def send(self, user_id, title, message, category="info", priority="normal", metadata=None):
        logger.info(
            f"NOTIFY user={user_id} category={category} priority={priority} "
            f"title={title!r} message={message!r} metadata={metadata or {}}"
        )


class RecordingNotifier(Notifier):
    """Keeps every call in memory."""

    def __init__(self):
        self.sent = []

    def send(self, user_id, title, message, category="info", priority="normal", metadata=None):
        self.sent.append({
            "user_id": user_id,
            "title": title,
            "message": message,
            "category": category,
            "priority": priority,
            "metadata": metadata or {},
        })


def init_notifier(app, notifier: Optional[Notifier] = None):
    app.extensions[EXTENSION_KEY] = notifier or LoggingNotifier()
    return app.extensions[EXTENSION_KEY]


def get_notifier() -> Notifier:
    if has_app_context():
        notifier = current_app.extensions.get(EXTENSION_KEY)
        if notifier is not None:
            return notifier
    return LoggingNotifier()


def notify(notifier: Optional[Notifier], user_id, title, message, category="info",
           priority="normal", metadata=None) -> None:
    """Fire-and-forget dispatch; a failing notifier never undoes a committed mutation."""
    notifier = notifier or get_notifier()
    try:
        notifier.send(user_id, title, message, category, priority, metadata or {})
    except Exception as e:
        logger.error(f"Notification dispatch failed for user {user_id} ({title}): {e}")
