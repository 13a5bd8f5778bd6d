"""Session event notifiers."""

from messaging_sessions.notify.webhook import Notifier, NullNotifier, WebhookNotifier

__all__ = ["Notifier", "NullNotifier", "WebhookNotifier"]
