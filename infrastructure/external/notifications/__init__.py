from .logging_notifier import LoggingNotifier
from .webhook_notifier import WebhookDeliveryError, WebhookNotifier

__all__ = ["LoggingNotifier", "WebhookDeliveryError", "WebhookNotifier"]
