from pricewise.src.notifier.email_notifier import EmailNotifier
from pricewise.src.notifier.registry import NotificationDispatcher
from pricewise.src.notifier.web_push_notifier import WebPushNotifier

__all__ = [
    "EmailNotifier",
    "NotificationDispatcher",
    "WebPushNotifier",
]
