from .lowlevel import NotificationOptions, Server
from .models import InitializationOptions
from .session import ServerSession
from .subscriptions import SubscriptionManager

__all__: list[str] = [
    "Server",
    "NotificationOptions",
    "InitializationOptions",
    "ServerSession",
    "SubscriptionManager",
]
