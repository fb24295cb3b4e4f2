from .server import NotificationOptions, Server, request_ctx

__all__ = ["NotificationOptions", "Server", "request_ctx"]
