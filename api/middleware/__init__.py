from .request_id import RequestIDMiddleware, get_client_ip_from_request
from .logging import LoggingMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "get_client_ip_from_request",
]
