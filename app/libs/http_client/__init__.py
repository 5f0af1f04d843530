"""Gateway HTTP client: httpx transport behind a middleware chain."""

from .client import GATEWAY_LIMITS, HttpClient, encode_body
from .middleware import logging_middleware
from .models import Request, Response
from .types import Middleware, NextFn

__all__ = [
    "GATEWAY_LIMITS",
    "HttpClient",
    "encode_body",
    "Request",
    "Response",
    "Middleware",
    "NextFn",
    "logging_middleware",
]
