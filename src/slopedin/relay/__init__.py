"""Request/response relay across the context boundary."""

from __future__ import annotations

from .channel import Channel, ContextChannel, ContextFactory, Delivery, Endpoint
from .messages import ClassifyRequest, ClassifyResponse, ErrorResponse, parse_request, parse_response
from .relay import Relay

__all__ = [
    "Channel",
    "ContextChannel",
    "ContextFactory",
    "Delivery",
    "Endpoint",
    "ClassifyRequest",
    "ClassifyResponse",
    "ErrorResponse",
    "parse_request",
    "parse_response",
    "Relay",
]
