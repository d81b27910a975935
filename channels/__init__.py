"""Delivery channels for outbound notifications."""
from channels.base import (
    DeliveryChannel,
    DeliveryResult,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    PushRateLimiter,
    CircuitBreaker,
    PushMetrics,
    RedeliveryFilter,
)
from channels.line_adapter import LineAdapter

__all__ = [
    "DeliveryChannel", "DeliveryResult",
    "ChannelError", "RateLimitedError", "CircuitOpenError",
    "PushRateLimiter", "CircuitBreaker", "PushMetrics",
    "RedeliveryFilter", "LineAdapter",
]
