"""Messaging gateways used by the flow engine to reach end-users."""
from channels.base import (
    GatewayError,
    MessagingGateway,
    RateLimitedError,
    TokenBucketRateLimiter,
)
from channels.memory import InMemoryGateway, SentMessage
from channels.telegram import TelegramGateway

__all__ = [
    "GatewayError", "MessagingGateway", "RateLimitedError", "TokenBucketRateLimiter",
    "InMemoryGateway", "SentMessage", "TelegramGateway",
]
