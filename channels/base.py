"""
Messaging gateway — the interface handlers use to talk to end-users.

Provides:
- GatewayError: structured error for failed provider calls
- TokenBucketRateLimiter: shared send budget, waits until the next send is earned
- MessagingGateway: abstract send_text / send_photo / send_document
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class GatewayError(Exception):
    """Base exception for all messaging gateway operations."""

    def __init__(self, message: str, provider: str = "", retryable: bool = False, status_code: int = 0):
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(GatewayError):
    def __init__(self, provider: str = ""):
        super().__init__(f"Rate limit exceeded for {provider}", provider, retryable=True, status_code=429)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Send budget shared by every bot on one provider connection.

    Holds up to ``burst`` sends and earns ``rate`` more per second. A caller
    that finds the bucket empty sleeps exactly until the next send is earned,
    and gives up when that moment lies past its timeout. Waiters queue on the
    lock, so they are served in arrival order.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if rate <= 0 or burst < 1:
            raise ValueError(f"rate must be positive and burst at least 1, got rate={rate} burst={burst}")
        self.rate = rate
        self.capacity = float(burst)
        self._clock = clock
        self._sleep = sleep
        self._level = self.capacity
        self._stamp = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        return self._level_at(self._clock())

    def _level_at(self, now: float) -> float:
        return min(self.capacity, self._level + (now - self._stamp) * self.rate)

    def _take(self) -> float:
        """Spend one send if earned; otherwise return the seconds until it is."""
        now = self._clock()
        self._level = self._level_at(now)
        self._stamp = now
        if self._level >= 1.0:
            self._level -= 1.0
            return 0.0
        return (1.0 - self._level) / self.rate

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = self._clock() + timeout
        async with self._lock:
            while True:
                wait = self._take()
                if not wait:
                    return True
                if self._clock() + wait > deadline:
                    logger.debug("rate_limit_timeout", wait=round(wait, 3), timeout=timeout)
                    return False
                await self._sleep(wait)


# ══════════════════════════════════════════════════════════════
#  GATEWAY INTERFACE
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """
    Outbound messaging provider.

    ``credential`` is the bot's provider token. Every send returns the
    provider's message id, or None when the provider accepted the call
    but reported no delivery. Transport and API failures raise GatewayError.
    """

    provider: str = ""

    @abc.abstractmethod
    async def send_text(self, credential: str, chat_id: str, text: str,
                        options: dict[str, Any] = None) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def send_photo(self, credential: str, chat_id: str, photo: str,
                         options: dict[str, Any] = None) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def send_document(self, credential: str, chat_id: str, document: str,
                            options: dict[str, Any] = None) -> Optional[str]:
        ...

    async def close(self) -> None:
        """Release provider connections."""
