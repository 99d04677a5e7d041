"""
In-memory gateway — records every send instead of calling a provider.

Used for local development and tests. Individual chat ids can be scripted
to fail (raise) or to be silently undeliverable (return None).
"""
from __future__ import annotations

import itertools
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from channels.base import GatewayError, MessagingGateway

logger = structlog.get_logger()


@dataclass
class SentMessage:
    kind: str                       # text | photo | document
    credential: str
    chat_id: str
    content: str
    options: dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None


class InMemoryGateway(MessagingGateway):

    provider = "memory"

    def __init__(self):
        self.sent: list[SentMessage] = []
        self.failing_chats: set[str] = set()
        self.undeliverable_chats: set[str] = set()
        self._ids = itertools.count(1000)

    async def _send(self, kind: str, credential: str, chat_id: str, content: str,
                    options: dict[str, Any] = None) -> Optional[str]:
        if chat_id in self.failing_chats:
            raise GatewayError(f"Chat {chat_id} unreachable", self.provider)
        message_id = None if chat_id in self.undeliverable_chats else str(next(self._ids))
        self.sent.append(SentMessage(kind, credential, chat_id, content, dict(options or {}), message_id))
        logger.debug("memory_gateway_sent", kind=kind, chat_id=chat_id, message_id=message_id)
        return message_id

    async def send_text(self, credential: str, chat_id: str, text: str,
                        options: dict[str, Any] = None) -> Optional[str]:
        return await self._send("text", credential, chat_id, text, options)

    async def send_photo(self, credential: str, chat_id: str, photo: str,
                         options: dict[str, Any] = None) -> Optional[str]:
        return await self._send("photo", credential, chat_id, photo, options)

    async def send_document(self, credential: str, chat_id: str, document: str,
                            options: dict[str, Any] = None) -> Optional[str]:
        return await self._send("document", credential, chat_id, document, options)

    def texts(self, chat_id: str = None) -> list[str]:
        return [m.content for m in self.sent
                if m.kind == "text" and (chat_id is None or m.chat_id == chat_id)]

    @property
    def last(self) -> Optional[SentMessage]:
        return self.sent[-1] if self.sent else None
