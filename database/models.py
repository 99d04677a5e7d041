"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex), no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, DateTime, Text, Index, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Message history
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "bot_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    bot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), default="")
    chat_type: Mapped[str] = mapped_column(String(32), default="private")
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    text: Mapped[str] = mapped_column(Text, default="")
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_bot_messages_bot_chat", "bot_id", "chat_id"),
        Index("ix_bot_messages_bot_created", "bot_id", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "bot_id": self.bot_id, "chat_id": self.chat_id,
            "user_id": self.user_id, "chat_type": self.chat_type,
            "direction": self.direction, "text": self.text,
            "message_id": self.message_id, "metadata": self.metadata_,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
