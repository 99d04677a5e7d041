"""
Database layer — Message history persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (list-based, for development/testing)

Quick start:
  from database import create_history_store
  store = create_history_store({"history_backend": "memory"})
  chat_ids = await store.distinct_chat_ids("bot-1")
"""
from database.models import Base, MessageRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import MessageHistoryStore, is_addressable_chat
from database.store import SqlMessageHistoryStore
from database.store_memory import InMemoryMessageHistoryStore
from database.store_factory import create_history_store, get_history_store, reset_history_store

__all__ = [
    "Base", "MessageRow",
    "get_engine", "get_session", "init_db", "close_db",
    "MessageHistoryStore", "is_addressable_chat",
    "SqlMessageHistoryStore", "InMemoryMessageHistoryStore",
    "create_history_store", "get_history_store", "reset_history_store",
]
