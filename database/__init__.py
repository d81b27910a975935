"""
Database layer — Multi-backend persistence for subscribers and queue snapshots.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - REST (Supabase PostgREST over httpx)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  subs = await store.list_active_tracked()
"""
from database.store_base import (
    BaseStore, SubscriptionRepository, QueueStateOracle,
    StoreError, TrackingConflictError,
)
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # Interfaces
    "BaseStore", "SubscriptionRepository", "QueueStateOracle",
    # Errors
    "StoreError", "TrackingConflictError",
    # Backends (SqlStore / RestStore are imported lazily by the factory)
    "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
