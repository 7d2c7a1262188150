# storage/__init__.py
# ============================================================================
# STOREFRONT BACKEND — STORAGE MODULE
# ============================================================================
# Repository interfaces plus in-memory and PostgreSQL backends
# ============================================================================

from config import Settings
from storage.base import (
    DuplicateKeyError,
    ICartRepository,
    IEventLog,
    IOrderRepository,
    IProductRepository,
    IUnitOfWork,
    Storage,
    StoredEvent,
)
from storage.memory import MemoryStorage


def create_storage(settings: Settings) -> Storage:
    """PostgreSQL when DATABASE_URL is set, in-memory otherwise."""
    if not settings.database_url:
        return MemoryStorage()

    from database import Database
    from storage.postgres import PostgresStorage

    db = Database(
        settings.database_url,
        min_size=settings.db_min_pool_size,
        max_size=settings.db_max_pool_size,
    )
    return PostgresStorage(db)


__all__ = [
    "DuplicateKeyError",
    "ICartRepository",
    "IEventLog",
    "IOrderRepository",
    "IProductRepository",
    "IUnitOfWork",
    "Storage",
    "StoredEvent",
    "MemoryStorage",
    "create_storage",
]
