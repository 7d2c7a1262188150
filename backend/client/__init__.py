# client/__init__.py
# ============================================================================
# STOREFRONT BACKEND — CLIENT CART ENGINE
# ============================================================================
# Optimistic client cart, its HTTP client and local durable storage
# ============================================================================

from client.session import SessionContext
from client.local_storage import InMemoryCartStorage, JsonFileCartStorage, LocalCartStorage
from client.api_client import CartApiClient
from client.cart_engine import CartEngine, CartMutation, MergePolicy, MutationState

__all__ = [
    "SessionContext",
    "LocalCartStorage",
    "InMemoryCartStorage",
    "JsonFileCartStorage",
    "CartApiClient",
    "CartEngine",
    "CartMutation",
    "MergePolicy",
    "MutationState",
]
