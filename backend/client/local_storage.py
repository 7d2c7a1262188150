"""
Durable client-local cart storage.

Guest carts live here between visits. A corrupt or unreadable file reads
as an empty cart rather than breaking the storefront.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError as SchemaValidationError

from schemas.carts import Cart

CART_STORAGE_KEY = "storefront-cart"

logger = structlog.get_logger().bind(component="local_cart_storage")


class LocalCartStorage(ABC):
    """Client-side key/value slot holding one guest cart"""

    @abstractmethod
    def load(self) -> Cart:
        pass

    @abstractmethod
    def save(self, cart: Cart) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class InMemoryCartStorage(LocalCartStorage):

    def __init__(self, cart: Optional[Cart] = None):
        self._payload: Optional[str] = cart.model_dump_json() if cart else None

    def load(self) -> Cart:
        if self._payload is None:
            return Cart()
        return Cart.model_validate_json(self._payload)

    def save(self, cart: Cart) -> None:
        self._payload = cart.model_dump_json()

    def clear(self) -> None:
        self._payload = None

    @property
    def has_cart(self) -> bool:
        return self._payload is not None


class JsonFileCartStorage(LocalCartStorage):
    """One JSON document per storage key, under ``directory``."""

    def __init__(self, directory: Path, key: str = CART_STORAGE_KEY):
        self.path = Path(directory) / f"{key}.json"

    def load(self) -> Cart:
        if not self.path.exists():
            return Cart()
        try:
            return Cart.model_validate(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, ValueError, SchemaValidationError) as e:
            logger.warning("local_cart_unreadable", path=str(self.path), error=str(e))
            return Cart()

    def save(self, cart: Cart) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(cart.model_dump_json(), encoding="utf-8")
        tmp.replace(self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
