"""Authenticated caller identity, as carried by a verified bearer token."""

from enum import Enum
from typing import Optional

from schemas.base import CamelModel


class ActorRole(str, Enum):
    USER = "user"
    VENDOR = "vendor"
    ADMIN = "admin"


class Actor(CamelModel):
    id: str
    role: ActorRole = ActorRole.USER
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    def owns(self, user_id: str) -> bool:
        return self.id == user_id
