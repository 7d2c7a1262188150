"""Explicit session context handed to client-side components."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SessionContext:
    """Who the shopper is right now. A session without a token is a guest."""

    token: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    @classmethod
    def guest(cls) -> "SessionContext":
        return cls()

    def auth_headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}
