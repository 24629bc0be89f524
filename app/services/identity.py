"""Caller identity as asserted by the session proxy."""

from dataclasses import dataclass
from typing import Optional, Tuple

from app.fsm.states import UserRole


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    role: UserRole
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def split_name(self) -> Tuple[Optional[str], Optional[str]]:
        """(first, last) for gateway billing data."""
        if not self.name:
            return None, None
        parts = self.name.strip().split(None, 1)
        if len(parts) == 1:
            return parts[0], None
        return parts[0], parts[1]
