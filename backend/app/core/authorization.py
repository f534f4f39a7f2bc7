"""
Ownership and role checks shared by bookings and reviews
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID


class Role(str, Enum):
    USER = "user"
    PARTNER = "partner"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the auth layer"""
    id: UUID
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def is_owner_or_admin(actor: Actor, owner_id: Any) -> bool:
    if actor.is_admin:
        return True
    return str(actor.id) == str(owner_id)
