"""Header-based caller identification.

An upstream gateway authenticates users and forwards their role in
``X-User-Role`` and their id in ``X-User-Id``.
"""

from dataclasses import dataclass
from enum import Enum

from fastapi import Header, HTTPException


class Role(Enum):
    BUYER = "buyer"
    SUPPORT = "support"
    ADMIN = "admin"
    AGENT = "agent"


@dataclass(frozen=True)
class Principal:
    role: str
    user_id: str | None

    @property
    def is_buyer(self) -> bool:
        return self.role == Role.BUYER.value


def require_role(*roles: str):
    """Dependency allowing only ``roles``; no roles means any known role."""
    allowed = set(roles) or {r.value for r in Role}

    def _dependency(
        x_user_role: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ) -> Principal:
        role = (x_user_role or "").strip().lower()
        if role not in {r.value for r in Role}:
            raise HTTPException(status_code=401, detail="Missing or unknown X-User-Role")
        if role not in allowed:
            raise HTTPException(status_code=403, detail=f"Role {role} may not perform this action")
        if role == Role.BUYER.value and not x_user_id:
            raise HTTPException(status_code=401, detail="X-User-Id is required for buyers")
        return Principal(role=role, user_id=x_user_id)

    return _dependency
