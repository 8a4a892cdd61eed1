from __future__ import annotations

from dataclasses import dataclass

from .enums import Role
from .exceptions import AuthorizationError


@dataclass(frozen=True)
class BillingContext:
    """Caller identity passed explicitly into every billing call.

    Replaces reading the company id from ambient request/cookie state.
    """

    company_id: int
    user_id: int
    role: Role = Role.STAFF

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def require_admin(self, message: str = "You do not have permission for this action") -> None:
        if not self.is_admin:
            raise AuthorizationError(message)
