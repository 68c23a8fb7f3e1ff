"""The authenticated caller, as asserted by the identity provider."""

from __future__ import annotations

from dataclasses import dataclass

from service_clearinghouse.domain.enums import Role
from service_clearinghouse.domain.exceptions import ForbiddenError

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    subject_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def require_role(self, *roles: Role, message: str | None = None) -> None:
        """Raise ForbiddenError unless the actor holds one of ``roles``."""
        if self.role not in roles:
            allowed = " or ".join(r.value for r in roles)
            raise ForbiddenError(message or f"This action requires the {allowed} role")
