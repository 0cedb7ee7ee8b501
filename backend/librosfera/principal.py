"""
Acting principal passed explicitly to every orchestrator operation.

The upstream auth middleware authenticates the caller; the core trusts the
identity and role it supplies and only performs role checks.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import Forbidden, ValidationError


ROLE_CUSTOMER = "cliente"
ROLE_ADMIN = "administrador"
ROLE_ROOT = "root"

VALID_ROLES = (ROLE_CUSTOMER, ROLE_ADMIN, ROLE_ROOT)
ADMIN_ROLES = (ROLE_ADMIN, ROLE_ROOT)


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str

    def __post_init__(self):
        if not self.user_id:
            raise ValidationError("principal user_id required")
        if self.role not in VALID_ROLES:
            raise ValidationError(f"Invalid role: {self.role}. Must be one of {list(VALID_ROLES)}")

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_customer(self) -> bool:
        return self.role == ROLE_CUSTOMER

    def require_role(self, *roles: str) -> None:
        if self.role not in roles:
            raise Forbidden(
                "Permission denied",
                details={"required_roles": list(roles), "role": self.role},
            )

    def require_admin(self) -> None:
        self.require_role(*ADMIN_ROLES)
