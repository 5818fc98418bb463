# Overview: Actor context and role gates. Authentication happens upstream; this only authorizes.

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import Forbidden

SUPER_ADMIN = "super_admin"
ADMIN_GUDANG = "admin_gudang"
ADMIN_FINANCE = "admin_finance"
KASIR = "kasir"
DRIVER = "driver"
CUSTOMER = "customer"
SYSTEM = "system"

ROLES = frozenset({SUPER_ADMIN, ADMIN_GUDANG, ADMIN_FINANCE, KASIR, DRIVER, CUSTOMER})
STAFF_ROLES = frozenset({SUPER_ADMIN, ADMIN_GUDANG, ADMIN_FINANCE, KASIR})

# Operation -> roles allowed to run it
WAREHOUSE_ROLES = frozenset({SUPER_ADMIN, ADMIN_GUDANG})
INVOICE_ROLES = frozenset({SUPER_ADMIN, KASIR})
FINANCE_ROLES = frozenset({SUPER_ADMIN, ADMIN_FINANCE})
DELIVERY_ROLES = frozenset({SUPER_ADMIN, ADMIN_GUDANG, DRIVER})
CREDIT_ROLES = frozenset({SUPER_ADMIN, KASIR, ADMIN_FINANCE})
REPORT_ROLES = frozenset({SUPER_ADMIN, ADMIN_FINANCE})
CUSTOMER_ADMIN_ROLES = frozenset({SUPER_ADMIN, KASIR})


@dataclass(frozen=True)
class Actor:
    id: Optional[int]
    role: str

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def to_dict(self) -> dict:
        return {"id": self.id, "role": self.role}


# Used by background sweeps and CLI commands; bypasses role gates.
SYSTEM_ACTOR = Actor(id=None, role=SYSTEM)


def require_role(actor: Actor, roles: Iterable[str], action: str) -> None:
    """Raise Forbidden unless the actor's role is in `roles`. The system actor always passes."""
    if actor is None:
        raise Forbidden(f"An actor is required to {action}", {"action": action})
    if actor.is_system:
        return
    allowed = frozenset(roles)
    if actor.role not in allowed:
        raise Forbidden(
            f"Role {actor.role} may not {action}",
            {"action": action, "role": actor.role, "allowed_roles": sorted(allowed)},
        )
