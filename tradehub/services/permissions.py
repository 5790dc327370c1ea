"""
Role model and per-operation role sets.

Role is the only authorization axis: every operation declares the set of roles
allowed to perform it and checks it once at its boundary.
"""
import enum
import uuid
from dataclasses import dataclass
from typing import FrozenSet, Optional

from ..errors import Forbidden, Unauthenticated


class Role(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SALES = "sales"
    OFFICE = "office"
    CLIENT = "client"


@dataclass(frozen=True)
class Principal:
    """The authenticated actor performing an operation."""
    id: uuid.UUID
    role: Role
    name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_user(cls, user) -> "Principal":
        return cls(id=user.id, role=Role(user.role), name=user.name, email=user.email)


# Per-operation role sets
ATTENDANCE_OVERSEERS: FrozenSet[Role] = frozenset({Role.ADMIN, Role.MANAGER, Role.OFFICE})
LEDGER_REQUESTERS: FrozenSet[Role] = frozenset({Role.CLIENT, Role.SALES})
LEDGER_UPLOADERS: FrozenSet[Role] = frozenset({Role.ADMIN, Role.MANAGER, Role.OFFICE})
LEDGER_CONFIRMERS: FrozenSet[Role] = frozenset({Role.CLIENT})
LEDGER_DELETERS: FrozenSet[Role] = frozenset({Role.ADMIN, Role.MANAGER})
LEDGER_OVERVIEW: FrozenSet[Role] = frozenset({Role.ADMIN, Role.MANAGER, Role.OFFICE})


def has_role(principal: Principal, roles: FrozenSet[Role]) -> bool:
    return principal.role in roles


def require_role(principal: Optional[Principal], roles: FrozenSet[Role], message: str = "Insufficient permissions") -> Principal:
    if principal is None:
        raise Unauthenticated()
    if not has_role(principal, roles):
        raise Forbidden(message)
    return principal


def can_access_ledger(principal: Principal, ledger) -> bool:
    """
    Row-level access to a single ledger request.
    - Client must be the ledger's client
    - Sales must be the requester
    - Office must be the requester or the client
    - Admin and manager see everything
    """
    if principal.role == Role.CLIENT:
        return ledger.client_id == principal.id
    if principal.role == Role.SALES:
        return ledger.requested_by == principal.id
    if principal.role == Role.OFFICE:
        return ledger.requested_by == principal.id or ledger.client_id == principal.id
    return True
