from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from sessiongate.service.profiles import normalize_role

ADMIN_DESTINATION = "/admin/dashboard"
STUDENT_DESTINATION = "/student/dashboard"
SHAREHOLDER_DESTINATION = "/shareholder/dashboard"
APPLICANT_DESTINATION = "/applicant-dashboard"
PUBLIC_DESTINATION = "/"
ADMIN_DENIED_DESTINATION = "/admin/access-denied"

ADMIN_ROLES = frozenset({"admin", "super_admin", "director", "manager"})


def _expand(groups: Mapping[str, Iterable[str]]) -> dict[str, str]:
    table: dict[str, str] = {}
    for destination, roles in groups.items():
        for role in roles:
            table[normalize_role(role)] = destination
    return table


GENERAL_ROUTES = MappingProxyType(
    _expand(
        {
            ADMIN_DESTINATION: ADMIN_ROLES,
            STUDENT_DESTINATION: ("student",),
            SHAREHOLDER_DESTINATION: ("shareholder",),
            APPLICANT_DESTINATION: ("applicant",),
        }
    )
)

ADMIN_ROUTES = MappingProxyType(_expand({ADMIN_DESTINATION: ADMIN_ROLES}))


class RoleRouter:
    """Total mapping from a role to a destination route.

    Unknown roles, including ``"none"``, fall back to ``default``; lookups never
    raise.
    """

    def __init__(self, table: Mapping[str, str], default: str = PUBLIC_DESTINATION) -> None:
        self.table = MappingProxyType(
            {normalize_role(role): dest for role, dest in table.items()}
        )
        self.default = default

    def route_for(self, role: Optional[str]) -> str:
        return self.table.get(normalize_role(role), self.default)

    def __contains__(self, role: object) -> bool:
        return isinstance(role, str) and normalize_role(role) in self.table


_general_router = RoleRouter(GENERAL_ROUTES, PUBLIC_DESTINATION)


def route_for(role: Optional[str]) -> str:
    """Route a role through the general-portal table."""
    return _general_router.route_for(role)
