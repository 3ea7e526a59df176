from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from sessiongate.service.routing import (
    ADMIN_DENIED_DESTINATION,
    ADMIN_ROUTES,
    GENERAL_ROUTES,
    PUBLIC_DESTINATION,
    RoleRouter,
)
from sessiongate.storage.flags import otp_flag_key


@dataclass(frozen=True)
class RealmConfig:
    """One portal served by the session controller.

    Realms share all controller logic; they differ only in routing and in the
    names under which their persisted flag is stored.
    """

    name: str
    routes: Mapping[str, str]
    default_destination: str = PUBLIC_DESTINATION
    storage_prefix: str = "auth"
    login_route: str = "/login"
    otp_route: str = "/otp-verification"
    router: RoleRouter = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "router", RoleRouter(self.routes, self.default_destination))

    def route_for(self, role: Optional[str]) -> str:
        return self.router.route_for(role)

    def flag_key(self, scope: Optional[str] = None) -> str:
        return otp_flag_key(self.name, prefix=self.storage_prefix, scope=scope)


GENERAL_REALM = RealmConfig(name="general", routes=GENERAL_ROUTES)

ADMIN_REALM = RealmConfig(
    name="admin",
    routes=ADMIN_ROUTES,
    default_destination=ADMIN_DENIED_DESTINATION,
    login_route="/admin/login",
    otp_route="/admin/otp-verification",
)

REALMS: Dict[str, RealmConfig] = {
    GENERAL_REALM.name: GENERAL_REALM,
    ADMIN_REALM.name: ADMIN_REALM,
}


def get_realm(name: str) -> Optional[RealmConfig]:
    return REALMS.get((name or "").strip().lower())
