from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sessiongate.service.profiles import normalize_role
from sessiongate.service.realms import RealmConfig
from sessiongate.storage.models import SessionState, Stage

BYPASS_ROLES = frozenset({"admin", "super_admin", "director"})

PermissionCheck = Callable[[str], bool]


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    redirect: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "redirect": self.redirect}


def check_access(
    state: SessionState,
    realm: RealmConfig,
    *,
    required_role: Optional[str] = None,
    permission: Optional[str] = None,
    has_permission: Optional[PermissionCheck] = None,
) -> AccessDecision:
    """Decide whether a session may open a protected page of ``realm``."""
    if not state.principal_id:
        return AccessDecision(False, "auth_required", realm.login_route)
    if state.stage != Stage.OTP_VERIFIED:
        return AccessDecision(False, "otp_required", realm.otp_route)
    profile = state.profile
    if profile is None:
        return AccessDecision(False, "profile_missing", realm.login_route)

    role = profile.normalized_role
    if role in BYPASS_ROLES:
        return AccessDecision(True, "admin_bypass")
    if required_role and role != normalize_role(required_role):
        return AccessDecision(False, "role_mismatch", realm.route_for(role))
    if permission:
        if has_permission is None or not has_permission(permission):
            return AccessDecision(False, "permission_denied", realm.route_for(role))
    return AccessDecision(True, "allowed")


def profile_permissions(state: SessionState) -> PermissionCheck:
    """Permission check backed by the ``permissions`` list of the profile row."""
    granted = set()
    if state.profile is not None:
        raw = state.profile.extra.get("permissions") or []
        if isinstance(raw, (list, tuple, set)):
            granted = {str(item) for item in raw}
    return granted.__contains__
