from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Stage(str, Enum):
    """Authentication stage of a controller session."""

    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_VERIFIED = "credentials_verified"
    OTP_VERIFIED = "otp_verified"


class EventKind(str, Enum):
    """External identity-provider session events."""

    INITIAL_SESSION = "initial_session"
    SIGNED_IN = "signed_in"
    TOKEN_REFRESHED = "token_refreshed"
    SIGNED_OUT = "signed_out"
    USER_DELETED = "user_deleted"


@dataclass(frozen=True)
class Credentials:
    """Result of a successful identifier/secret check."""

    principal_id: str
    phone: Optional[str] = None
    # Provider session token of this login; each browser client holds its own
    access_token: Optional[str] = None


@dataclass(frozen=True)
class ProfileRecord:
    """Raw profile row as returned by a profile store."""

    principal_id: str
    role: Optional[str] = None
    phone: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Profile:
    """Profile snapshot with the routing role already normalized."""

    principal_id: str
    raw_role: Optional[str]
    normalized_role: str
    phone: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OTPChallenge:
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    attempts_remaining: int
    resend_available_at: datetime
    verified: bool = False
    masked_phone: Optional[str] = None
    # "expired" or "exhausted" once the challenge stops accepting codes
    closed_reason: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.closed_reason is None and not self.verified

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def seconds_until_expiry(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))

    def seconds_until_resend(self, now: datetime) -> int:
        remaining = (self.resend_available_at - now).total_seconds()
        if remaining <= 0:
            return 0
        return int(remaining) + (1 if remaining % 1 else 0)


@dataclass
class SessionState:
    principal_id: Optional[str] = None
    stage: Stage = Stage.UNAUTHENTICATED
    phone: Optional[str] = None
    profile: Optional[Profile] = None
    access_token: Optional[str] = None


@dataclass(frozen=True)
class SessionEvent:
    """An identity-provider notification about the browser's session.

    ``principal_id`` is ``None`` when the provider reports no session at all.
    Events carry no contact phone: the phone is always read from the
    credential or profile store.
    """

    kind: EventKind
    principal_id: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    principal_id: str
    phone: str
    masked_phone: str
    challenge_issued: bool
    access_token: Optional[str] = None
