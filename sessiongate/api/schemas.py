from __future__ import annotations

import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessiongate.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "invalid_credentials",
    "network_error",
    "profile_missing",
    "session_expired",
    "invalid_code",
    "expired",
    "attempts_exhausted",
    "resend_not_yet_allowed",
    "phone_missing",
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width characters and apply NFKC normalization."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoginRequest(BaseModel):
    identifier: str = Field(..., max_length=254, description="Email or username")
    password: str = Field(..., max_length=1024)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class OTPVerifyRequest(BaseModel):
    code: str = Field(..., max_length=32)


class SessionEventRequest(BaseModel):
    kind: Literal[
        "initial_session", "signed_in", "token_refreshed", "signed_out", "user_deleted"
    ]
    access_token: Optional[str] = Field(
        None,
        max_length=4096,
        description="Provider session token; required for every kind except sign-out events",
    )


class LoginResponse(BaseModel):
    principal_id: str
    masked_phone: str
    stage: str
    challenge_issued: bool
    otp_route: str
    access_token: Optional[str] = None


class ChallengeResponse(BaseModel):
    state: str
    masked_phone: Optional[str] = None
    attempts_remaining: int
    expires_in_seconds: int
    resend_in_seconds: int
    expires_at: str


class ProfileResponse(BaseModel):
    principal_id: str
    role: str
    raw_role: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None


class VerifyResponse(BaseModel):
    stage: str
    profile: ProfileResponse
    destination: str


class AccessResponse(BaseModel):
    allowed: bool
    reason: str
    redirect: Optional[str] = None
