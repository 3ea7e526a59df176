from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for controller errors surfaced to callers.

    Each subclass carries a stable ``error_code`` that callers (and tests) match
    on, an HTTP ``status_code`` used by the API layer, a short human message and
    an optional ``detail`` dict with data the caller may re-render, such as the
    remaining OTP attempts.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthError(ServiceError):
    """Failure of a credential or session operation."""


class OTPError(AuthError):
    """Failure of an OTP challenge operation."""


class InvalidCredentialsError(AuthError):
    """Identifier/secret pair rejected (401)."""
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid login credentials."


class PhoneMissingError(AuthError):
    """No usable contact phone for the second factor (422)."""
    status_code = 422
    error_code = "phone_missing"
    default_message = "No phone number linked to this account. Please contact support."


class NetworkError(AuthError):
    """Transient collaborator failure; the caller may retry (503)."""
    status_code = 503
    error_code = "network_error"
    default_message = "The authentication service is unreachable. Please try again."


class ProfileMissingError(AuthError):
    """Verified principal has no profile record; needs operator action (403)."""
    status_code = 403
    error_code = "profile_missing"
    default_message = (
        "We could not find a user profile associated with your account. "
        "Please contact support."
    )


class SessionExpiredError(OTPError):
    """No active principal or challenge for an OTP operation (401)."""
    status_code = 401
    error_code = "session_expired"
    default_message = "Session expired. Please login again."


class InvalidCodeError(OTPError):
    """Submitted code did not match (400)."""
    status_code = 400
    error_code = "invalid_code"
    default_message = "Invalid verification code."


class ExpiredError(OTPError):
    """Challenge is past its expiry; a resend is required (410)."""
    status_code = 410
    error_code = "expired"
    default_message = "Verification code expired. Please request a new code."


class AttemptsExhaustedError(OTPError):
    """Attempt budget spent; a resend is required (429)."""
    status_code = 429
    error_code = "attempts_exhausted"
    default_message = "Max attempts reached. Please resend code."


class ResendNotYetAllowedError(OTPError):
    """Resend cooldown still running (429)."""
    status_code = 429
    error_code = "resend_not_yet_allowed"
    default_message = "Please wait before requesting a new code."


class DeliveryFailed(Exception):
    """Raised by OTP channels when a code could not be handed to the provider."""


__all__ = [
    "ServiceError",
    "AuthError",
    "OTPError",
    "InvalidCredentialsError",
    "PhoneMissingError",
    "NetworkError",
    "ProfileMissingError",
    "SessionExpiredError",
    "InvalidCodeError",
    "ExpiredError",
    "AttemptsExhaustedError",
    "ResendNotYetAllowedError",
    "DeliveryFailed",
]
