from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from sessiongate.logging import get_logger, sanitize_error_message
from sessiongate.service.errors import (
    AttemptsExhaustedError,
    ExpiredError,
    InvalidCodeError,
    NetworkError,
    ResendNotYetAllowedError,
    ServiceError,
    SessionExpiredError,
)
from sessiongate.service.phone import mask_phone
from sessiongate.storage.models import OTPChallenge

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

_NON_DIGITS = re.compile(r"\D")


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def sanitize_code(code: Optional[str]) -> str:
    return _NON_DIGITS.sub("", code or "")


class OTPChannel(Protocol):
    async def deliver(self, principal_id: str, phone: str) -> None: ...

    async def verify(self, principal_id: str, code: str) -> bool: ...


class OTPChallengeManager:
    """Owns the lifecycle of OTP challenges: issue, verify, expire and resend.

    The channel only generates, sends and checks codes. Expiry, the resend
    cooldown and the attempt budget are tracked here against stored
    timestamps, which stay authoritative regardless of any countdown a caller
    displays.

    At most one challenge exists per principal. A challenge that expires or
    runs out of attempts is kept as a closed record so later verify calls keep
    reporting why it closed, until ``reissue`` replaces it or ``discard``
    removes it.
    """

    def __init__(
        self,
        channel: OTPChannel,
        *,
        ttl_seconds: int = 300,
        resend_cooldown_seconds: int = 60,
        max_attempts: int = 5,
        code_length: int = 6,
        timeout_seconds: float = 10.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.channel = channel
        self.ttl = timedelta(seconds=ttl_seconds)
        self.resend_cooldown = timedelta(seconds=resend_cooldown_seconds)
        self.max_attempts = max_attempts
        self.code_length = code_length
        self.timeout_seconds = timeout_seconds
        self._clock: Clock = clock or utc_now
        self._challenges: Dict[str, OTPChallenge] = {}
        # Bumped on every issue/discard so results of an in-flight channel
        # call can be recognised as stale once it returns.
        self._generations: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def _bump(self, principal_id: str) -> int:
        generation = self._generations.get(principal_id, 0) + 1
        self._generations[principal_id] = generation
        return generation

    def get(self, principal_id: str) -> Optional[OTPChallenge]:
        return self._challenges.get(principal_id)

    def discard(self, principal_id: str) -> None:
        """Drop the principal's challenge; safe to call while a verify is in flight."""
        if self._challenges.pop(principal_id, None) is not None:
            logger.info("otp_challenge_discarded", principal_id=principal_id)
        self._bump(principal_id)

    def status(self, principal_id: str) -> Optional[Dict[str, Any]]:
        """Display view of the challenge; reads without locking."""
        challenge = self._challenges.get(principal_id)
        if challenge is None:
            return None
        now = self._now()
        if challenge.verified:
            state = "verified"
        elif challenge.closed_reason:
            state = challenge.closed_reason
        elif challenge.is_expired(now):
            state = "expired"
        else:
            state = "pending"
        return {
            "state": state,
            "attempts_remaining": challenge.attempts_remaining,
            "expires_in_seconds": challenge.seconds_until_expiry(now),
            "resend_in_seconds": challenge.seconds_until_resend(now),
            "expires_at": challenge.expires_at.isoformat(),
            "masked_phone": challenge.masked_phone,
        }

    async def _call_channel(
        self, action: str, principal_id: str, call: Awaitable[T]
    ) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except ServiceError:
            raise
        except asyncio.TimeoutError as exc:
            logger.warning(
                "otp_channel_timeout",
                action=action,
                principal_id=principal_id,
                timeout_seconds=self.timeout_seconds,
            )
            raise NetworkError(
                "The verification service did not respond in time. Please try again.",
                detail={"reason": "timeout", "action": action},
            ) from exc
        except Exception as exc:
            logger.error(
                "otp_channel_failed",
                action=action,
                principal_id=principal_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            reason = "delivery_failed" if action == "deliver" else "verification_failed"
            raise NetworkError(detail={"reason": reason, "action": action}) from exc

    async def issue(self, principal_id: str, phone: str) -> OTPChallenge:
        """Deliver a fresh code and open a new challenge, replacing any previous one."""
        async with self._lock:
            return await self._issue(principal_id, phone)

    async def _issue(self, principal_id: str, phone: str) -> OTPChallenge:
        # The previous challenge is dead as soon as a new code is requested,
        # whether or not the new delivery succeeds.
        self._challenges.pop(principal_id, None)
        generation = self._bump(principal_id)
        await self._call_channel(
            "deliver", principal_id, self.channel.deliver(principal_id, phone)
        )
        if self._generations.get(principal_id) != generation:
            logger.info("otp_issue_discarded_stale", principal_id=principal_id)
            raise SessionExpiredError()
        now = self._now()
        challenge = OTPChallenge(
            principal_id=principal_id,
            issued_at=now,
            expires_at=now + self.ttl,
            attempts_remaining=self.max_attempts,
            resend_available_at=now + self.resend_cooldown,
            masked_phone=mask_phone(phone),
        )
        self._challenges[principal_id] = challenge
        logger.info(
            "otp_challenge_issued",
            principal_id=principal_id,
            masked_phone=challenge.masked_phone,
            expires_at=challenge.expires_at.isoformat(),
        )
        return challenge

    async def reissue(self, principal_id: str, phone: str) -> OTPChallenge:
        """Resend a code once the cooldown of the current challenge has passed."""
        async with self._lock:
            existing = self._challenges.get(principal_id)
            now = self._now()
            if existing is not None and now < existing.resend_available_at:
                retry_after = existing.seconds_until_resend(now)
                logger.info(
                    "otp_resend_blocked",
                    principal_id=principal_id,
                    retry_after_seconds=retry_after,
                )
                raise ResendNotYetAllowedError(
                    f"Please wait {retry_after} seconds before requesting a new code.",
                    detail={"retry_after_seconds": retry_after},
                )
            return await self._issue(principal_id, phone)

    def _detail(self, challenge: OTPChallenge, **extra: Any) -> Dict[str, Any]:
        return {"attempts_remaining": challenge.attempts_remaining, **extra}

    async def verify(self, principal_id: str, code: str) -> OTPChallenge:
        """Check a submitted code against the principal's challenge.

        Raises:
            SessionExpiredError: no challenge exists (or it was replaced mid-call)
            ExpiredError: the challenge is past ``expires_at``
            AttemptsExhaustedError: the attempt budget is spent
            InvalidCodeError: wrong or malformed code; ``detail`` carries
                ``attempts_remaining``
            NetworkError: the channel could not be reached
        """
        async with self._lock:
            challenge = self._challenges.get(principal_id)
            if challenge is None:
                raise SessionExpiredError(
                    "No active verification code. Please request a new code."
                )
            if challenge.verified:
                return challenge

            now = self._now()
            if challenge.closed_reason == "expired" or challenge.is_expired(now):
                if challenge.closed_reason is None:
                    challenge.closed_reason = "expired"
                    logger.info("otp_challenge_expired", principal_id=principal_id)
                raise ExpiredError(detail=self._detail(challenge))
            if challenge.closed_reason == "exhausted" or challenge.attempts_remaining <= 0:
                challenge.closed_reason = "exhausted"
                raise AttemptsExhaustedError(detail=self._detail(challenge))

            sanitized = sanitize_code(code)
            if len(sanitized) != self.code_length:
                raise InvalidCodeError(
                    f"Enter the {self.code_length}-digit code.",
                    detail=self._detail(challenge, reason="malformed"),
                )

            generation = self._generations.get(principal_id)
            matched = await self._call_channel(
                "verify", principal_id, self.channel.verify(principal_id, sanitized)
            )
            if (
                self._challenges.get(principal_id) is not challenge
                or self._generations.get(principal_id) != generation
            ):
                logger.info("otp_verify_discarded_stale", principal_id=principal_id)
                raise SessionExpiredError()

            if not matched:
                challenge.attempts_remaining = max(0, challenge.attempts_remaining - 1)
                if challenge.attempts_remaining == 0:
                    challenge.closed_reason = "exhausted"
                    logger.warning("otp_attempts_exhausted", principal_id=principal_id)
                    raise AttemptsExhaustedError(detail=self._detail(challenge))
                logger.info(
                    "otp_code_rejected",
                    principal_id=principal_id,
                    attempts_remaining=challenge.attempts_remaining,
                )
                raise InvalidCodeError(
                    f"Invalid code. {challenge.attempts_remaining} attempts left.",
                    detail=self._detail(challenge),
                )

            challenge.verified = True
            logger.info("otp_verified", principal_id=principal_id)
            return challenge
