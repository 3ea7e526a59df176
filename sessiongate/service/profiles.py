from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from sessiongate.logging import get_logger
from sessiongate.storage.models import Profile, ProfileRecord

logger = get_logger(__name__)

NO_ROLE = "none"


class ProfileStore(Protocol):
    async def get(self, principal_id: str) -> Optional[ProfileRecord]: ...


def normalize_role(raw: Optional[str]) -> str:
    """Lower-case and trim a stored role; blank roles become ``"none"``.

    Idempotent: ``normalize_role(normalize_role(x)) == normalize_role(x)``.
    """
    normalized = str(raw or "").strip().lower()
    return normalized or NO_ROLE


class ProfileResolver:
    """Fetch a principal's profile and normalize its role."""

    def __init__(self, store: ProfileStore, *, timeout_seconds: float = 10.0) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def resolve(self, principal_id: str) -> Optional[Profile]:
        """Return the profile, or ``None`` when absent or unreadable.

        A missing profile is not an error at this level; the session
        controller decides whether it blocks authentication.
        """
        if not principal_id:
            return None
        try:
            record = await asyncio.wait_for(
                self.store.get(principal_id), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("profile_fetch_timeout", principal_id=principal_id)
            return None
        except Exception as exc:
            logger.error(
                "profile_fetch_failed",
                principal_id=principal_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if record is None:
            logger.warning("profile_not_found", principal_id=principal_id)
            return None
        return Profile(
            principal_id=record.principal_id or principal_id,
            raw_role=record.role,
            normalized_role=normalize_role(record.role),
            phone=record.phone,
            full_name=record.full_name,
            email=record.email,
            extra=dict(record.extra),
        )
