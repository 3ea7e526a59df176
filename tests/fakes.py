"""Deterministic collaborators shared by the controller tests."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sessiongate.service.errors import DeliveryFailed
from sessiongate.storage.models import Credentials, ProfileRecord

VALID_CODE = "123456"
PHONE = "+237675321739"


class ManualClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeChannel:
    """Accepts ``VALID_CODE``; can fail deliveries or hold verify calls open."""

    def __init__(self, valid_code: str = VALID_CODE) -> None:
        self.valid_code = valid_code
        self.deliveries: List[Tuple[str, str]] = []
        self.verifications: List[Tuple[str, str]] = []
        self.fail_delivery = False
        self.raise_on_verify: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.verify_started: Optional[asyncio.Event] = None

    def hold_verify(self) -> None:
        self.gate = asyncio.Event()
        self.verify_started = asyncio.Event()

    async def deliver(self, principal_id: str, phone: str) -> None:
        if self.fail_delivery:
            raise DeliveryFailed("provider rejected the message")
        self.deliveries.append((principal_id, phone))

    async def verify(self, principal_id: str, code: str) -> bool:
        self.verifications.append((principal_id, code))
        if self.verify_started is not None:
            self.verify_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_on_verify is not None:
            raise self.raise_on_verify
        return code == self.valid_code


class FakeCredentialStore:
    """Issues one token per successful login; tokens resolve through ``session_for``."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Tuple[str, Credentials]] = {}
        self.sessions: Dict[str, str] = {}
        self.issued = 0
        self.invalidated: List[str] = []
        self.fail_invalidate = False
        self.error: Optional[Exception] = None
        self.delay: float = 0.0

    def add(self, identifier: str, secret: str, principal_id: str, phone: Optional[str] = PHONE) -> None:
        self.accounts[identifier] = (secret, Credentials(principal_id=principal_id, phone=phone))

    async def verify(self, identifier: str, secret: str) -> Optional[Credentials]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        entry = self.accounts.get(identifier)
        if entry is None or entry[0] != secret:
            return None
        self.issued += 1
        token = f"tok-{entry[1].principal_id}-{self.issued}"
        self.sessions[token] = entry[1].principal_id
        return replace(entry[1], access_token=token)

    async def session_for(self, access_token: str) -> Optional[Credentials]:
        if self.error is not None:
            raise self.error
        principal_id = self.sessions.get(access_token)
        if principal_id is None:
            return None
        phone = next(
            (c.phone for _, c in self.accounts.values() if c.principal_id == principal_id),
            None,
        )
        return Credentials(principal_id=principal_id, phone=phone, access_token=access_token)

    async def invalidate(self, principal_id: str, access_token: Optional[str] = None) -> None:
        if self.fail_invalidate:
            raise ConnectionError("identity provider unreachable")
        self.invalidated.append(principal_id)
        if access_token is not None:
            self.sessions.pop(access_token, None)


class FakeProfileStore:
    def __init__(self) -> None:
        self.records: Dict[str, ProfileRecord] = {}
        self.error: Optional[Exception] = None
        self.calls = 0

    def add(self, principal_id: str, role: Optional[str], phone: Optional[str] = PHONE, **extra) -> None:
        self.records[principal_id] = ProfileRecord(
            principal_id=principal_id,
            role=role,
            phone=phone,
            full_name=extra.pop("full_name", None),
            email=extra.pop("email", None),
            extra=extra,
        )

    async def get(self, principal_id: str) -> Optional[ProfileRecord]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.records.get(principal_id)
