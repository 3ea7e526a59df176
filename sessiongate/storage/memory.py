from __future__ import annotations

import asyncio
import json
import secrets
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sessiongate.logging import get_logger
from sessiongate.storage.models import Credentials, ProfileRecord


class MemoryStore:
    """In-process credential and profile store for development and tests.

    Implements both the credential-store and the profile-store interfaces.
    Passwords are kept as argon2id hashes. When ``fs_root`` is given the state
    is mirrored to ``<fs_root>/state/principals.json`` so a dev server keeps
    its seeded accounts across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.identifiers: Dict[str, str] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.phones: Dict[str, Optional[str]] = {}
        self.profiles: Dict[str, ProfileRecord] = {}
        # Live session tokens issued by verify, token -> principal id
        self.sessions: Dict[str, str] = {}
        self.invalidations: List[str] = []
        self._data_lock = threading.RLock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ----------------------------------------------------------- management

    def create_principal(
        self,
        identifier: str,
        password: str,
        *,
        phone: Optional[str] = None,
        role: Optional[str] = None,
        full_name: Optional[str] = None,
        with_profile: bool = True,
        principal_id: Optional[str] = None,
    ) -> str:
        key = identifier.strip().lower()
        if not key or not password:
            raise ValueError("identifier and password are required")
        with self._data_lock:
            if key in self.identifiers:
                raise ValueError(f"principal already exists: {key}")
            principal_id = principal_id or str(uuid.uuid4())
            self.identifiers[key] = principal_id
            self.credentials[principal_id] = (self._pwd_hasher.hash(password), "argon2id")
            self.phones[principal_id] = phone
            if with_profile:
                self.profiles[principal_id] = ProfileRecord(
                    principal_id=principal_id,
                    role=role,
                    phone=phone,
                    full_name=full_name,
                    email=key if "@" in key else None,
                )
            self._persist_state()
        self.logger.info("principal_created", principal_id=principal_id, role=role)
        return principal_id

    def lookup(self, identifier: str) -> Optional[str]:
        return self.identifiers.get(identifier.strip().lower())

    def set_role(self, principal_id: str, role: Optional[str]) -> Optional[ProfileRecord]:
        with self._data_lock:
            record = self.profiles.get(principal_id)
            if record is None:
                return None
            updated = ProfileRecord(
                principal_id=record.principal_id,
                role=role,
                phone=record.phone,
                full_name=record.full_name,
                email=record.email,
                extra=dict(record.extra),
            )
            self.profiles[principal_id] = updated
            self._persist_state()
            return updated

    # -------------------------------------------------------- store protocol

    def _verify_password(self, principal_id: str, password: str) -> bool:
        record = self.credentials.get(principal_id)
        if not record:
            self.logger.warning("password_record_missing", principal_id=principal_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", principal_id=principal_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", principal_id=principal_id)
            return False

    async def verify(self, identifier: str, secret: str) -> Optional[Credentials]:
        principal_id = self.lookup(identifier)
        if principal_id is None:
            return None
        # argon2 verification is CPU-bound
        ok = await asyncio.to_thread(self._verify_password, principal_id, secret)
        if not ok:
            return None
        token = secrets.token_urlsafe(32)
        with self._data_lock:
            self.sessions[token] = principal_id
        return Credentials(
            principal_id=principal_id,
            phone=self.phones.get(principal_id),
            access_token=token,
        )

    async def session_for(self, access_token: str) -> Optional[Credentials]:
        with self._data_lock:
            principal_id = self.sessions.get(access_token)
        if principal_id is None:
            return None
        return Credentials(
            principal_id=principal_id,
            phone=self.phones.get(principal_id),
            access_token=access_token,
        )

    async def invalidate(self, principal_id: str, access_token: Optional[str] = None) -> None:
        """Revoke one session token; other sessions of the principal stay valid."""
        with self._data_lock:
            if access_token is not None and self.sessions.get(access_token) == principal_id:
                del self.sessions[access_token]
            self.invalidations.append(principal_id)

    async def get(self, principal_id: str) -> Optional[ProfileRecord]:
        return self.profiles.get(principal_id)

    # ------------------------------------------------------------ persistence

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "principals.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "principals": [
                {
                    "principal_id": principal_id,
                    "identifier": identifier,
                    "password_hash": self.credentials[principal_id][0],
                    "password_algo": self.credentials[principal_id][1],
                    "phone": self.phones.get(principal_id),
                }
                for identifier, principal_id in self.identifiers.items()
            ],
            "profiles": [
                {
                    "principal_id": record.principal_id,
                    "role": record.role,
                    "phone": record.phone,
                    "full_name": record.full_name,
                    "email": record.email,
                    "extra": record.extra,
                }
                for record in self.profiles.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for entry in data.get("principals", []):
            principal_id = entry["principal_id"]
            self.identifiers[entry["identifier"]] = principal_id
            self.credentials[principal_id] = (
                entry["password_hash"],
                entry.get("password_algo", ""),
            )
            self.phones[principal_id] = entry.get("phone")
        for entry in data.get("profiles", []):
            self.profiles[entry["principal_id"]] = ProfileRecord(
                principal_id=entry["principal_id"],
                role=entry.get("role"),
                phone=entry.get("phone"),
                full_name=entry.get("full_name"),
                email=entry.get("email"),
                extra=entry.get("extra") or {},
            )
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.identifiers),
            profiles=len(self.profiles),
        )
        return True
