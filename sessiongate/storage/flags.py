from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from sessiongate.logging import get_logger

logger = get_logger(__name__)

OTP_FLAG_KEY_TEMPLATE = "{prefix}.otpVerified.{realm}"


def otp_flag_key(realm: str, *, prefix: str = "auth", scope: Optional[str] = None) -> str:
    """Key of the persisted "OTP already verified" flag for a realm.

    ``scope`` namespaces the key per browser client when one process serves
    many clients; a standalone controller uses the bare key.
    """
    key = OTP_FLAG_KEY_TEMPLATE.format(prefix=prefix, realm=realm)
    if scope:
        return f"{scope}:{key}"
    return key


class FlagStore(Protocol):
    """Boolean key-value persistence with last-writer-wins semantics."""

    async def get_flag(self, key: str) -> bool: ...

    async def set_flag(self, key: str, value: bool) -> None: ...

    async def delete_flag(self, key: str) -> None: ...


class MemoryFlagStore:
    """Process-local flag store; flags survive controller restarts only."""

    def __init__(self) -> None:
        self._flags: Dict[str, bool] = {}
        self._lock = threading.Lock()

    async def get_flag(self, key: str) -> bool:
        with self._lock:
            return self._flags.get(key, False)

    async def set_flag(self, key: str, value: bool) -> None:
        with self._lock:
            if value:
                self._flags[key] = True
            else:
                self._flags.pop(key, None)

    async def delete_flag(self, key: str) -> None:
        with self._lock:
            self._flags.pop(key, None)


class FileFlagStore:
    """JSON file flag store.

    Writes go to a temp file in the same directory and are renamed over the
    target, so a reader sees either the old or the new document, never a
    partial one.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, bool]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            logger.error("flag_store_read_failed", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            logger.warning("flag_store_invalid_document", path=str(self.path))
            return {}
        return {str(k): bool(v) for k, v in data.items() if v}

    def _write(self, data: Dict[str, bool]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(data, handle, sort_keys=True)
            os.replace(tmp_path, self.path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def _get(self, key: str) -> bool:
        with self._lock:
            return self._read().get(key, False)

    def _set(self, key: str, value: bool) -> None:
        with self._lock:
            data = self._read()
            if value:
                data[key] = True
            else:
                data.pop(key, None)
            self._write(data)

    async def get_flag(self, key: str) -> bool:
        return await asyncio.to_thread(self._get, key)

    async def set_flag(self, key: str, value: bool) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def delete_flag(self, key: str) -> None:
        await asyncio.to_thread(self._set, key, False)


__all__ = [
    "FlagStore",
    "FileFlagStore",
    "MemoryFlagStore",
    "otp_flag_key",
]
