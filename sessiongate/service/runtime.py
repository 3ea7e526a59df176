from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from sessiongate.config import FlagStoreKind, Settings, get_settings, reset_settings_cache
from sessiongate.logging import get_logger
from sessiongate.service.otp import OTPChallengeManager
from sessiongate.service.otp_channel import DevOTPChannel, HttpOTPChannel
from sessiongate.service.profiles import ProfileResolver
from sessiongate.service.realms import REALMS, RealmConfig
from sessiongate.service.session import SessionController
from sessiongate.storage.flags import FileFlagStore, FlagStore, MemoryFlagStore
from sessiongate.storage.memory import MemoryStore
from sessiongate.storage.redis_cache import RedisCache
from sessiongate.storage.remote import HttpCredentialStore, HttpProfileStore, RemoteClient

logger = get_logger(__name__)

CONTROLLER_SWEEP_INTERVAL_SECONDS = 60.0


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton collaborators and the per-client controller registry."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or get_settings()
        self._clock = clock or time.monotonic
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            flag_store=self.settings.flag_store.value,
            test_mode=self.settings.test_mode,
        )

        self.cache: Optional[RedisCache] = None
        self.flags: FlagStore = self._build_flag_store()

        self.remote: Optional[RemoteClient] = None
        self.profile_remote: Optional[RemoteClient] = None
        self.store: Optional[MemoryStore] = None
        timeout = self.settings.collaborator_timeout_seconds
        if self.settings.use_memory_store:
            # Test runs keep nothing on disk
            fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
            self.store = MemoryStore(fs_root=fs_root)
            self.credentials = self.store
            self.profile_store = self.store
            self.otp_channel = DevOTPChannel(code_length=self.settings.otp_code_length)
        else:
            if not self.settings.identity_base_url:
                raise RuntimeError(
                    "IDENTITY_BASE_URL is required unless USE_MEMORY_STORE=true"
                )
            self.remote = RemoteClient(
                self.settings.identity_base_url,
                self.settings.identity_api_key,
                timeout_seconds=timeout,
            )
            self.credentials = HttpCredentialStore(self.remote)
            self.profile_remote = self._remote_for(self.settings.resolved_profile_base_url)
            self.profile_store = HttpProfileStore(
                self.profile_remote,
                table=self.settings.profile_table,
                credentials=self.credentials,
            )
            self.otp_channel = HttpOTPChannel(
                self._remote_for(self.settings.resolved_otp_base_url),
                send_function=self.settings.otp_send_function,
                verify_function=self.settings.otp_verify_function,
            )

        self.profiles = ProfileResolver(self.profile_store, timeout_seconds=timeout)
        # Controller and time of its last use, per (realm, client)
        self._controllers: Dict[Tuple[str, str], Tuple[SessionController, float]] = {}
        self._controllers_lock = threading.Lock()
        self._last_sweep = self._clock()

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "remote",
            redis_enabled=self.cache is not None,
            realms=sorted(REALMS),
        )

    def _remote_for(self, base_url: Optional[str]) -> RemoteClient:
        assert self.remote is not None
        if not base_url or base_url.rstrip("/") == self.remote.base_url:
            return self.remote
        return RemoteClient(
            base_url,
            self.settings.identity_api_key,
            timeout_seconds=self.settings.collaborator_timeout_seconds,
        )

    def _build_challenge_manager(self) -> OTPChallengeManager:
        s = self.settings
        return OTPChallengeManager(
            self.otp_channel,
            ttl_seconds=s.otp_ttl_seconds,
            resend_cooldown_seconds=s.otp_resend_cooldown_seconds,
            max_attempts=s.otp_max_attempts,
            code_length=s.otp_code_length,
            timeout_seconds=s.collaborator_timeout_seconds,
        )

    def _build_flag_store(self) -> FlagStore:
        kind = self.settings.flag_store
        if kind == FlagStoreKind.MEMORY:
            return MemoryFlagStore()
        if kind == FlagStoreKind.FILE:
            path = Path(self.settings.shared_fs_root) / "state" / "otp_flags.json"
            return FileFlagStore(path)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
                return cache
            except Exception as exc:
                redis_error = exc
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for FLAG_STORE=redis; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-memory fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Persisted OTP flags are kept in process memory only.",
        )
        return MemoryFlagStore()

    def build_controller(self, realm: RealmConfig, client_id: Optional[str]) -> SessionController:
        """New controller with its own challenge manager; not registered."""
        return SessionController(
            realm,
            self.credentials,
            self._build_challenge_manager(),
            self.profiles,
            self.flags,
            scope=client_id,
            auto_issue_otp=self.settings.auto_issue_otp,
            timeout_seconds=self.settings.collaborator_timeout_seconds,
        )

    def _evict(self, now: float) -> None:
        """Drop idle controllers; at capacity also drop the least recently used tenth.

        Caller holds ``_controllers_lock``.
        """
        capacity = self.settings.max_controllers
        at_capacity = len(self._controllers) >= capacity
        if not at_capacity and now - self._last_sweep < CONTROLLER_SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        idle_limit = self.settings.controller_idle_seconds
        stale = [
            key for key, (_, last_used) in self._controllers.items()
            if now - last_used > idle_limit
        ]
        for key in stale:
            self._controllers.pop(key, None)
        evicted = len(stale)
        if len(self._controllers) >= capacity:
            by_last_use = sorted(self._controllers.items(), key=lambda item: item[1][1])
            evict_count = max(1, capacity // 10)
            for key, _ in by_last_use[:evict_count]:
                self._controllers.pop(key, None)
            evicted += min(evict_count, len(by_last_use))
        if evicted:
            logger.info(
                "controllers_evicted", evicted=evicted, remaining=len(self._controllers)
            )

    def controller_for(self, realm: RealmConfig, client_id: str) -> SessionController:
        """Controller owning the session of one browser client in one realm."""
        key = (realm.name, client_id)
        now = self._clock()
        with self._controllers_lock:
            entry = self._controllers.get(key)
            if entry is None:
                self._evict(now)
                controller = self.build_controller(realm, client_id)
            else:
                controller = entry[0]
            self._controllers[key] = (controller, now)
            return controller

    def existing_controller(
        self, realm: RealmConfig, client_id: Optional[str]
    ) -> Optional[SessionController]:
        """Registered controller of a client, or ``None``; never creates one."""
        if not client_id:
            return None
        key = (realm.name, client_id)
        with self._controllers_lock:
            entry = self._controllers.get(key)
            if entry is None:
                return None
            self._controllers[key] = (entry[0], self._clock())
            return entry[0]

    def drop_controller(self, realm: RealmConfig, client_id: str) -> None:
        with self._controllers_lock:
            self._controllers.pop((realm.name, client_id), None)

    @property
    def controller_count(self) -> int:
        return len(self._controllers)

    async def aclose(self) -> None:
        remotes = {id(r): r for r in (self.remote, self.profile_remote) if r is not None}
        channel_remote = getattr(self.otp_channel, "remote", None)
        if channel_remote is not None:
            remotes[id(channel_remote)] = channel_remote
        for remote in remotes.values():
            await remote.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
