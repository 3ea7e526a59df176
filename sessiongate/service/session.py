from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from sessiongate.logging import get_logger, sanitize_error_message
from sessiongate.service.errors import (
    InvalidCredentialsError,
    NetworkError,
    PhoneMissingError,
    ProfileMissingError,
    ServiceError,
    SessionExpiredError,
)
from sessiongate.service.otp import OTPChallengeManager
from sessiongate.service.phone import mask_phone, normalize_phone
from sessiongate.service.profiles import ProfileResolver
from sessiongate.service.realms import RealmConfig
from sessiongate.storage.flags import FlagStore
from sessiongate.storage.models import (
    Credentials,
    EventKind,
    LoginResult,
    OTPChallenge,
    Profile,
    SessionEvent,
    SessionState,
    Stage,
)

logger = get_logger(__name__)

T = TypeVar("T")

_CLEARING_EVENTS = (EventKind.SIGNED_OUT, EventKind.USER_DELETED)

StageListener = Callable[[Stage, Stage, Dict[str, Any]], None]


class CredentialStore(Protocol):
    async def verify(self, identifier: str, secret: str) -> Optional[Credentials]: ...

    async def session_for(self, access_token: str) -> Optional[Credentials]: ...

    async def invalidate(
        self, principal_id: str, access_token: Optional[str] = None
    ) -> None: ...


class SessionController:
    """Two-factor session state machine for one realm and one browser client.

    Stages move unauthenticated -> credentials_verified -> otp_verified. Logout
    and external sign-out events clear the session from any stage.

    State-changing operations are serialized by ``_op_lock``. ``logout`` and
    fatal external events skip that lock: they bump ``_epoch`` and clear state
    at once, and every operation re-checks the epoch and principal after each
    awaited collaborator call so late results are dropped instead of applied.
    """

    def __init__(
        self,
        realm: RealmConfig,
        credentials: CredentialStore,
        otp: OTPChallengeManager,
        profiles: ProfileResolver,
        flags: FlagStore,
        *,
        scope: Optional[str] = None,
        auto_issue_otp: bool = True,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.realm = realm
        self.credentials = credentials
        self.otp = otp
        self.profiles = profiles
        self.flags = flags
        self.scope = scope
        self.auto_issue_otp = auto_issue_otp
        self.timeout_seconds = timeout_seconds
        self.state = SessionState()
        self._epoch = 0
        self._op_lock = asyncio.Lock()
        self._listeners: List[StageListener] = []
        self.logger = logger.bind(realm=realm.name)

    # ------------------------------------------------------------------ views

    def flag_key_for(self, principal_id: Optional[str]) -> str:
        """Persisted flag key of ``principal_id`` on this client.

        The principal is part of the key, so a flag left behind by one account
        never lets another account skip the OTP step on the same client.
        """
        scope = ":".join(part for part in (self.scope, principal_id) if part)
        return self.realm.flag_key(scope or None)

    @property
    def flag_key(self) -> str:
        return self.flag_key_for(self.state.principal_id)

    def current_stage(self) -> Stage:
        return self.state.stage

    def destination(self) -> str:
        profile = self.state.profile
        if profile is None:
            return self.realm.default_destination
        return self.realm.route_for(profile.normalized_role)

    def challenge_status(self) -> Optional[Dict[str, Any]]:
        principal_id = self.state.principal_id
        if principal_id is None:
            return None
        return self.otp.status(principal_id)

    def snapshot(self) -> Dict[str, Any]:
        profile = self.state.profile
        return {
            "realm": self.realm.name,
            "stage": self.state.stage.value,
            "principal_id": self.state.principal_id,
            "masked_phone": mask_phone(self.state.phone) if self.state.phone else None,
            "role": profile.normalized_role if profile else None,
            "profile_loaded": profile is not None,
            "destination": self.destination() if self.state.stage == Stage.OTP_VERIFIED else None,
            "challenge": self.challenge_status(),
        }

    def add_listener(self, listener: StageListener) -> Callable[[], None]:
        """Register a stage-change callback; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # -------------------------------------------------------------- internals

    def _notify(self, old: Stage, new: Stage) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(old, new, snapshot)
            except Exception as exc:
                self.logger.error(
                    "stage_listener_failed",
                    listener=getattr(listener, "__name__", repr(listener)),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def _transition(
        self,
        stage: Stage,
        *,
        principal_id: Optional[str],
        phone: Optional[str],
        profile: Optional[Profile],
        access_token: Optional[str] = None,
    ) -> None:
        old = self.state.stage
        changed = (
            old != stage
            or self.state.principal_id != principal_id
            or self.state.profile != profile
        )
        self.state = SessionState(
            principal_id=principal_id,
            stage=stage,
            phone=phone,
            profile=profile,
            access_token=access_token,
        )
        if changed:
            self.logger.info(
                "session_transition",
                principal_id=principal_id,
                from_stage=old.value,
                to_stage=stage.value,
            )
            self._notify(old, stage)

    def _clear_state(self, reason: str) -> None:
        """Reset to unauthenticated and invalidate anything still in flight."""
        self._epoch += 1
        principal_id = self.state.principal_id
        if principal_id is not None:
            self.otp.discard(principal_id)
        if principal_id is None and self.state.stage == Stage.UNAUTHENTICATED:
            return
        self.logger.info("session_cleared", principal_id=principal_id, reason=reason)
        self._transition(Stage.UNAUTHENTICATED, principal_id=None, phone=None, profile=None)

    def _is_current(self, epoch: int, principal_id: Optional[str]) -> bool:
        return self._epoch == epoch and self.state.principal_id == principal_id

    async def _call(self, action: str, call: Awaitable[T]) -> T:
        """Await a collaborator with a timeout, translating transport failures."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except ServiceError:
            raise
        except asyncio.TimeoutError as exc:
            self.logger.warning(
                "collaborator_timeout", action=action, timeout_seconds=self.timeout_seconds
            )
            raise NetworkError(detail={"reason": "timeout", "action": action}) from exc
        except Exception as exc:
            self.logger.error(
                "collaborator_failed",
                action=action,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise NetworkError(detail={"reason": "unavailable", "action": action}) from exc

    async def _clear_flag(self, principal_id: str) -> None:
        key = self.flag_key_for(principal_id)
        try:
            await self._call("flag_clear", self.flags.delete_flag(key))
        except NetworkError:
            self.logger.warning("otp_flag_clear_failed", key=key)

    async def _end_session(self, reason: str) -> Optional[SessionState]:
        """Clear the session without waiting for ``_op_lock``.

        Returns the state that was cleared so callers can revoke its token.
        """
        previous = self.state
        self._clear_state(reason)
        if previous.principal_id is not None:
            await self._clear_flag(previous.principal_id)
            return previous
        return None

    async def _profile_phone(self, principal_id: str) -> Optional[str]:
        profile = await self.profiles.resolve(principal_id)
        return normalize_phone(profile.phone) if profile else None

    # ------------------------------------------------------------- operations

    async def login(self, identifier: str, secret: str) -> LoginResult:
        """Check credentials and move to credentials_verified.

        Starts a fresh logical session: any previous session of this
        controller is cleared first, and the persisted verification flag is
        removed so the new login always passes through the OTP step.
        """
        identifier = (identifier or "").strip()
        if not identifier or not secret:
            raise InvalidCredentialsError(
                "Please enter both email/username and password.",
                detail={"reason": "missing_fields"},
            )

        async with self._op_lock:
            await self._end_session("new_login")
            epoch = self._epoch

            creds = await self._call(
                "credential_verify", self.credentials.verify(identifier, secret)
            )
            if self._epoch != epoch:
                raise SessionExpiredError()
            if creds is None or not creds.principal_id:
                self.logger.warning("login_rejected")
                raise InvalidCredentialsError()

            principal_id = creds.principal_id
            phone = normalize_phone(creds.phone)
            if phone is None:
                # Credential records often lack the phone; the profile row is
                # the fallback contact source.
                phone = await self._profile_phone(principal_id)
                if self._epoch != epoch:
                    raise SessionExpiredError()
            if phone is None:
                self.logger.warning("login_phone_missing", principal_id=principal_id)
                raise PhoneMissingError()

            await self._call(
                "flag_clear", self.flags.delete_flag(self.flag_key_for(principal_id))
            )
            if self._epoch != epoch:
                raise SessionExpiredError()

            self._transition(
                Stage.CREDENTIALS_VERIFIED,
                principal_id=principal_id,
                phone=phone,
                profile=None,
                access_token=creds.access_token,
            )
            self.logger.info("login_credentials_verified", principal_id=principal_id)

            issued = False
            if self.auto_issue_otp:
                try:
                    await self.otp.issue(principal_id, phone)
                except NetworkError as exc:
                    exc.detail.update(
                        {
                            "stage": Stage.CREDENTIALS_VERIFIED.value,
                            "principal_id": principal_id,
                            "challenge_issued": False,
                        }
                    )
                    raise
                if not self._is_current(epoch, principal_id):
                    raise SessionExpiredError()
                issued = True

            return LoginResult(
                principal_id=principal_id,
                phone=phone,
                masked_phone=mask_phone(phone),
                challenge_issued=issued,
                access_token=creds.access_token,
            )

    async def issue_otp(self) -> OTPChallenge:
        """Issue the first challenge when ``auto_issue_otp`` is disabled."""
        async with self._op_lock:
            principal_id, phone, epoch = await self._require_pending()
            challenge = await self.otp.issue(principal_id, phone)
            if not self._is_current(epoch, principal_id):
                raise SessionExpiredError()
            return challenge

    async def _require_pending(self) -> tuple[str, str, int]:
        principal_id = self.state.principal_id
        if principal_id is None or self.state.stage != Stage.CREDENTIALS_VERIFIED:
            raise SessionExpiredError()
        epoch = self._epoch
        phone = self.state.phone
        if phone is None:
            phone = await self._profile_phone(principal_id)
            if not self._is_current(epoch, principal_id):
                raise SessionExpiredError()
            if phone is None:
                raise PhoneMissingError()
            self.state.phone = phone
        return principal_id, phone, epoch

    async def verify_otp(self, code: str) -> Profile:
        """Submit a code; on success resolve the profile and finish the login.

        OTP failures (``InvalidCodeError``, ``ExpiredError``,
        ``AttemptsExhaustedError``) propagate unchanged and leave the session
        in credentials_verified.
        """
        async with self._op_lock:
            principal_id = self.state.principal_id
            if principal_id is None:
                raise SessionExpiredError()
            if self.state.stage == Stage.OTP_VERIFIED and self.state.profile is not None:
                return self.state.profile
            if self.state.stage != Stage.CREDENTIALS_VERIFIED:
                raise SessionExpiredError()
            epoch = self._epoch

            await self.otp.verify(principal_id, code)
            if not self._is_current(epoch, principal_id):
                self.logger.info("otp_result_discarded", principal_id=principal_id)
                raise SessionExpiredError()

            profile = await self.profiles.resolve(principal_id)
            if not self._is_current(epoch, principal_id):
                self.logger.info("otp_result_discarded", principal_id=principal_id)
                raise SessionExpiredError()
            if profile is None:
                self.logger.error("profile_missing_after_otp", principal_id=principal_id)
                raise ProfileMissingError(detail={"principal_id": principal_id})

            key = self.flag_key_for(principal_id)
            try:
                await self._call("flag_set", self.flags.set_flag(key, True))
            except NetworkError:
                # The flag only spares a re-verification after reload
                self.logger.warning("otp_flag_persist_failed", key=key)
            if not self._is_current(epoch, principal_id):
                # A logout raced the flag write; do not leave the flag behind.
                await self._clear_flag(principal_id)
                raise SessionExpiredError()

            self.otp.discard(principal_id)
            self._transition(
                Stage.OTP_VERIFIED,
                principal_id=principal_id,
                phone=self.state.phone,
                profile=profile,
                access_token=self.state.access_token,
            )
            return profile

    async def resend_otp(self) -> OTPChallenge:
        async with self._op_lock:
            principal_id, phone, epoch = await self._require_pending()
            challenge = await self.otp.reissue(principal_id, phone)
            if not self._is_current(epoch, principal_id):
                raise SessionExpiredError()
            return challenge

    async def restore_session(
        self, event: Optional[SessionEvent], *, credentials: Optional[Credentials] = None
    ) -> Stage:
        """Adopt a session reported by the identity provider.

        With the persisted flag set (or this controller already verified for
        the same principal) the OTP step is skipped and the profile fetched;
        otherwise the session waits in credentials_verified.

        ``credentials`` is the credential store's answer for the event's
        session token. It is the only source of the contact phone and token
        besides what this controller already holds; when absent the phone is
        read from the profile at OTP time.
        """
        if event is None or not event.principal_id:
            await self._end_session("no_external_session")
            return self.state.stage

        async with self._op_lock:
            principal_id = event.principal_id
            same_principal = self.state.principal_id == principal_id
            if self.state.principal_id is not None and not same_principal:
                await self._end_session("principal_changed")
            epoch = self._epoch
            previous_stage = self.state.stage if same_principal else Stage.UNAUTHENTICATED
            if credentials is not None and credentials.principal_id != principal_id:
                credentials = None
            phone = normalize_phone(credentials.phone) if credentials else None
            access_token = credentials.access_token if credentials else None
            if same_principal:
                phone = phone or self.state.phone
                access_token = access_token or self.state.access_token

            verified = await self._call(
                "flag_get", self.flags.get_flag(self.flag_key_for(principal_id))
            )
            if self._epoch != epoch:
                raise SessionExpiredError()
            verified = verified or previous_stage == Stage.OTP_VERIFIED

            if not verified:
                self._transition(
                    Stage.CREDENTIALS_VERIFIED,
                    principal_id=principal_id,
                    phone=phone,
                    profile=None,
                    access_token=access_token,
                )
                return self.state.stage

            profile = await self.profiles.resolve(principal_id)
            if self._epoch != epoch:
                raise SessionExpiredError()
            if profile is None:
                self._transition(
                    Stage.CREDENTIALS_VERIFIED,
                    principal_id=principal_id,
                    phone=phone,
                    profile=None,
                    access_token=access_token,
                )
                self.logger.error("profile_missing_on_restore", principal_id=principal_id)
                raise ProfileMissingError(detail={"principal_id": principal_id})

            self.otp.discard(principal_id)
            self._transition(
                Stage.OTP_VERIFIED,
                principal_id=principal_id,
                phone=phone or normalize_phone(profile.phone),
                profile=profile,
                access_token=access_token,
            )
            self.logger.info("session_restored", principal_id=principal_id, otp_skipped=True)
            return self.state.stage

    async def logout(self) -> None:
        """Clear the session; provider invalidation is best-effort."""
        previous = await self._end_session("logout")
        if previous is None:
            return
        principal_id = previous.principal_id
        try:
            await self._call(
                "credential_invalidate",
                self.credentials.invalidate(principal_id, previous.access_token),
            )
        except NetworkError:
            self.logger.warning("logout_invalidate_failed", principal_id=principal_id)

    async def handle_event(
        self, event: SessionEvent, *, credentials: Optional[Credentials] = None
    ) -> Stage:
        if event.kind in _CLEARING_EVENTS:
            await self._end_session(event.kind.value)
            return self.state.stage
        return await self.restore_session(event, credentials=credentials)

    async def adopt_session(self, kind: EventKind, access_token: Optional[str]) -> Stage:
        """Apply a session event posted by the browser client.

        Clearing events need no proof. Any other event must carry the
        provider access token of the session; the principal comes from the
        credential store's answer for that token, never from the caller.
        """
        if kind in _CLEARING_EVENTS:
            return await self.handle_event(SessionEvent(kind))
        if not access_token:
            if kind == EventKind.INITIAL_SESSION:
                return await self.handle_event(SessionEvent(kind))
            raise InvalidCredentialsError(
                "Session is no longer valid. Please login again.",
                detail={"reason": "missing_session_token"},
            )

        epoch = self._epoch
        creds = await self._call(
            "credential_session", self.credentials.session_for(access_token)
        )
        if creds is None or not creds.principal_id:
            self.logger.warning("session_event_rejected", event_kind=kind.value)
            raise InvalidCredentialsError(
                "Session is no longer valid. Please login again.",
                detail={"reason": "invalid_session_token"},
            )
        if self._epoch != epoch:
            raise SessionExpiredError()
        if creds.access_token is None:
            creds = replace(creds, access_token=access_token)
        return await self.handle_event(
            SessionEvent(kind, principal_id=creds.principal_id), credentials=creds
        )

    async def consume_events(self, queue: "asyncio.Queue[Optional[SessionEvent]]") -> None:
        """Apply events from ``queue`` in order until a ``None`` sentinel arrives."""
        while True:
            event = await queue.get()
            try:
                if event is None:
                    return
                await self.handle_event(event)
            except ServiceError as exc:
                self.logger.warning(
                    "session_event_failed",
                    event_kind=event.kind.value if event else None,
                    error_code=exc.error_code,
                    message=exc.message,
                )
            finally:
                queue.task_done()

    # Outward contract aliases
    async def submit_otp(self, code: str) -> Profile:
        return await self.verify_otp(code)

    async def resend(self) -> OTPChallenge:
        return await self.resend_otp()
