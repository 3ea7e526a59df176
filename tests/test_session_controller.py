"""Tests for the two-factor session state machine.

Covers the login -> OTP -> profile flow, the restore fast path, logout while
calls are in flight, and the external event channel.
"""

import asyncio
from types import SimpleNamespace

import pytest

from fakes import (
    PHONE,
    VALID_CODE,
    FakeChannel,
    FakeCredentialStore,
    FakeProfileStore,
    ManualClock,
)
from sessiongate.service.errors import (
    AttemptsExhaustedError,
    ExpiredError,
    InvalidCodeError,
    InvalidCredentialsError,
    NetworkError,
    PhoneMissingError,
    ProfileMissingError,
    ResendNotYetAllowedError,
    SessionExpiredError,
)
from sessiongate.service.otp import OTPChallengeManager
from sessiongate.service.profiles import ProfileResolver
from sessiongate.service.realms import ADMIN_REALM, GENERAL_REALM
from sessiongate.service.session import SessionController
from sessiongate.storage.flags import MemoryFlagStore
from sessiongate.storage.models import EventKind, SessionEvent, Stage


def build(
    realm=GENERAL_REALM,
    *,
    auto_issue_otp=True,
    timeout=1.0,
    flags=None,
    scope=None,
    shared=None,
):
    """Controller over fresh fakes; ``shared`` reuses another harness's collaborators."""
    clock = shared.clock if shared else ManualClock()
    channel = shared.channel if shared else FakeChannel()
    credentials = shared.credentials if shared else FakeCredentialStore()
    profiles = shared.profiles if shared else FakeProfileStore()
    flags = flags or (shared.flags if shared else MemoryFlagStore())
    credentials.add("admin@example.com", "s3cret", "p1")
    profiles.add("p1", "Admin ", full_name="Ada Admin", email="admin@example.com")
    manager = OTPChallengeManager(channel, clock=clock, timeout_seconds=timeout)
    controller = SessionController(
        realm,
        credentials,
        manager,
        ProfileResolver(profiles, timeout_seconds=timeout),
        flags,
        scope=scope,
        auto_issue_otp=auto_issue_otp,
        timeout_seconds=timeout,
    )
    return SimpleNamespace(
        clock=clock,
        channel=channel,
        credentials=credentials,
        profiles=profiles,
        flags=flags,
        manager=manager,
        controller=controller,
    )


@pytest.fixture
def h():
    return build()


class TestLogin:
    async def test_login_moves_to_credentials_verified_with_live_challenge(self, h):
        result = await h.controller.login("admin@example.com", "s3cret")

        assert result.principal_id == "p1"
        assert result.phone == PHONE
        assert result.masked_phone == "+237****39"
        assert result.challenge_issued is True
        assert h.controller.current_stage() == Stage.CREDENTIALS_VERIFIED
        challenge = h.manager.get("p1")
        assert challenge.is_live
        assert challenge.attempts_remaining == 5
        assert h.channel.deliveries == [("p1", PHONE)]

    async def test_login_clears_persisted_flag(self, h):
        await h.flags.set_flag(h.controller.flag_key_for("p1"), True)

        await h.controller.login("admin@example.com", "s3cret")

        assert await h.flags.get_flag(h.controller.flag_key_for("p1")) is False

    async def test_empty_fields_rejected_without_store_call(self, h):
        h.credentials.error = AssertionError("must not be called")

        with pytest.raises(InvalidCredentialsError):
            await h.controller.login("  ", "s3cret")
        with pytest.raises(InvalidCredentialsError):
            await h.controller.login("admin@example.com", "")

    async def test_wrong_password_leaves_unauthenticated(self, h):
        with pytest.raises(InvalidCredentialsError):
            await h.controller.login("admin@example.com", "wrong")

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        assert h.channel.deliveries == []

    async def test_store_failure_is_network_error(self, h):
        h.credentials.error = ConnectionError("down")

        with pytest.raises(NetworkError):
            await h.controller.login("admin@example.com", "s3cret")

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED

    async def test_store_timeout_is_network_error(self):
        h = build(timeout=0.05)
        h.credentials.delay = 1.0

        with pytest.raises(NetworkError) as exc_info:
            await h.controller.login("admin@example.com", "s3cret")

        assert exc_info.value.detail["reason"] == "timeout"
        assert h.controller.current_stage() == Stage.UNAUTHENTICATED

    async def test_phone_falls_back_to_profile(self, h):
        h.credentials.add("nophone@example.com", "pw", "p2", phone=None)
        h.profiles.add("p2", "student", phone="+44 20 7946 0958")

        result = await h.controller.login("nophone@example.com", "pw")

        assert result.phone == "+442079460958"

    async def test_missing_phone_fails_and_stays_unauthenticated(self, h):
        h.credentials.add("nophone@example.com", "pw", "p2", phone="12")
        h.profiles.add("p2", "student", phone=None)

        with pytest.raises(PhoneMissingError):
            await h.controller.login("nophone@example.com", "pw")

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED

    async def test_delivery_failure_keeps_credentials_verified_without_challenge(self, h):
        h.channel.fail_delivery = True

        with pytest.raises(NetworkError) as exc_info:
            await h.controller.login("admin@example.com", "s3cret")

        assert exc_info.value.detail["challenge_issued"] is False
        assert h.controller.current_stage() == Stage.CREDENTIALS_VERIFIED
        assert h.manager.get("p1") is None

        h.channel.fail_delivery = False
        await h.controller.resend()
        assert h.manager.get("p1").is_live

    async def test_manual_issue_when_auto_issue_disabled(self):
        h = build(auto_issue_otp=False)

        result = await h.controller.login("admin@example.com", "s3cret")
        assert result.challenge_issued is False
        assert h.channel.deliveries == []

        await h.controller.issue_otp()
        assert h.channel.deliveries == [("p1", PHONE)]


class TestVerify:
    async def test_wrong_codes_then_exhausted(self, h):
        await h.controller.login("admin@example.com", "s3cret")

        for expected in (4, 3, 2, 1):
            with pytest.raises(InvalidCodeError) as exc_info:
                await h.controller.submit_otp("111111")
            assert exc_info.value.detail["attempts_remaining"] == expected

        with pytest.raises(AttemptsExhaustedError):
            await h.controller.submit_otp("111111")
        with pytest.raises(AttemptsExhaustedError):
            await h.controller.submit_otp(VALID_CODE)

        assert h.manager.get("p1").attempts_remaining == 0
        assert h.controller.current_stage() == Stage.CREDENTIALS_VERIFIED

    async def test_resend_cooldown_then_success_routes_admin(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        h.clock.advance(30)

        with pytest.raises(ResendNotYetAllowedError) as exc_info:
            await h.controller.resend()
        assert exc_info.value.detail["retry_after_seconds"] == 30

        h.clock.advance(31)
        await h.controller.resend()
        profile = await h.controller.submit_otp(VALID_CODE)

        assert profile.normalized_role == "admin"
        assert h.controller.current_stage() == Stage.OTP_VERIFIED
        assert h.controller.destination() == "/admin/dashboard"
        assert await h.flags.get_flag(h.controller.flag_key) is True
        assert h.manager.get("p1") is None

    async def test_expired_challenge_rejects_correct_code(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        h.clock.advance(301)

        with pytest.raises(ExpiredError):
            await h.controller.submit_otp(VALID_CODE)

        assert h.controller.current_stage() == Stage.CREDENTIALS_VERIFIED

    async def test_missing_profile_keeps_credentials_verified_and_can_retry(self, h):
        h.credentials.add("ghost@example.com", "pw", "p9")
        await h.controller.login("ghost@example.com", "pw")

        with pytest.raises(ProfileMissingError):
            await h.controller.submit_otp(VALID_CODE)
        assert h.controller.current_stage() == Stage.CREDENTIALS_VERIFIED
        assert await h.flags.get_flag(h.controller.flag_key) is False

        h.profiles.add("p9", "shareholder")
        profile = await h.controller.submit_otp(VALID_CODE)

        assert profile.normalized_role == "shareholder"
        assert h.controller.destination() == "/shareholder/dashboard"

    async def test_verify_requires_login(self, h):
        with pytest.raises(SessionExpiredError):
            await h.controller.submit_otp(VALID_CODE)

    async def test_resend_requires_credentials_verified(self, h):
        with pytest.raises(SessionExpiredError):
            await h.controller.resend()

    async def test_flag_write_failure_does_not_block_login(self, h):
        class BrokenFlags(MemoryFlagStore):
            async def set_flag(self, key, value):
                raise OSError("disk full")

        h = build(flags=BrokenFlags())
        await h.controller.login("admin@example.com", "s3cret")

        await h.controller.submit_otp(VALID_CODE)

        assert h.controller.current_stage() == Stage.OTP_VERIFIED

    async def test_admin_realm_denies_non_admin_roles(self):
        h = build(ADMIN_REALM)
        h.credentials.add("student@example.com", "pw", "p3")
        h.profiles.add("p3", "student")

        await h.controller.login("student@example.com", "pw")
        await h.controller.submit_otp(VALID_CODE)

        assert h.controller.destination() == "/admin/access-denied"


class TestLogout:
    async def test_logout_clears_everything(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        await h.controller.submit_otp(VALID_CODE)

        await h.controller.logout()

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        assert h.controller.state.profile is None
        assert await h.flags.get_flag(h.controller.flag_key_for("p1")) is False
        assert h.credentials.invalidated == ["p1"]

    async def test_invalidate_failure_is_not_fatal(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        h.credentials.fail_invalidate = True

        await h.controller.logout()

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        assert h.manager.get("p1") is None

    async def test_logout_while_verify_in_flight(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        h.channel.hold_verify()

        task = asyncio.create_task(h.controller.submit_otp(VALID_CODE))
        await h.channel.verify_started.wait()
        await h.controller.logout()
        h.channel.gate.set()

        with pytest.raises(SessionExpiredError):
            await task
        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        assert h.controller.state.profile is None
        assert await h.flags.get_flag(h.controller.flag_key_for("p1")) is False

    async def test_logout_when_unauthenticated_is_noop(self, h):
        await h.controller.logout()

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        assert h.credentials.invalidated == []


class TestRestore:
    async def test_restore_with_flag_skips_otp(self, h):
        await h.flags.set_flag(h.controller.flag_key_for("p1"), True)

        stage = await h.controller.restore_session(
            SessionEvent(EventKind.SIGNED_IN, principal_id="p1")
        )

        assert stage == Stage.OTP_VERIFIED
        assert h.controller.state.profile.normalized_role == "admin"
        assert h.channel.deliveries == []
        assert h.channel.verifications == []

    async def test_restore_without_flag_waits_for_otp(self, h):
        stage = await h.controller.restore_session(
            SessionEvent(EventKind.INITIAL_SESSION, principal_id="p1")
        )

        assert stage == Stage.CREDENTIALS_VERIFIED
        assert h.controller.state.profile is None

    async def test_restore_without_session_clears(self, h):
        await h.controller.login("admin@example.com", "s3cret")

        stage = await h.controller.restore_session(None)

        assert stage == Stage.UNAUTHENTICATED
        assert h.manager.get("p1") is None

    async def test_restore_with_flag_but_missing_profile(self, h):
        h.profiles.records.clear()
        await h.flags.set_flag(h.controller.flag_key_for("p1"), True)

        with pytest.raises(ProfileMissingError):
            await h.controller.restore_session(
                SessionEvent(EventKind.SIGNED_IN, principal_id="p1")
            )

        assert h.controller.current_stage() == Stage.CREDENTIALS_VERIFIED

    async def test_token_refresh_keeps_verified_session(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        await h.controller.submit_otp(VALID_CODE)
        await h.flags.delete_flag(h.controller.flag_key)

        stage = await h.controller.handle_event(
            SessionEvent(EventKind.TOKEN_REFRESHED, principal_id="p1")
        )

        assert stage == Stage.OTP_VERIFIED

    async def test_signed_out_event_clears_session(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        await h.controller.submit_otp(VALID_CODE)

        stage = await h.controller.handle_event(SessionEvent(EventKind.SIGNED_OUT))

        assert stage == Stage.UNAUTHENTICATED
        assert await h.flags.get_flag(h.controller.flag_key_for("p1")) is False

    async def test_consume_events_applies_in_order_until_sentinel(self, h):
        await h.flags.set_flag(h.controller.flag_key_for("p1"), True)
        h.profiles.records.pop("p1")
        queue = asyncio.Queue()
        queue.put_nowait(SessionEvent(EventKind.SIGNED_IN, principal_id="p1"))
        queue.put_nowait(SessionEvent(EventKind.USER_DELETED))
        queue.put_nowait(None)

        await h.controller.consume_events(queue)

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        assert queue.empty()


class TestListeners:
    async def test_transitions_are_observable(self, h):
        seen = []
        h.controller.add_listener(lambda old, new, snap: seen.append((old, new, snap["stage"])))

        await h.controller.login("admin@example.com", "s3cret")
        await h.controller.submit_otp(VALID_CODE)
        await h.controller.logout()

        assert seen == [
            (Stage.UNAUTHENTICATED, Stage.CREDENTIALS_VERIFIED, "credentials_verified"),
            (Stage.CREDENTIALS_VERIFIED, Stage.OTP_VERIFIED, "otp_verified"),
            (Stage.OTP_VERIFIED, Stage.UNAUTHENTICATED, "unauthenticated"),
        ]

    async def test_failing_listener_does_not_break_transition(self, h):
        def boom(old, new, snap):
            raise RuntimeError("listener bug")

        remove = h.controller.add_listener(boom)
        await h.controller.login("admin@example.com", "s3cret")
        remove()

        assert h.controller.current_stage() == Stage.CREDENTIALS_VERIFIED

    async def test_snapshot_reports_challenge(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        h.clock.advance(10)

        snap = h.controller.snapshot()

        assert snap["realm"] == "general"
        assert snap["stage"] == "credentials_verified"
        assert snap["masked_phone"] == "+237****39"
        assert snap["destination"] is None
        assert snap["challenge"]["expires_in_seconds"] == 290
        assert snap["challenge"]["resend_in_seconds"] == 50


async def test_flag_keys_are_scoped_per_client():
    flags = MemoryFlagStore()
    first = build(flags=flags, scope="client-a")
    second = build(flags=flags, scope="client-b")

    await first.controller.login("admin@example.com", "s3cret")
    await first.controller.submit_otp(VALID_CODE)

    assert first.controller.flag_key == "client-a:p1:auth.otpVerified.general"
    assert await flags.get_flag(second.controller.flag_key_for("p1")) is False


class TestBrowserEvents:
    async def test_sign_in_without_token_is_rejected(self, h):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await h.controller.adopt_session(EventKind.SIGNED_IN, None)

        assert exc_info.value.detail["reason"] == "missing_session_token"
        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        with pytest.raises(SessionExpiredError):
            await h.controller.issue_otp()

    async def test_unknown_token_is_rejected(self, h):
        with pytest.raises(InvalidCredentialsError):
            await h.controller.adopt_session(EventKind.SIGNED_IN, "forged-token")

        assert h.controller.current_stage() == Stage.UNAUTHENTICATED
        assert h.channel.deliveries == []

    async def test_token_restores_verified_session_after_reload(self):
        first = build(scope="c1")
        result = await first.controller.login("admin@example.com", "s3cret")
        await first.controller.submit_otp(VALID_CODE)
        reloaded = build(shared=first, scope="c1")

        stage = await reloaded.controller.adopt_session(
            EventKind.SIGNED_IN, result.access_token
        )

        assert stage == Stage.OTP_VERIFIED
        assert reloaded.controller.state.access_token == result.access_token

    async def test_unverified_session_sends_code_to_stored_phone(self):
        first = build(auto_issue_otp=False, scope="c1")
        result = await first.controller.login("admin@example.com", "s3cret")
        reloaded = build(shared=first, auto_issue_otp=False, scope="c1")

        stage = await reloaded.controller.adopt_session(
            EventKind.INITIAL_SESSION, result.access_token
        )
        await reloaded.controller.issue_otp()

        assert stage == Stage.CREDENTIALS_VERIFIED
        assert first.channel.deliveries == [("p1", PHONE)]

    async def test_flag_of_one_account_does_not_verify_another(self):
        h = build(scope="c1")
        h.credentials.add("other@example.com", "pw", "p2", phone="+237699000111")
        h.profiles.add("p2", "student")
        await h.controller.login("admin@example.com", "s3cret")
        await h.controller.submit_otp(VALID_CODE)
        elsewhere = build(shared=h, scope="c2")
        other = await elsewhere.controller.login("other@example.com", "pw")

        stage = await h.controller.adopt_session(EventKind.SIGNED_IN, other.access_token)

        assert stage == Stage.CREDENTIALS_VERIFIED
        assert h.controller.state.principal_id == "p2"
        assert await h.flags.get_flag(h.controller.flag_key_for("p1")) is False

    async def test_sign_out_needs_no_token(self, h):
        await h.controller.login("admin@example.com", "s3cret")

        stage = await h.controller.adopt_session(EventKind.SIGNED_OUT, None)

        assert stage == Stage.UNAUTHENTICATED

    async def test_initial_session_without_token_clears(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        await h.controller.submit_otp(VALID_CODE)

        stage = await h.controller.adopt_session(EventKind.INITIAL_SESSION, None)

        assert stage == Stage.UNAUTHENTICATED
        assert await h.flags.get_flag(h.controller.flag_key_for("p1")) is False


async def test_no_external_session_clears_persisted_flag(h):
    await h.controller.login("admin@example.com", "s3cret")
    await h.controller.submit_otp(VALID_CODE)

    await h.controller.restore_session(None)
    stage = await h.controller.restore_session(
        SessionEvent(EventKind.SIGNED_IN, principal_id="p1")
    )

    assert await h.flags.get_flag(h.controller.flag_key_for("p1")) is False
    assert stage == Stage.CREDENTIALS_VERIFIED


class TestClientsSharingAPrincipal:
    async def test_logout_on_one_client_keeps_the_other_challenge(self):
        a = build(scope="client-a")
        b = build(shared=a, scope="client-b")
        await a.controller.login("admin@example.com", "s3cret")
        await a.controller.submit_otp(VALID_CODE)
        await b.controller.login("admin@example.com", "s3cret")

        await a.controller.logout()
        profile = await b.controller.submit_otp(VALID_CODE)

        assert profile.normalized_role == "admin"
        assert b.controller.current_stage() == Stage.OTP_VERIFIED

    async def test_logout_revokes_only_its_own_token(self):
        a = build(scope="client-a")
        b = build(shared=a, scope="client-b")
        first = await a.controller.login("admin@example.com", "s3cret")
        second = await b.controller.login("admin@example.com", "s3cret")

        await a.controller.logout()

        assert await a.credentials.session_for(first.access_token) is None
        assert (await a.credentials.session_for(second.access_token)).principal_id == "p1"

    async def test_new_login_elsewhere_does_not_replace_challenge(self):
        a = build(scope="client-a")
        b = build(shared=a, scope="client-b")
        await a.controller.login("admin@example.com", "s3cret")
        challenge = a.manager.get("p1")

        await b.controller.login("admin@example.com", "s3cret")

        assert a.manager.get("p1") is challenge
        assert challenge.is_live


class TestSerializedOperations:
    async def test_resend_waits_for_in_flight_verify(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        original = h.manager.get("p1")
        h.clock.advance(61)
        h.channel.hold_verify()

        verify = asyncio.create_task(h.controller.submit_otp(VALID_CODE))
        await h.channel.verify_started.wait()
        resend = asyncio.create_task(h.controller.resend())
        for _ in range(5):
            await asyncio.sleep(0)

        assert not resend.done()
        assert h.manager.get("p1") is original
        assert len(h.channel.deliveries) == 1

        h.channel.gate.set()
        profile, resent = await asyncio.gather(verify, resend, return_exceptions=True)

        assert profile.normalized_role == "admin"
        assert isinstance(resent, SessionExpiredError)
        assert h.controller.current_stage() == Stage.OTP_VERIFIED
        assert len(h.channel.deliveries) == 1

    async def test_wrong_code_and_resend_keep_attempt_counts_apart(self, h):
        await h.controller.login("admin@example.com", "s3cret")
        original = h.manager.get("p1")
        h.clock.advance(61)
        h.channel.hold_verify()

        verify = asyncio.create_task(h.controller.submit_otp("111111"))
        await h.channel.verify_started.wait()
        resend = asyncio.create_task(h.controller.resend())
        await asyncio.sleep(0)
        h.channel.gate.set()
        rejected, challenge = await asyncio.gather(verify, resend, return_exceptions=True)

        assert isinstance(rejected, InvalidCodeError)
        assert rejected.detail["attempts_remaining"] == 4
        assert original.attempts_remaining == 4
        assert challenge is h.manager.get("p1")
        assert challenge is not original
        assert challenge.attempts_remaining == 5
        assert len(h.channel.deliveries) == 2
