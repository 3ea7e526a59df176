from __future__ import annotations

import re
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response

from sessiongate.api.schemas import (
    AccessResponse,
    ChallengeResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    OTPVerifyRequest,
    ProfileResponse,
    SessionEventRequest,
    VerifyResponse,
)
from sessiongate.config import get_settings
from sessiongate.logging import get_logger
from sessiongate.service.access import check_access, profile_permissions
from sessiongate.service.realms import RealmConfig, get_realm
from sessiongate.service.runtime import get_runtime
from sessiongate.service.session import SessionController
from sessiongate.storage.models import EventKind, Profile

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_CLIENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_realm_config(realm: str = Path(..., max_length=32)) -> RealmConfig:
    config = get_realm(realm)
    if config is None:
        raise _http_error("not_found", f"unknown realm '{realm}'", status_code=404)
    return config


def get_client_id(request: Request, response: Response) -> str:
    """Browser client id from the client cookie; issues a new one when absent."""
    settings = get_settings()
    client_id = request.cookies.get(settings.client_cookie_name)
    if client_id and _CLIENT_ID_PATTERN.match(client_id):
        return client_id
    client_id = secrets.token_urlsafe(24)
    response.set_cookie(
        settings.client_cookie_name,
        client_id,
        httponly=True,
        secure=settings.client_cookie_secure,
        samesite="lax",
        max_age=settings.client_cookie_max_age_seconds,
        path="/",
    )
    return client_id


def get_controller(
    realm: RealmConfig = Depends(get_realm_config),
    client_id: str = Depends(get_client_id),
) -> SessionController:
    return get_runtime().controller_for(realm, client_id)


def _cookie_client_id(request: Request) -> Optional[str]:
    client_id = request.cookies.get(get_settings().client_cookie_name)
    if client_id and _CLIENT_ID_PATTERN.match(client_id):
        return client_id
    return None


def get_session_view(
    request: Request, realm: RealmConfig = Depends(get_realm_config)
) -> SessionController:
    """Controller for requests that must not open a session.

    Returns the client's registered controller, or an unregistered blank one
    when the client has none; no cookie is issued.
    """
    runtime = get_runtime()
    controller = runtime.existing_controller(realm, _cookie_client_id(request))
    if controller is None:
        controller = runtime.build_controller(realm, None)
    return controller


def _challenge_payload(controller: SessionController) -> Optional[dict]:
    status = controller.challenge_status()
    if status is None:
        return None
    return ChallengeResponse(**status).model_dump()


def _profile_payload(profile: Profile) -> dict:
    return ProfileResponse(
        principal_id=profile.principal_id,
        role=profile.normalized_role,
        raw_role=profile.raw_role,
        full_name=profile.full_name,
        email=profile.email,
    ).model_dump()


@router.post("/{realm}/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, controller: SessionController = Depends(get_controller)):
    """Check credentials and, by default, send the OTP to the account's phone.

    Raises:
        401: invalid_credentials
        422: phone_missing
        503: network_error (the session may already be credentials_verified)
    """
    result = await controller.login(body.identifier, body.password)
    data = LoginResponse(
        principal_id=result.principal_id,
        masked_phone=result.masked_phone,
        stage=controller.current_stage().value,
        challenge_issued=result.challenge_issued,
        otp_route=controller.realm.otp_route,
        access_token=result.access_token,
    ).model_dump()
    data["challenge"] = _challenge_payload(controller)
    return Envelope(status="ok", data=data)


@router.post("/{realm}/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(
    body: OTPVerifyRequest, controller: SessionController = Depends(get_controller)
):
    """Submit the OTP; returns the profile and the destination route."""
    profile = await controller.submit_otp(body.code)
    data = VerifyResponse(
        stage=controller.current_stage().value,
        profile=ProfileResponse(**_profile_payload(profile)),
        destination=controller.destination(),
    )
    return Envelope(status="ok", data=data.model_dump())


@router.post("/{realm}/auth/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(controller: SessionController = Depends(get_controller)):
    await controller.resend()
    return Envelope(status="ok", data=_challenge_payload(controller))


@router.post("/{realm}/auth/otp/send", response_model=Envelope, tags=["auth"])
async def send_otp(controller: SessionController = Depends(get_controller)):
    """Issue the first OTP when the login did not send one."""
    await controller.issue_otp()
    return Envelope(status="ok", data=_challenge_payload(controller))


@router.get("/{realm}/auth/stage", response_model=Envelope, tags=["auth"])
async def get_stage(controller: SessionController = Depends(get_session_view)):
    return Envelope(status="ok", data=controller.snapshot())


@router.post("/{realm}/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    realm: RealmConfig = Depends(get_realm_config),
    controller: SessionController = Depends(get_session_view),
):
    await controller.logout()
    client_id = _cookie_client_id(request)
    if client_id is not None:
        get_runtime().drop_controller(realm, client_id)
    return Envelope(
        status="ok",
        data={"stage": controller.current_stage().value, "redirect": realm.login_route},
    )


@router.post("/{realm}/auth/events", response_model=Envelope, tags=["auth"])
async def session_event(
    body: SessionEventRequest, controller: SessionController = Depends(get_controller)
):
    """Apply an identity-provider session event (sign-in, refresh, sign-out).

    Events other than sign-out must carry the provider access token of the
    session; the principal is taken from the provider's answer for it.

    Raises:
        401: invalid_credentials (missing or rejected token)
    """
    await controller.adopt_session(EventKind(body.kind), body.access_token)
    return Envelope(status="ok", data=controller.snapshot())


@router.get("/{realm}/auth/access", response_model=Envelope, tags=["auth"])
async def check_page_access(
    required_role: Optional[str] = Query(None, max_length=64),
    permission: Optional[str] = Query(None, max_length=128),
    controller: SessionController = Depends(get_session_view),
):
    decision = check_access(
        controller.state,
        controller.realm,
        required_role=required_role,
        permission=permission,
        has_permission=profile_permissions(controller.state),
    )
    return Envelope(status="ok", data=AccessResponse(**decision.to_dict()).model_dump())
