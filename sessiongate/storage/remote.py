from __future__ import annotations

import threading
from typing import Any, Dict, Optional

import httpx

from sessiongate.logging import get_logger
from sessiongate.storage.models import Credentials, ProfileRecord

logger = get_logger(__name__)

_PROFILE_FIELDS = {"id", "role", "phone", "full_name", "email"}


class RemoteClient:
    """Shared httpx client for the hosted identity/data provider.

    The provider authenticates every call with an ``apikey`` header; requests
    made on behalf of a signed-in principal add its bearer token.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(5.0, self.timeout_seconds)),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class HttpCredentialStore:
    """Password grant and session lookups against the provider's auth endpoint.

    Every login gets its own access token, carried in the returned
    ``Credentials``; logout revokes only that token. The most recent token per
    principal is remembered for profile reads under row-level security.
    """

    def __init__(self, remote: RemoteClient) -> None:
        self.remote = remote
        self._tokens: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _remember(self, principal_id: str, token: Optional[str]) -> None:
        if token:
            with self._lock:
                self._tokens[principal_id] = token

    @staticmethod
    def _credentials(user: Any, token: Optional[str]) -> Optional[Credentials]:
        if not isinstance(user, dict) or not user.get("id"):
            logger.warning("credential_check_malformed_response")
            return None
        return Credentials(
            principal_id=str(user["id"]),
            phone=user.get("phone") or None,
            access_token=token,
        )

    async def verify(self, identifier: str, secret: str) -> Optional[Credentials]:
        client = await self.remote.client()
        response = await client.post(
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": identifier, "password": secret},
            headers=self.remote.headers(),
        )
        if response.status_code in (400, 401, 403, 422):
            # The provider answers bad credentials with a 4xx body; transport
            # and 5xx failures raise and are handled by the controller.
            logger.info("credential_check_rejected", status_code=response.status_code)
            return None
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            logger.warning("credential_check_malformed_response")
            return None
        creds = self._credentials(payload.get("user"), payload.get("access_token"))
        if creds is not None:
            self._remember(creds.principal_id, creds.access_token)
        return creds

    async def session_for(self, access_token: str) -> Optional[Credentials]:
        """Resolve a browser-held access token to its principal."""
        client = await self.remote.client()
        response = await client.get(
            "/auth/v1/user", headers=self.remote.headers(access_token)
        )
        if response.status_code in (401, 403, 404):
            logger.info("session_token_rejected", status_code=response.status_code)
            return None
        response.raise_for_status()
        creds = self._credentials(response.json(), access_token)
        if creds is not None:
            self._remember(creds.principal_id, access_token)
        return creds

    async def invalidate(self, principal_id: str, access_token: Optional[str] = None) -> None:
        if access_token is None:
            return
        with self._lock:
            if self._tokens.get(principal_id) == access_token:
                del self._tokens[principal_id]
        client = await self.remote.client()
        response = await client.post(
            "/auth/v1/logout", headers=self.remote.headers(access_token)
        )
        response.raise_for_status()

    def token_for(self, principal_id: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(principal_id)


class HttpProfileStore:
    """Reads profile rows through the provider's REST interface."""

    def __init__(
        self,
        remote: RemoteClient,
        *,
        table: str = "profiles",
        credentials: Optional[HttpCredentialStore] = None,
    ) -> None:
        self.remote = remote
        self.table = table
        self.credentials = credentials

    async def get(self, principal_id: str) -> Optional[ProfileRecord]:
        token = self.credentials.token_for(principal_id) if self.credentials else None
        client = await self.remote.client()
        response = await client.get(
            f"/rest/v1/{self.table}",
            params={"id": f"eq.{principal_id}", "select": "*"},
            headers=self.remote.headers(token),
        )
        response.raise_for_status()
        rows = response.json()
        if not isinstance(rows, list) or not rows:
            return None
        row: Dict[str, Any] = rows[0]
        return ProfileRecord(
            principal_id=str(row.get("id") or principal_id),
            role=row.get("role"),
            phone=row.get("phone"),
            full_name=row.get("full_name"),
            email=row.get("email"),
            extra={k: v for k, v in row.items() if k not in _PROFILE_FIELDS},
        )
