from __future__ import annotations

import hmac
import secrets
from typing import Dict, Optional

import httpx

from sessiongate.logging import get_logger
from sessiongate.service.errors import DeliveryFailed
from sessiongate.service.phone import mask_phone
from sessiongate.storage.remote import RemoteClient

logger = get_logger(__name__)


class HttpOTPChannel:
    """OTP delivery and checking through the provider's edge functions.

    The functions generate, store and send the code themselves; this side only
    passes the principal and phone, or the submitted code, and reads the
    ``success`` flag of the answer.
    """

    def __init__(
        self,
        remote: RemoteClient,
        *,
        send_function: str = "send-otp",
        verify_function: str = "verify-otp",
    ) -> None:
        self.remote = remote
        self.send_function = send_function
        self.verify_function = verify_function

    async def _invoke(self, function: str, body: dict) -> dict:
        client = await self.remote.client()
        response = await client.post(
            f"/functions/v1/{function}", json=body, headers=self.remote.headers()
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 500:
            response.raise_for_status()
        return data if isinstance(data, dict) else {}

    async def deliver(self, principal_id: str, phone: str) -> None:
        try:
            data = await self._invoke(
                self.send_function, {"userId": principal_id, "phone": phone}
            )
        except httpx.HTTPStatusError as exc:
            raise DeliveryFailed(f"send failed with {exc.response.status_code}") from exc
        if not data.get("success"):
            reason = data.get("error") or data.get("message") or "Failed to send OTP."
            logger.warning("otp_delivery_rejected", principal_id=principal_id, reason=reason)
            raise DeliveryFailed(reason)
        logger.info(
            "otp_delivered",
            principal_id=principal_id,
            masked_phone=data.get("maskedPhone") or mask_phone(phone),
        )

    async def verify(self, principal_id: str, code: str) -> bool:
        data = await self._invoke(
            self.verify_function, {"userId": principal_id, "otp": code}
        )
        return bool(data.get("success"))


class DevOTPChannel:
    """Local channel that generates codes and logs them instead of sending.

    Used with the memory store; the code of the most recent delivery per
    principal is available through ``last_code`` for tests and local logins.
    """

    def __init__(self, *, code_length: int = 6, fail_delivery: bool = False) -> None:
        self.code_length = code_length
        self.fail_delivery = fail_delivery
        self.codes: Dict[str, str] = {}
        self.deliveries = 0

    def _generate(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.code_length))

    async def deliver(self, principal_id: str, phone: str) -> None:
        if self.fail_delivery:
            raise DeliveryFailed("dev channel configured to fail")
        code = self._generate()
        self.codes[principal_id] = code
        self.deliveries += 1
        # Dev mode: log the code instead of sending it
        logger.info(
            "otp_dev_mode",
            principal_id=principal_id,
            masked_phone=mask_phone(phone),
            dev_otp=code,
        )

    async def verify(self, principal_id: str, code: str) -> bool:
        expected = self.codes.get(principal_id)
        if expected is None:
            return False
        return hmac.compare_digest(expected, code)

    def last_code(self, principal_id: str) -> Optional[str]:
        return self.codes.get(principal_id)
