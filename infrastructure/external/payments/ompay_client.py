"""
OMPay REST adapter.

All endpoints are relative to ``{api_base_url}/{merchant_id}`` and are called
with a precomputed Basic authorization header. Replies are returned as
``GatewayReply`` whatever their HTTP status; only transport failures raise.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import GatewayReply
from core.logging_config import get_logger
from core.settings import OmPaySettings, ompay_settings
from domain.common.exceptions import GatewayTransportError, WebhookSignatureException
from infrastructure.external.api_clients.base import BaseAPIClient, HTTPMethod


logger = get_logger(__name__)

SIGNATURE_HEADER = "x-ompay-signature"


class OmPayClient(BaseAPIClient):
    provider = "ompay"

    def __init__(
        self,
        settings: Optional[OmPaySettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or ompay_settings
        timeouts = self.settings.timeouts
        super().__init__(
            self.settings.api_base_url_with_merchant,
            timeout=httpx.Timeout(
                connect=timeouts.connect,
                read=timeouts.read,
                write=timeouts.write,
                pool=timeouts.pool,
            ),
            max_retries=self.settings.retry.max,
            retry_delay=self.settings.retry.base_backoff,
            headers={"Authorization": self.settings.basic_auth_header},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.close()

    async def _call(
        self,
        method: HTTPMethod,
        endpoint: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> GatewayReply:
        response = await self._request(method, endpoint, json_data=payload)
        self._log(
            "gateway_call",
            method=method.value,
            endpoint=endpoint,
            http_status=response.status_code,
            elapsed_ms=round(response.elapsed_ms, 2),
        )
        return GatewayReply(status_code=response.status_code, body=response.data)

    async def create_client_token(self) -> str:
        reply = await self._call(HTTPMethod.POST, "client_token", {"grant_type": "client_credentials"})
        token = reply.document.get_str("accessToken")
        if not reply.ok or not token:
            raise GatewayTransportError(
                "Gateway did not issue a client token",
                status_code=reply.status_code,
                url=self._build_url("client_token"),
            )
        return token

    async def create_payment(self, payload: dict[str, Any]) -> GatewayReply:
        return await self._call(HTTPMethod.POST, "payment", payload)

    async def capture_payment(self, gateway_transaction_id: str, payload: dict[str, Any]) -> GatewayReply:
        return await self._call(HTTPMethod.POST, f"payment/{gateway_transaction_id}/capture", payload)

    async def void_payment(self, gateway_transaction_id: str, payload: dict[str, Any]) -> GatewayReply:
        return await self._call(HTTPMethod.POST, f"payment/{gateway_transaction_id}/void", payload)

    async def refund_payment(self, gateway_transaction_id: str, payload: dict[str, Any]) -> GatewayReply:
        return await self._call(HTTPMethod.POST, f"payment/{gateway_transaction_id}/refund", payload)

    async def get_payment(self, gateway_transaction_id: str) -> GatewayReply:
        return await self._call(HTTPMethod.GET, f"payment/{gateway_transaction_id}")

    async def get_session(self, session_id: str) -> GatewayReply:
        return await self._call(HTTPMethod.GET, f"session/{session_id}")

    async def list_cards(self, payer_id: str) -> GatewayReply:
        return await self._call(HTTPMethod.GET, f"payer/{payer_id}/card")

    async def delete_card(self, payer_id: str, card_id: str) -> GatewayReply:
        return await self._call(HTTPMethod.DELETE, f"payer/{payer_id}/card/{card_id}")

    async def set_default_card(self, payer_id: str, card_id: str) -> GatewayReply:
        return await self._call(HTTPMethod.PUT, f"payer/{payer_id}", {"default_card": card_id})

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> None:
        """HMAC-SHA256 of the raw body, hex encoded, optionally prefixed with ``sha256=``.

        Verification is skipped when no signing secret is configured.
        """
        secret = self.settings.webhook.signing_secret
        if not secret:
            logger.debug("webhook_signature_check_skipped", reason="no_signing_secret")
            return
        provided = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER)
        if not provided:
            raise WebhookSignatureException("Missing webhook signature")
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, provided.strip().lower()):
            logger.warning("webhook_signature_mismatch")
            raise WebhookSignatureException()

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, provider=self.provider, **kwargs)
