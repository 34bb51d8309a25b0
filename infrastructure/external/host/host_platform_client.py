"""
HTTP adapter for the host billing platform (Kill Bill REST API).

Account lookups are advisory: failures are logged and yield ``None`` so a
payment can proceed without payer details. Notifications and payment method
registration raise on failure; callers decide whether that is fatal.
"""
from __future__ import annotations

import base64
from typing import Optional

import httpx

from application.dtos.payments import CallContext, HostAccount
from core.logging_config import get_logger
from core.settings import HostPlatformSettings, ompay_settings
from domain.common.exceptions import GatewayTransportError, HostPlatformException
from infrastructure.external.api_clients.base import BaseAPIClient


logger = get_logger(__name__)

PLUGIN_NAME = "killbill-ompay"
CREATED_BY = "ompay-engine"


class HostPlatformClient(BaseAPIClient):
    def __init__(
        self,
        settings: Optional[HostPlatformSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or ompay_settings.host
        headers = {"X-Killbill-CreatedBy": CREATED_BY}
        if self.settings.api_key:
            headers["X-Killbill-ApiKey"] = self.settings.api_key
        if self.settings.api_secret:
            headers["X-Killbill-ApiSecret"] = self.settings.api_secret
        if self.settings.username:
            raw = f"{self.settings.username}:{self.settings.password or ''}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
        super().__init__(
            f"{(self.settings.base_url or 'http://localhost:8080').rstrip('/')}/1.0/kb",
            timeout=self.settings.timeout,
            max_retries=1,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.close()

    @staticmethod
    def _context_headers(context: CallContext) -> dict[str, str]:
        return {"X-Killbill-Reason": "ompay", "X-Tenant-Id": context.tenant_id}

    async def get_account(self, account_id: str, context: CallContext) -> Optional[HostAccount]:
        try:
            response = await self.get(f"accounts/{account_id}", headers=self._context_headers(context))
        except GatewayTransportError as exc:
            logger.warning("host_account_lookup_failed", account_id=account_id, error=exc.message)
            return None
        if not response.is_success:
            logger.warning("host_account_lookup_rejected", account_id=account_id, http_status=response.status_code)
            return None
        data = response.data
        return HostAccount(
            account_id=account_id,
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            address1=data.get("address1"),
            address2=data.get("address2"),
            city=data.get("city"),
            state=data.get("state"),
            postal_code=data.get("postalCode"),
            country=data.get("country"),
        )

    async def notify_pending_transaction_resolved(
        self,
        account_id: str,
        transaction_id: str,
        is_success: bool,
        context: CallContext,
    ) -> None:
        payload = {
            "transactionId": transaction_id,
            "status": "SUCCESS" if is_success else "PAYMENT_FAILURE",
        }
        response = await self.post(
            f"paymentTransactions/{transaction_id}",
            json_data=payload,
            headers=self._context_headers(context),
        )
        if not response.is_success:
            raise HostPlatformException(
                "Host platform rejected transaction state change",
                operation="notify_pending_transaction_resolved",
                status_code=response.status_code,
            )
        logger.info(
            "host_transaction_state_changed",
            account_id=account_id,
            transaction_id=transaction_id,
            is_success=is_success,
        )

    async def register_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        gateway_card_id: str,
        is_default: bool,
        context: CallContext,
    ) -> None:
        payload = {
            "accountId": account_id,
            "externalKey": payment_method_id,
            "pluginName": PLUGIN_NAME,
            "pluginInfo": {
                "externalPaymentMethodId": gateway_card_id,
                "isDefaultPaymentMethod": is_default,
            },
        }
        response = await self._request(
            "POST",
            f"accounts/{account_id}/paymentMethods",
            params={"isDefault": str(is_default).lower()},
            json_data=payload,
            headers=self._context_headers(context),
        )
        if not response.is_success:
            raise HostPlatformException(
                "Host platform rejected payment method registration",
                operation="register_payment_method",
                status_code=response.status_code,
            )
        logger.info("host_payment_method_registered", account_id=account_id, payment_method_id=payment_method_id)
