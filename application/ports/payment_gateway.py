"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements the OMPay adapter.
"""
from __future__ import annotations

from typing import Any, Mapping, Protocol, runtime_checkable

from application.dtos.payments import GatewayReply


@runtime_checkable
class PaymentGateway(Protocol):
    """OMPay REST surface.

    Every call returns a parsed ``GatewayReply`` for any response the gateway
    produced (2xx or a well-formed error body) and raises
    ``GatewayTransportError`` when no usable response exists.
    """

    provider: str

    async def create_client_token(self) -> str: ...

    async def create_payment(self, payload: dict[str, Any]) -> GatewayReply: ...

    async def capture_payment(self, gateway_transaction_id: str, payload: dict[str, Any]) -> GatewayReply: ...

    async def void_payment(self, gateway_transaction_id: str, payload: dict[str, Any]) -> GatewayReply: ...

    async def refund_payment(self, gateway_transaction_id: str, payload: dict[str, Any]) -> GatewayReply: ...

    async def get_payment(self, gateway_transaction_id: str) -> GatewayReply: ...

    async def get_session(self, session_id: str) -> GatewayReply: ...

    async def list_cards(self, payer_id: str) -> GatewayReply: ...

    async def delete_card(self, payer_id: str, card_id: str) -> GatewayReply: ...

    async def set_default_card(self, payer_id: str, card_id: str) -> GatewayReply: ...

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> None: ...

    async def aclose(self) -> None: ...
