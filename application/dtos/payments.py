"""
Payment DTOs (Pydantic v2) used at application boundaries.

All orchestrator inputs and outputs are plain structured data so the HTTP
layer (or a task worker) can be swapped freely.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.types import condecimal

from domain.payment.document import GatewayDocument
from domain.payment.entity import TransactionKind, TransactionStatus


def _validate_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    u = v.upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class CallContext(BaseModel):
    """Caller identity supplied by the host platform."""

    tenant_id: str
    user_token: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InitiatePayment(BaseModel):
    """AUTHORIZE or PURCHASE.

    Exactly one source drives the gateway call: ``nonce`` (fresh card data),
    ``payment_method_id`` (stored card), or ``gateway_outcome`` (a response the
    hosted form already obtained). With none of them the call is a status
    re-check of ``transaction_id``.
    """

    kind: TransactionKind = TransactionKind.AUTHORIZE
    account_id: str
    payment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    amount: Optional[condecimal(gt=0, max_digits=15, decimal_places=2)] = None  # type: ignore[valid-type]
    currency: Optional[str] = None
    nonce: Optional[str] = None
    payment_method_id: Optional[str] = None
    gateway_outcome: Optional[dict[str, Any]] = None
    invoice_number: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    force_3ds: bool = False

    @field_validator("kind")
    @classmethod
    def _initiating_kind(cls, v: TransactionKind) -> TransactionKind:
        if v not in (TransactionKind.AUTHORIZE, TransactionKind.PURCHASE):
            raise ValueError("kind must be AUTHORIZE or PURCHASE")
        return v

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return _validate_currency(v)

    @model_validator(mode="after")
    def _require_money_for_gateway_calls(self):
        if (self.nonce or self.payment_method_id) and (self.amount is None or self.currency is None):
            raise ValueError("amount and currency are required when charging a nonce or stored card")
        return self

    @property
    def is_status_check(self) -> bool:
        return not (self.nonce or self.payment_method_id or self.gateway_outcome)


class FollowUpRequest(BaseModel):
    account_id: str
    payment_id: str
    transaction_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    original_gateway_transaction_id: Optional[str] = None
    invoice_number: Optional[str] = None


class CapturePayment(FollowUpRequest):
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    currency: str

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return _validate_currency(v)


class RefundPayment(CapturePayment):
    pass


class VoidPayment(FollowUpRequest):
    pass


class TransactionResult(BaseModel):
    """Canonical outcome returned to the host platform."""

    account_id: str
    payment_id: str
    transaction_id: str
    kind: TransactionKind
    status: TransactionStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    gateway_error: Optional[str] = None
    gateway_error_code: Optional[str] = None
    first_reference_id: Optional[str] = None
    second_reference_id: Optional[str] = None
    requires_3ds: bool = False
    redirect_url: Optional[str] = None
    created_at: Optional[datetime] = None
    properties: dict[str, Any] = Field(default_factory=dict)


class PaymentMethodInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: str
    payment_method_id: str
    gateway_card_id: str
    gateway_payer_id: Optional[str] = None
    is_default: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class AddPaymentMethod(BaseModel):
    account_id: str
    payment_method_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    gateway_card_id: str
    gateway_payer_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    set_default: bool = False


class NotificationOutcome(BaseModel):
    """Result of processing one webhook body."""

    notification_id: Optional[str] = None
    kind: Optional[str] = None
    resource_type: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    gateway_reference_id: Optional[str] = None
    payment_id: Optional[str] = None
    transaction_id: Optional[str] = None
    matched: bool = False
    updated: bool = False
    notified: bool = False
    previous_status: Optional[TransactionStatus] = None
    new_status: Optional[TransactionStatus] = None
    result_code: Optional[str] = None
    result_description: Optional[str] = None


class FormDescriptor(BaseModel):
    account_id: str
    client_token: str
    form_action_url: str
    test_mode: bool


class HostAccount(BaseModel):
    """Payer contact and billing info as known by the host platform."""

    account_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class GatewayReply(BaseModel):
    """A parsed gateway HTTP reply. Transport failures never produce one."""

    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def document(self) -> GatewayDocument:
        return GatewayDocument(self.body)


class Page(BaseModel):
    items: list[Any]
    total: int
    offset: int
    limit: int
