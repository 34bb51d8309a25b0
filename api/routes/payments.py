"""
OMPay API routes.

Thin HTTP surface over the payment and payment-method application services;
no gateway details here.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, condecimal
from starlette import status as http_status

from api.dependencies import (
    get_call_context,
    get_payment_gateway,
    get_payment_method_service,
    get_payment_service,
)
from api.middleware import get_client_ip_from_request
from application.dtos.payments import (
    AddPaymentMethod,
    CallContext,
    CapturePayment,
    InitiatePayment,
    RefundPayment,
    VoidPayment,
)
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_method_service import PaymentMethodService
from application.services.payment_service import PaymentService
from core.config import settings
from core.logging_config import get_logger
from core.response import paginated_response, success_response
from core.settings import ompay_settings
from domain.common.exceptions import WebhookSignatureException


router = APIRouter(prefix="/ompay", tags=["OMPay"])
logger = get_logger(__name__)


class VoidBody(BaseModel):
    account_id: str
    transaction_id: Optional[str] = None
    original_gateway_transaction_id: Optional[str] = None
    invoice_number: Optional[str] = None


class CaptureBody(VoidBody):
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    currency: str


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


def _follow_up_fields(payment_id: str, body: BaseModel) -> dict:
    return {"payment_id": payment_id, **body.model_dump(exclude_none=True)}


def _ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


# ----------------------------------------------------------------------
# Hosted form and initiation
# ----------------------------------------------------------------------
@router.get("/form", summary="Hosted payment form descriptor")
async def payment_form(
    account_id: str = Query(...),
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    descriptor = await service.build_form_descriptor(account_id, context)
    return success_response(data=_dump(descriptor))


@router.post("/process-nonce", summary="Authorize or purchase")
async def process_nonce(
    payload: InitiatePayment,
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.initiate(payload, context)
    return success_response(data=_dump(result))


# ----------------------------------------------------------------------
# Follow-ups
# ----------------------------------------------------------------------
@router.post("/payments/{payment_id}/capture", summary="Capture an authorization")
async def capture_payment(
    payment_id: str,
    body: CaptureBody,
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.capture(CapturePayment(**_follow_up_fields(payment_id, body)), context)
    return success_response(data=_dump(result))


@router.post("/payments/{payment_id}/void", summary="Void an authorization")
async def void_payment(
    payment_id: str,
    body: VoidBody,
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.void(VoidPayment(**_follow_up_fields(payment_id, body)), context)
    return success_response(data=_dump(result))


@router.post("/payments/{payment_id}/refund", summary="Refund a settled payment")
async def refund_payment(
    payment_id: str,
    body: CaptureBody,
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.refund(RefundPayment(**_follow_up_fields(payment_id, body)), context)
    return success_response(data=_dump(result))


# ----------------------------------------------------------------------
# Payment info and reconciliation
# ----------------------------------------------------------------------
@router.get("/payments", summary="Search ledger")
async def search_payments(
    search_key: str = Query(..., min_length=1),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    page = await service.search_transactions(search_key, context, offset=offset, limit=limit)
    return paginated_response([_dump(i) for i in page.items], page.total, page.offset, page.limit)


@router.get("/payments/{payment_id}", summary="Payment transactions")
async def payment_info(
    payment_id: str,
    refresh: bool = Query(default=False),
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    results = await service.get_payment_info(payment_id, context, refresh=refresh)
    return success_response(data=[_dump(r) for r in results])


@router.post("/payments/{payment_id}/refresh", summary="Refresh pending transactions")
async def refresh_payment(
    payment_id: str,
    session_id: Optional[str] = Query(default=None),
    context: CallContext = Depends(get_call_context),
    service: PaymentService = Depends(get_payment_service),
):
    results = await service.complete_redirect(payment_id, context, session_id=session_id)
    return success_response(data=[_dump(r) for r in results])


@router.post("/webhook", summary="OMPay webhook")
async def ompay_webhook(
    request: Request,
    context: CallContext = Depends(get_call_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    service: PaymentService = Depends(get_payment_service),
):
    allowlist = ompay_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = get_client_ip_from_request(request)
        if not _ip_allowed(remote_ip, allowlist):
            logger.warning("webhook_ip_rejected", remote_ip=remote_ip)
            raise WebhookSignatureException("Webhook source not allowed")

    raw_body = await request.body()
    gateway.verify_webhook(dict(request.headers), raw_body)
    outcome = await service.handle_webhook_body(raw_body, context)
    # 200 acknowledges receipt so the gateway stops retrying
    return success_response(data=_dump(outcome), message="Webhook received")


# ----------------------------------------------------------------------
# Payment methods
# ----------------------------------------------------------------------
@router.get("/accounts/{account_id}/payment-methods", summary="List payment methods")
async def list_payment_methods(
    account_id: str,
    refresh: bool = Query(default=False),
    context: CallContext = Depends(get_call_context),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    methods = await service.list_for_account(account_id, context, refresh=refresh)
    return success_response(data=[_dump(m) for m in methods])


class AddPaymentMethodBody(BaseModel):
    payment_method_id: Optional[str] = None
    gateway_card_id: str
    gateway_payer_id: Optional[str] = None
    metadata: dict = {}
    set_default: bool = False


@router.post(
    "/accounts/{account_id}/payment-methods",
    summary="Add payment method",
    status_code=http_status.HTTP_201_CREATED,
)
async def add_payment_method(
    account_id: str,
    body: AddPaymentMethodBody,
    context: CallContext = Depends(get_call_context),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    req = AddPaymentMethod(account_id=account_id, **body.model_dump(exclude_none=True))
    info = await service.add(req, context)
    return success_response(data=_dump(info))


@router.get("/payment-methods", summary="Search payment methods")
async def search_payment_methods(
    search_key: str = Query(..., min_length=1),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    context: CallContext = Depends(get_call_context),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    page = await service.search(search_key, context, offset=offset, limit=limit)
    return paginated_response([_dump(i) for i in page.items], page.total, page.offset, page.limit)


@router.get("/payment-methods/{payment_method_id}", summary="Payment method detail")
async def payment_method_detail(
    payment_method_id: str,
    context: CallContext = Depends(get_call_context),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    info = await service.get_detail(payment_method_id, context)
    return success_response(data=_dump(info))


@router.delete("/payment-methods/{payment_method_id}", summary="Delete payment method")
async def delete_payment_method(
    payment_method_id: str,
    context: CallContext = Depends(get_call_context),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    deleted = await service.delete(payment_method_id, context)
    return success_response(data={"payment_method_id": payment_method_id, "deleted": deleted})


@router.put("/payment-methods/{payment_method_id}/default", summary="Set default payment method")
async def set_default_payment_method(
    payment_method_id: str,
    context: CallContext = Depends(get_call_context),
    service: PaymentMethodService = Depends(get_payment_method_service),
):
    info = await service.set_default(payment_method_id, context)
    return success_response(data=_dump(info))


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------
@router.get("/healthcheck", summary="Gateway configuration health")
async def healthcheck(response: Response):
    report = ompay_settings.healthcheck()
    if not report["healthy"]:
        response.status_code = http_status.HTTP_503_SERVICE_UNAVAILABLE
    return success_response(data=report)
