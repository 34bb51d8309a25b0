"""
Application service for the card vault: add, list (with gateway refresh),
delete and default selection.

Remote gateway calls on delete/set-default are best-effort: their outcome is
logged and the local vault change always happens afterwards.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Optional

from application.dtos.payments import (
    AddPaymentMethod,
    CallContext,
    GatewayReply,
    Page,
    PaymentMethodInfo,
)
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_service import UnitOfWorkFactory
from core.logging_config import get_logger
from domain.common.exceptions import GatewayTransportError, PaymentMethodNotFoundException
from domain.payment.entity import PaymentMethodRecord
from domain.payment.service import PaymentMethodVault


logger = get_logger(__name__)


def _to_info(record: PaymentMethodRecord) -> PaymentMethodInfo:
    return PaymentMethodInfo.model_validate(record)


class PaymentMethodService:
    def __init__(self, gateway: PaymentGateway, uow_factory: UnitOfWorkFactory) -> None:
        self.gateway = gateway
        self._uow_factory = uow_factory

    async def add(self, req: AddPaymentMethod, context: CallContext) -> PaymentMethodInfo:
        async with self._uow_factory() as uow:
            existing = await uow.payment_methods.get_by_gateway_card_id(req.account_id, req.gateway_card_id, context.tenant_id)
            if existing is not None:
                logger.info(
                    "payment_method_already_enrolled",
                    account_id=req.account_id,
                    payment_method_id=existing.payment_method_id,
                )
                return _to_info(existing)
            record = await PaymentMethodVault(uow.payment_methods).enroll(
                account_id=req.account_id,
                tenant_id=context.tenant_id,
                gateway_card_id=req.gateway_card_id,
                gateway_payer_id=req.gateway_payer_id or req.metadata.get("ompay_payer_id"),
                metadata=req.metadata,
                is_default=req.set_default,
                payment_method_id=req.payment_method_id,
            )
        return _to_info(record)

    async def get_detail(self, payment_method_id: str, context: CallContext) -> PaymentMethodInfo:
        return _to_info(await self._require(payment_method_id, context))

    async def list_for_account(self, account_id: str, context: CallContext, *, refresh: bool = False) -> list[PaymentMethodInfo]:
        if refresh:
            await self._refresh_from_gateway(account_id, context)
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.payment_methods.list_by_account(account_id, context.tenant_id)
        return [_to_info(r) for r in records]

    async def _refresh_from_gateway(self, account_id: str, context: CallContext) -> None:
        async with self._uow_factory(readonly=True) as uow:
            payer_id = await uow.payment_methods.get_latest_payer_id(account_id, context.tenant_id)
        if not payer_id:
            logger.info("payment_methods_refresh_skipped", account_id=account_id, reason="no_payer_id")
            return
        try:
            reply = await self.gateway.list_cards(payer_id)
        except GatewayTransportError as exc:
            logger.warning("payment_methods_refresh_failed", account_id=account_id, payer_id=payer_id, error=exc.message)
            return
        if not reply.ok:
            logger.warning(
                "payment_methods_refresh_rejected",
                account_id=account_id,
                payer_id=payer_id,
                http_status=reply.status_code,
            )
            return
        if "credit_cards" not in reply.body:
            logger.warning("payment_methods_refresh_missing_cards", account_id=account_id, payer_id=payer_id)
        cards = reply.document.get_list("credit_cards")
        async with self._uow_factory() as uow:
            await PaymentMethodVault(uow.payment_methods).synchronize(
                account_id=account_id,
                tenant_id=context.tenant_id,
                gateway_payer_id=payer_id,
                cards=cards,
            )

    async def delete(self, payment_method_id: str, context: CallContext) -> bool:
        """Returns False when there was nothing to delete."""
        async with self._uow_factory(readonly=True) as uow:
            record = await uow.payment_methods.get(payment_method_id, context.tenant_id)
        if record is None:
            logger.info("payment_method_delete_skipped", payment_method_id=payment_method_id)
            return False

        payer_id = record.resolved_payer_id
        if payer_id:
            await self._best_effort(
                "gateway_card_delete",
                lambda: self.gateway.delete_card(payer_id, record.gateway_card_id),
                payment_method_id=payment_method_id,
            )
        else:
            logger.warning("gateway_card_delete_skipped", payment_method_id=payment_method_id, reason="no_payer_id")

        async with self._uow_factory() as uow:
            await uow.payment_methods.mark_deleted(payment_method_id, context.tenant_id)
        logger.info("payment_method_deleted", payment_method_id=payment_method_id, account_id=record.account_id)
        return True

    async def set_default(self, payment_method_id: str, context: CallContext) -> PaymentMethodInfo:
        record = await self._require(payment_method_id, context)

        payer_id = record.resolved_payer_id
        if payer_id:
            await self._best_effort(
                "gateway_default_card_update",
                lambda: self.gateway.set_default_card(payer_id, record.gateway_card_id),
                payment_method_id=payment_method_id,
            )

        async with self._uow_factory() as uow:
            await PaymentMethodVault(uow.payment_methods).make_default(record)
        record.is_default = True
        logger.info("payment_method_default_set", payment_method_id=payment_method_id, account_id=record.account_id)
        return _to_info(record)

    async def search(self, search_key: str, context: CallContext, *, offset: int = 0, limit: int = 100) -> Page:
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.payment_methods.search(search_key, context.tenant_id, offset=offset, limit=limit)
            total = await uow.payment_methods.count_search(search_key, context.tenant_id)
        return Page(items=[_to_info(r) for r in records], total=total, offset=offset, limit=limit)

    async def _require(self, payment_method_id: str, context: CallContext) -> PaymentMethodRecord:
        async with self._uow_factory(readonly=True) as uow:
            record = await uow.payment_methods.get(payment_method_id, context.tenant_id)
        if record is None:
            raise PaymentMethodNotFoundException(payment_method_id)
        return record

    @staticmethod
    async def _best_effort(operation: str, call: Callable[[], Awaitable[GatewayReply]], **fields) -> bool:
        """Remote phase of a two-phase vault change; never raises."""
        try:
            reply: Optional[GatewayReply] = await call()
        except Exception as exc:
            logger.warning(f"{operation}_failed", error=str(exc), **fields)
            return False
        if reply.ok or reply.not_found:
            logger.info(f"{operation}_done", http_status=reply.status_code, **fields)
            return True
        logger.warning(f"{operation}_rejected", http_status=reply.status_code, **fields)
        return False
