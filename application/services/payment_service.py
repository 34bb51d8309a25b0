"""
Application service orchestrating OMPay payment use-cases.

This class depends only on the application ports (gateway, host platform),
the domain model and a unit-of-work factory. Implementations are provided by
infrastructure and injected from the composition root (API/tasks), keeping
dependencies one-way.

Reconciliation contract: a ledger record's outcome envelope is rewritten
through a compare-and-swap on its revision, the rewrite is committed before
the host platform is told, and the host platform is told only when the
record's previous status was PENDING.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from application.dtos.payments import (
    CallContext,
    CapturePayment,
    FollowUpRequest,
    FormDescriptor,
    HostAccount,
    InitiatePayment,
    NotificationOutcome,
    Page,
    RefundPayment,
    TransactionResult,
    VoidPayment,
)
from application.ports.host_platform import HostPlatform
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.common.exceptions import (
    BusinessException,
    DomainValidationException,
    InvalidNotificationException,
    MissingOriginatingTransactionException,
    PaymentMethodNotFoundException,
    ReconciliationConflictException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.document import GatewayDocument
from domain.payment.entity import (
    PaymentMethodRecord,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from domain.payment.events import PendingTransactionResolved
from domain.payment.service import PaymentMethodVault, card_metadata
from domain.payment.status import ORIGINATING_CANDIDATES, classify_outcome, map_gateway_state


logger = get_logger(__name__)

UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]
RecordLocator = Callable[[AbstractUnitOfWork], Awaitable[Optional[TransactionRecord]]]


def _money(amount: Decimal) -> str:
    return format(amount, "f")


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _card_of(document: GatewayDocument) -> GatewayDocument:
    card = document.get_nested("payer").get_nested("funding_instrument").get_nested("credit_card")
    return card if card else document.get_nested("credit_card")


@dataclass
class _Reconciliation:
    record: TransactionRecord
    previous_status: TransactionStatus
    new_status: TransactionStatus
    updated: bool = False
    notified: bool = False


class PaymentService:
    def __init__(
        self,
        gateway: PaymentGateway,
        host: HostPlatform,
        uow_factory: UnitOfWorkFactory,
        *,
        form_action_url: str = "",
        test_mode: bool = True,
        max_reconcile_attempts: int = 3,
    ) -> None:
        self.gateway = gateway
        self.host = host
        self._uow_factory = uow_factory
        self._form_action_url = form_action_url
        self._test_mode = test_mode
        self._max_reconcile_attempts = max_reconcile_attempts

    # ------------------------------------------------------------------
    # Hosted form
    # ------------------------------------------------------------------
    async def build_form_descriptor(self, account_id: str, context: CallContext) -> FormDescriptor:
        token = await self.gateway.create_client_token()
        logger.info("form_descriptor_built", account_id=account_id, tenant_id=context.tenant_id)
        return FormDescriptor(
            account_id=account_id,
            client_token=token,
            form_action_url=self._form_action_url,
            test_mode=self._test_mode,
        )

    # ------------------------------------------------------------------
    # Initiation (authorize / purchase)
    # ------------------------------------------------------------------
    async def initiate(self, req: InitiatePayment, context: CallContext) -> TransactionResult:
        if req.is_status_check:
            return await self._recheck(req.transaction_id, context)

        stored: Optional[PaymentMethodRecord] = None
        if req.gateway_outcome is not None:
            document = GatewayDocument(req.gateway_outcome)
            if not document.get_str("id"):
                raise DomainValidationException("gateway_outcome must carry the gateway transaction id", field="gateway_outcome")
            http_ok = True
            logger.info("payment_outcome_received", payment_id=req.payment_id, kind=req.kind.value)
        else:
            if req.payment_method_id and not req.nonce:
                stored = await self._stored_payment_method(req.payment_method_id, context)
            payload = await self._initiation_payload(req, stored, context)
            logger.info(
                "payment_initiate_request",
                account_id=req.account_id,
                payment_id=req.payment_id,
                transaction_id=req.transaction_id,
                kind=req.kind.value,
                amount=str(req.amount),
                currency=req.currency,
                stored_card=stored is not None,
            )
            reply = await self.gateway.create_payment(payload)
            document = reply.document
            http_ok = reply.ok

        state = document.get_str("state")
        status = classify_outcome(req.kind, state, http_ok)
        card = _card_of(document)
        record = TransactionRecord(
            account_id=req.account_id,
            payment_id=req.payment_id,
            transaction_id=req.transaction_id,
            tenant_id=context.tenant_id,
            kind=req.kind,
            status=status,
            amount=req.amount,
            currency=req.currency,
            gateway_transaction_id=document.get_str("id"),
            gateway_reference_id=document.get_str("reference_id"),
            gateway_payer_id=document.get_nested("payer").get_str("id") or (stored.resolved_payer_id if stored else None),
            gateway_card_id=card.get_str("id") or (stored.gateway_card_id if stored else None),
            gateway_state=state,
            redirect_url=document.find_str("redirect_url", "links.redirect_url"),
            authenticate_url=document.find_str("authenticate_url", "three_ds.authenticate_url"),
            additional_data=document.to_dict(),
        )

        enrolled: Optional[PaymentMethodRecord] = None
        async with self._uow_factory() as uow:
            record = await uow.ledger.add(record)
            if status == TransactionStatus.PROCESSED and record.gateway_card_id:
                enrolled = await self._enroll_from_response(uow, record, card)

        logger.info(
            "payment_initiate_response",
            payment_id=record.payment_id,
            transaction_id=record.transaction_id,
            gateway_transaction_id=record.gateway_transaction_id,
            state=state,
            status=status.value,
        )
        if enrolled is not None:
            await self._register_with_host(enrolled, context)
        return self._to_result(record)

    async def _recheck(self, transaction_id: str, context: CallContext) -> TransactionResult:
        async with self._uow_factory(readonly=True) as uow:
            record = await uow.ledger.get_by_transaction_id(transaction_id, context.tenant_id)
        if record is None:
            raise TransactionNotFoundException(transaction_id)
        if record.is_pending:
            record = await self._refresh_record(record, context)
        return self._to_result(record)

    async def _stored_payment_method(self, payment_method_id: str, context: CallContext) -> PaymentMethodRecord:
        async with self._uow_factory(readonly=True) as uow:
            stored = await uow.payment_methods.get(payment_method_id, context.tenant_id)
        if stored is None:
            raise PaymentMethodNotFoundException(payment_method_id)
        return stored

    async def _initiation_payload(
        self,
        req: InitiatePayment,
        stored: Optional[PaymentMethodRecord],
        context: CallContext,
    ) -> dict[str, Any]:
        payer: dict[str, Any] = {"payment_type": "CC"}
        if stored is not None:
            payer["id"] = stored.resolved_payer_id
            payer["funding_instrument"] = {"credit_card_token": {"credit_card_id": stored.gateway_card_id}}
        else:
            payer["funding_instrument"] = {"credit_card": {"nonce": req.nonce}}
        account = await self.host.get_account(req.account_id, context)
        if account is not None:
            payer["payer_info"] = self._payer_info(account)

        payload: dict[str, Any] = {
            "intent": "sale" if req.kind == TransactionKind.PURCHASE else "auth",
            "payer": _compact(payer),
            "transaction": {
                "amount": {"total": _money(req.amount), "currency": req.currency},
                "invoice_number": req.invoice_number or req.payment_id,
            },
            "return_url": req.return_url,
            "cancel_url": req.cancel_url,
        }
        if req.kind == TransactionKind.AUTHORIZE:
            payload["three_ds"] = {"mode": "force" if req.force_3ds else "auto"}
        return _compact(payload)

    @staticmethod
    def _payer_info(account: HostAccount) -> dict[str, Any]:
        address = _compact(
            {
                "line1": account.address1,
                "line2": account.address2,
                "city": account.city,
                "state": account.state,
                "postal_code": account.postal_code,
                "country_code": account.country,
            }
        )
        info = _compact({"name": account.name, "email": account.email, "phone": account.phone})
        if address:
            info["billing_address"] = address
        return info

    async def _enroll_from_response(
        self,
        uow: AbstractUnitOfWork,
        record: TransactionRecord,
        card: GatewayDocument,
    ) -> Optional[PaymentMethodRecord]:
        existing = await uow.payment_methods.get_by_gateway_card_id(
            record.account_id, record.gateway_card_id, record.tenant_id
        )
        if existing is not None:
            return None
        has_default = any(pm.is_default for pm in await uow.payment_methods.list_by_account(record.account_id, record.tenant_id))
        return await PaymentMethodVault(uow.payment_methods).enroll(
            account_id=record.account_id,
            tenant_id=record.tenant_id,
            gateway_card_id=record.gateway_card_id,
            gateway_payer_id=record.gateway_payer_id,
            metadata=card_metadata(card),
            is_default=not has_default,
        )

    async def _register_with_host(self, enrolled: PaymentMethodRecord, context: CallContext) -> None:
        try:
            await self.host.register_payment_method(
                enrolled.account_id,
                enrolled.payment_method_id,
                enrolled.gateway_card_id,
                enrolled.is_default,
                context,
            )
        except Exception as exc:
            logger.error(
                "host_payment_method_registration_failed",
                account_id=enrolled.account_id,
                payment_method_id=enrolled.payment_method_id,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Capture / void / refund
    # ------------------------------------------------------------------
    async def capture(self, req: CapturePayment, context: CallContext) -> TransactionResult:
        return await self._follow_up(TransactionKind.CAPTURE, req, context, amount=req.amount, currency=req.currency)

    async def void(self, req: VoidPayment, context: CallContext) -> TransactionResult:
        return await self._follow_up(TransactionKind.VOID, req, context, amount=None, currency=None)

    async def refund(self, req: RefundPayment, context: CallContext) -> TransactionResult:
        return await self._follow_up(TransactionKind.REFUND, req, context, amount=req.amount, currency=req.currency)

    async def _follow_up(
        self,
        kind: TransactionKind,
        req: FollowUpRequest,
        context: CallContext,
        *,
        amount: Optional[Decimal],
        currency: Optional[str],
    ) -> TransactionResult:
        original_id = await self._resolve_originating(kind, req, context)
        payload: dict[str, Any] = {"invoice_number": req.invoice_number or req.payment_id}
        if amount is not None:
            payload["amount"] = _money(amount)

        logger.info(
            "payment_follow_up_request",
            kind=kind.value,
            payment_id=req.payment_id,
            transaction_id=req.transaction_id,
            original_gateway_transaction_id=original_id,
        )
        send = {
            TransactionKind.CAPTURE: self.gateway.capture_payment,
            TransactionKind.VOID: self.gateway.void_payment,
            TransactionKind.REFUND: self.gateway.refund_payment,
        }[kind]
        reply = await send(original_id, payload)
        document = reply.document
        state = document.get_str("state")
        status = classify_outcome(kind, state, reply.ok)

        record = TransactionRecord(
            account_id=req.account_id,
            payment_id=req.payment_id,
            transaction_id=req.transaction_id,
            tenant_id=context.tenant_id,
            kind=kind,
            status=status,
            amount=amount,
            currency=currency,
            gateway_transaction_id=document.get_str("id"),
            gateway_reference_id=original_id,
            gateway_state=state,
            additional_data=document.to_dict(),
        )
        async with self._uow_factory() as uow:
            record = await uow.ledger.add(record)

        logger.info(
            "payment_follow_up_response",
            kind=kind.value,
            payment_id=record.payment_id,
            gateway_transaction_id=record.gateway_transaction_id,
            http_status=reply.status_code,
            state=state,
            status=status.value,
        )
        return self._to_result(record)

    async def _resolve_originating(self, kind: TransactionKind, req: FollowUpRequest, context: CallContext) -> str:
        if req.original_gateway_transaction_id:
            return req.original_gateway_transaction_id
        async with self._uow_factory(readonly=True) as uow:
            for origin_kind, state in ORIGINATING_CANDIDATES[kind]:
                origin = await uow.ledger.get_latest_by_kind_and_state(
                    req.payment_id, origin_kind, state, context.tenant_id
                )
                if origin is not None and origin.gateway_transaction_id:
                    return origin.gateway_transaction_id
        logger.warning("originating_transaction_missing", kind=kind.value, payment_id=req.payment_id)
        raise MissingOriginatingTransactionException(req.payment_id, kind.value.lower())

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def handle_webhook_body(self, raw: str | bytes, context: CallContext) -> NotificationOutcome:
        try:
            body = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidNotificationException("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise InvalidNotificationException("Webhook body must be a JSON object")

        notification = GatewayDocument(body)
        resource = notification.get_nested("resource")
        outcome = NotificationOutcome(
            notification_id=notification.get_str("id"),
            kind=notification.get_str("kind"),
            resource_type=notification.get_str("resource_type"),
            gateway_transaction_id=resource.get_str("id"),
            gateway_reference_id=resource.get_str("reference_id"),
            result_code=resource.find_str("result.code"),
            result_description=resource.find_str("result.description", "result.message"),
        )
        if (outcome.resource_type or "").lower() != "payment":
            logger.info("webhook_ignored", notification_id=outcome.notification_id, resource_type=outcome.resource_type)
            return outcome
        if not outcome.gateway_transaction_id:
            raise InvalidNotificationException("Webhook resource id is missing")

        new_state = resource.get_str("state")

        async def locate(uow: AbstractUnitOfWork) -> Optional[TransactionRecord]:
            tenant_id = context.tenant_id
            record = await uow.ledger.get_by_gateway_transaction_id(outcome.gateway_transaction_id, tenant_id)
            if record is None and outcome.gateway_reference_id:
                # reference_id points back at the originating gateway transaction
                record = await uow.ledger.get_by_gateway_transaction_id(outcome.gateway_reference_id, tenant_id)
                if record is None:
                    record = await uow.ledger.get_by_gateway_reference_id(outcome.gateway_reference_id, tenant_id)
            return record

        def merge(previous: dict) -> dict:
            merged = dict(previous)
            merged["state"] = new_state
            merged["notification_kind"] = outcome.kind
            merged["notification_id"] = outcome.notification_id
            merged["notification_processed_time"] = datetime.now(timezone.utc).isoformat()
            if resource.has_object("result"):
                merged["result"] = resource.get_nested("result").to_dict()
            transaction = resource.get_nested("transaction")
            if transaction.has_object("amount"):
                merged["transaction"] = transaction.to_dict()
            return merged

        reconciliation = await self._apply_outcome(locate, new_state, merge, context, channel="webhook")
        if reconciliation is None:
            logger.info(
                "webhook_unknown_transaction",
                notification_id=outcome.notification_id,
                gateway_transaction_id=outcome.gateway_transaction_id,
                gateway_reference_id=outcome.gateway_reference_id,
            )
            return outcome

        record = reconciliation.record
        outcome.matched = True
        outcome.payment_id = record.payment_id
        outcome.transaction_id = record.transaction_id
        outcome.previous_status = reconciliation.previous_status
        outcome.new_status = reconciliation.new_status
        outcome.updated = reconciliation.updated
        outcome.notified = reconciliation.notified
        logger.info(
            "webhook_processed",
            notification_id=outcome.notification_id,
            payment_id=record.payment_id,
            previous_status=reconciliation.previous_status.value,
            new_status=reconciliation.new_status.value,
            updated=reconciliation.updated,
            notified=reconciliation.notified,
        )
        return outcome

    async def refresh_pending(self, payment_id: str, context: CallContext) -> list[TransactionResult]:
        """Re-fetch every PENDING record of the payment; one failure never stops the rest."""
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.ledger.list_by_payment(payment_id, context.tenant_id)
        for record in records:
            if not record.is_pending:
                continue
            try:
                await self._refresh_record(record, context)
            except BusinessException as exc:
                logger.warning(
                    "refresh_record_failed",
                    payment_id=payment_id,
                    record_id=record.id,
                    gateway_transaction_id=record.gateway_transaction_id,
                    error_type=exc.error_type,
                    error=exc.message,
                )
        return await self.get_payment_info(payment_id, context)

    async def get_payment_info(self, payment_id: str, context: CallContext, *, refresh: bool = False) -> list[TransactionResult]:
        if refresh:
            return await self.refresh_pending(payment_id, context)
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.ledger.list_by_payment(payment_id, context.tenant_id)
        return [self._to_result(record) for record in records]

    async def list_stale_pending(self, *, older_than_seconds: int, limit: int = 100) -> list[tuple[str, str]]:
        """(tenant_id, payment_id) pairs still PENDING and untouched for ``older_than_seconds``."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        async with self._uow_factory(readonly=True) as uow:
            return await uow.ledger.list_pending_payments(cutoff, limit)

    async def complete_redirect(
        self,
        payment_id: str,
        context: CallContext,
        *,
        session_id: Optional[str] = None,
    ) -> list[TransactionResult]:
        """3-D Secure return: the shopper is back, pull the outcome."""
        if session_id:
            # session lookup is informational; the refresh below settles the record
            try:
                reply = await self.gateway.get_session(session_id)
            except BusinessException as exc:
                logger.warning(
                    "redirect_session_unavailable",
                    payment_id=payment_id,
                    session_id=session_id,
                    error_type=exc.error_type,
                    error=exc.message,
                )
            else:
                logger.info(
                    "redirect_session_retrieved",
                    payment_id=payment_id,
                    session_id=session_id,
                    http_status=reply.status_code,
                    state=reply.document.get_str("state"),
                )
        return await self.refresh_pending(payment_id, context)

    async def _refresh_record(self, record: TransactionRecord, context: CallContext) -> TransactionRecord:
        if not record.gateway_transaction_id:
            logger.warning("refresh_skipped_without_gateway_id", record_id=record.id, payment_id=record.payment_id)
            return record
        reply = await self.gateway.get_payment(record.gateway_transaction_id)
        if not reply.ok:
            logger.warning(
                "refresh_fetch_rejected",
                record_id=record.id,
                gateway_transaction_id=record.gateway_transaction_id,
                http_status=reply.status_code,
            )
            return record
        fresh = reply.document

        async def locate(uow: AbstractUnitOfWork) -> Optional[TransactionRecord]:
            return await uow.ledger.get_by_id(record.id)

        reconciliation = await self._apply_outcome(
            locate, fresh.get_str("state"), lambda _previous: fresh.to_dict(), context, channel="refresh"
        )
        return reconciliation.record if reconciliation else record

    async def _apply_outcome(
        self,
        locate: RecordLocator,
        new_state: Optional[str],
        build_envelope: Callable[[dict], dict],
        context: CallContext,
        *,
        channel: str,
    ) -> Optional[_Reconciliation]:
        conflicted: Optional[str] = None
        for _ in range(self._max_reconcile_attempts):
            async with self._uow_factory() as uow:
                record = await locate(uow)
                if record is None:
                    return None
                previous = record.status
                if new_state is None:
                    return _Reconciliation(record, previous, previous)
                new_status = map_gateway_state(new_state)
                if new_status == previous:
                    return _Reconciliation(record, previous, new_status)
                envelope = build_envelope(record.additional_data)
                swapped = await uow.ledger.update_outcome(record.id, record.revision, new_status, new_state, envelope)
                if not swapped:
                    logger.warning("reconciliation_conflict", record_id=record.id, channel=channel)
                    conflicted = record.gateway_transaction_id
                    continue
                record.status = new_status
                record.gateway_state = new_state
                record.additional_data = envelope
                record.revision += 1

            logger.info(
                "transaction_reconciled",
                channel=channel,
                record_id=record.id,
                payment_id=record.payment_id,
                previous_status=previous.value,
                new_status=new_status.value,
            )
            reconciliation = _Reconciliation(record, previous, new_status, updated=True)
            if previous == TransactionStatus.PENDING:
                reconciliation.notified = await self._notify(
                    PendingTransactionResolved(
                        account_id=record.account_id,
                        payment_id=record.payment_id,
                        transaction_id=record.transaction_id,
                        tenant_id=record.tenant_id,
                        gateway_transaction_id=record.gateway_transaction_id,
                        previous_status=previous,
                        new_status=new_status,
                        channel=channel,
                    ),
                    context,
                )
            return reconciliation
        raise ReconciliationConflictException(conflicted, self._max_reconcile_attempts)

    async def _notify(self, event: PendingTransactionResolved, context: CallContext) -> bool:
        try:
            await self.host.notify_pending_transaction_resolved(
                event.account_id, event.transaction_id, event.is_success, context
            )
        except Exception as exc:
            logger.error(
                "host_notification_failed",
                event_id=event.event_id,
                transaction_id=event.transaction_id,
                new_status=event.new_status.value,
                error=str(exc),
            )
            return False
        logger.info(
            "host_notified",
            event_id=event.event_id,
            transaction_id=event.transaction_id,
            success=event.is_success,
            channel=event.channel,
        )
        return True

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    async def search_transactions(self, search_key: str, context: CallContext, *, offset: int = 0, limit: int = 100) -> Page:
        async with self._uow_factory(readonly=True) as uow:
            records = await uow.ledger.search(search_key, context.tenant_id, offset=offset, limit=limit)
            total = await uow.ledger.count_search(search_key, context.tenant_id)
        return Page(items=[self._to_result(r) for r in records], total=total, offset=offset, limit=limit)

    @staticmethod
    def _to_result(record: TransactionRecord) -> TransactionResult:
        redirect_url = record.authenticate_url or record.redirect_url
        properties = _compact(
            {
                "ompay_transaction_id": record.gateway_transaction_id,
                "ompay_reference_id": record.gateway_reference_id,
                "ompay_payer_id": record.gateway_payer_id,
                "ompay_card_id": record.gateway_card_id,
                "ompay_payment_state": record.gateway_state,
                "ompay_result_code": record.result_code,
                "ompay_result_description": record.result_description,
            }
        )
        return TransactionResult(
            account_id=record.account_id,
            payment_id=record.payment_id,
            transaction_id=record.transaction_id,
            kind=record.kind,
            status=record.status,
            amount=record.amount,
            currency=record.currency,
            gateway_error=record.result_description,
            gateway_error_code=record.result_code,
            first_reference_id=record.gateway_transaction_id,
            second_reference_id=record.gateway_reference_id,
            requires_3ds=record.is_pending and bool(redirect_url),
            redirect_url=redirect_url,
            created_at=record.created_at,
            properties=properties,
        )
