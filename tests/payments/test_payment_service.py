import json
from decimal import Decimal

import pytest

from sqlalchemy import text

from application.dtos.payments import AddPaymentMethod, CapturePayment, InitiatePayment, RefundPayment, VoidPayment
from domain.common.exceptions import (
    GatewayTransportError,
    InvalidNotificationException,
    MissingOriginatingTransactionException,
    PaymentMethodNotFoundException,
    ReconciliationConflictException,
    TransactionNotFoundException,
)
from domain.payment.entity import TransactionKind, TransactionStatus
from infrastructure.repositories.transaction_repository import SQLAlchemyTransactionLedgerRepository


def _nonce_request(**overrides):
    fields = dict(
        account_id="acc-1",
        payment_id="pay-1",
        transaction_id="tx-1",
        amount=Decimal("10.00"),
        currency="usd",
        nonce="nonce-abc",
    )
    fields.update(overrides)
    return InitiatePayment(**fields)


def _webhook(state, gateway_id="gw-1", **resource):
    return json.dumps(
        {
            "id": "evt-1",
            "kind": f"payment.{state}",
            "resource_type": "payment",
            "resource": {"id": gateway_id, "state": state, **resource},
        }
    )


async def _initiate_pending(payment_service, gateway, context):
    gateway.queue(201, {"id": "gw-1", "state": "pending", "authenticate_url": "https://3ds.test/challenge"})
    return await payment_service.initiate(_nonce_request(), context)


@pytest.mark.asyncio
async def test_form_descriptor(payment_service, context):
    descriptor = await payment_service.build_form_descriptor("acc-1", context)
    assert descriptor.client_token == "tok_test"
    assert descriptor.form_action_url.endswith("/api/v1/ompay/process-nonce")
    assert descriptor.test_mode is True


@pytest.mark.asyncio
async def test_initiate_pending_requires_3ds(payment_service, gateway, host, uow_factory, context):
    result = await _initiate_pending(payment_service, gateway, context)

    assert result.status == TransactionStatus.PENDING
    assert result.requires_3ds is True
    assert result.redirect_url == "https://3ds.test/challenge"
    assert result.first_reference_id == "gw-1"

    name, payload = gateway.calls[0]
    assert name == "create_payment"
    assert payload["intent"] == "auth"
    assert payload["transaction"]["amount"] == {"total": "10.00", "currency": "USD"}
    assert payload["payer"]["funding_instrument"] == {"credit_card": {"nonce": "nonce-abc"}}
    assert payload["payer"]["payer_info"]["name"] == "Jane Payer"
    assert payload["three_ds"] == {"mode": "auto"}

    async with uow_factory(readonly=True) as uow:
        records = await uow.ledger.list_by_payment("pay-1", "tenant-1")
        methods = await uow.payment_methods.list_by_account("acc-1", "tenant-1")
    assert len(records) == 1
    assert methods == []
    assert host.registrations == []


@pytest.mark.asyncio
async def test_processed_purchase_enrolls_card_once(payment_service, gateway, host, uow_factory, context):
    reply = {
        "id": "gw-2",
        "state": "captured",
        "payer": {
            "id": "payer-1",
            "funding_instrument": {
                "credit_card": {"id": "card-1", "type": "visa", "last4": "4242", "expire_month": "12", "expire_year": "2030"}
            },
        },
    }
    gateway.queue(201, reply)
    gateway.queue(201, {**reply, "id": "gw-3"})

    first = await payment_service.initiate(_nonce_request(kind=TransactionKind.PURCHASE), context)
    await payment_service.initiate(_nonce_request(kind=TransactionKind.PURCHASE, transaction_id="tx-2"), context)

    assert first.status == TransactionStatus.PROCESSED
    assert first.properties["ompay_card_id"] == "card-1"
    assert gateway.calls[0][1]["intent"] == "sale"
    async with uow_factory(readonly=True) as uow:
        methods = await uow.payment_methods.list_by_account("acc-1", "tenant-1")
    assert len(methods) == 1
    assert methods[0].is_default is True
    assert methods[0].gateway_payer_id == "payer-1"
    assert methods[0].metadata["last4"] == "4242"
    assert len(host.registrations) == 1


@pytest.mark.asyncio
async def test_stored_card_initiation_uses_card_token(payment_service, payment_method_service, gateway, context):
    await payment_method_service.add(
        AddPaymentMethod(account_id="acc-1", payment_method_id="pm-1", gateway_card_id="card-1", gateway_payer_id="payer-1"),
        context,
    )
    gateway.queue(201, {"id": "gw-5", "state": "authorised"})

    result = await payment_service.initiate(
        InitiatePayment(account_id="acc-1", payment_id="pay-1", amount=Decimal("7.50"), currency="USD", payment_method_id="pm-1"),
        context,
    )

    payer = gateway.calls[0][1]["payer"]
    assert payer["id"] == "payer-1"
    assert payer["funding_instrument"] == {"credit_card_token": {"credit_card_id": "card-1"}}
    assert result.status == TransactionStatus.PROCESSED
    assert result.properties["ompay_card_id"] == "card-1"
    assert result.properties["ompay_payer_id"] == "payer-1"


@pytest.mark.asyncio
async def test_unknown_stored_card_never_calls_gateway(payment_service, gateway, context):
    with pytest.raises(PaymentMethodNotFoundException):
        await payment_service.initiate(
            InitiatePayment(account_id="acc-1", amount=Decimal("7.50"), currency="USD", payment_method_id="pm-missing"),
            context,
        )
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_rejected_initiation_is_error(payment_service, gateway, context):
    gateway.queue(422, {"result": {"code": "card_invalid", "description": "Invalid card"}})

    result = await payment_service.initiate(_nonce_request(), context)

    assert result.status == TransactionStatus.ERROR
    assert result.gateway_error == "Invalid card"
    assert result.gateway_error_code == "card_invalid"


@pytest.mark.asyncio
async def test_transport_failure_leaves_no_record(payment_service, gateway, uow_factory, context):
    gateway.queue_error(GatewayTransportError("Request timed out"))

    with pytest.raises(GatewayTransportError):
        await payment_service.initiate(_nonce_request(), context)

    async with uow_factory(readonly=True) as uow:
        assert await uow.ledger.list_by_payment("pay-1", "tenant-1") == []


@pytest.mark.asyncio
async def test_hosted_form_outcome_is_recorded_without_gateway_call(payment_service, gateway, context):
    req = InitiatePayment(
        account_id="acc-1",
        payment_id="pay-1",
        transaction_id="tx-1",
        amount=Decimal("5.00"),
        currency="EUR",
        gateway_outcome={"id": "gw-9", "state": "authorised"},
    )
    result = await payment_service.initiate(req, context)
    assert result.status == TransactionStatus.PROCESSED
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_webhook_resolves_pending_and_notifies_once(payment_service, gateway, host, context):
    await _initiate_pending(payment_service, gateway, context)

    outcome = await payment_service.handle_webhook_body(_webhook("authorised", result={"code": "00"}), context)
    replay = await payment_service.handle_webhook_body(_webhook("authorised"), context)

    assert outcome.matched and outcome.updated and outcome.notified
    assert outcome.previous_status == TransactionStatus.PENDING
    assert outcome.new_status == TransactionStatus.PROCESSED
    assert replay.matched and not replay.updated and not replay.notified
    assert host.notifications == [("acc-1", "tx-1", True)]

    # nothing is pending any more, so a refresh does not reach the gateway
    results = await payment_service.get_payment_info("pay-1", context, refresh=True)
    assert [r.status for r in results] == [TransactionStatus.PROCESSED]
    assert results[0].properties["ompay_result_code"] == "00"
    assert gateway.names() == ["create_payment"]


@pytest.mark.asyncio
async def test_webhook_matches_originating_transaction_by_reference_id(payment_service, gateway, host, context):
    await _initiate_pending(payment_service, gateway, context)

    outcome = await payment_service.handle_webhook_body(
        _webhook("authorised", gateway_id="gw-followup", reference_id="gw-1"), context
    )

    assert outcome.matched and outcome.updated and outcome.notified
    assert outcome.transaction_id == "tx-1"
    assert outcome.new_status == TransactionStatus.PROCESSED
    assert host.notifications == [("acc-1", "tx-1", True)]


@pytest.mark.asyncio
async def test_refresh_then_late_webhook_does_not_notify_twice(payment_service, gateway, host, context):
    await _initiate_pending(payment_service, gateway, context)
    gateway.queue(200, {"id": "gw-1", "state": "declined"})

    results = await payment_service.refresh_pending("pay-1", context)
    late = await payment_service.handle_webhook_body(_webhook("failed"), context)

    assert results[0].status == TransactionStatus.ERROR
    assert results[0].requires_3ds is False
    assert late.updated is False
    assert host.notifications == [("acc-1", "tx-1", False)]


@pytest.mark.asyncio
async def test_refresh_keeps_record_when_gateway_rejects(payment_service, gateway, host, context):
    await _initiate_pending(payment_service, gateway, context)
    gateway.queue(404, {})

    results = await payment_service.refresh_pending("pay-1", context)

    assert results[0].status == TransactionStatus.PENDING
    assert host.notifications == []


@pytest.mark.asyncio
async def test_status_check_refreshes_pending_transaction(payment_service, gateway, context):
    await _initiate_pending(payment_service, gateway, context)
    gateway.queue(200, {"id": "gw-1", "state": "authorised"})

    result = await payment_service.initiate(InitiatePayment(account_id="acc-1", transaction_id="tx-1"), context)

    assert result.status == TransactionStatus.PROCESSED
    assert gateway.names() == ["create_payment", "get_payment"]

    with pytest.raises(TransactionNotFoundException):
        await payment_service.initiate(InitiatePayment(account_id="acc-1", transaction_id="nope"), context)


@pytest.mark.asyncio
async def test_complete_redirect_reads_session_then_refreshes(payment_service, gateway, context):
    await _initiate_pending(payment_service, gateway, context)
    gateway.queue(200, {"id": "sess-1", "state": "authorised"})
    gateway.queue(200, {"id": "gw-1", "state": "authorised"})

    results = await payment_service.complete_redirect("pay-1", context, session_id="sess-1")

    assert results[0].status == TransactionStatus.PROCESSED
    assert gateway.names() == ["create_payment", "get_session", "get_payment"]


@pytest.mark.asyncio
async def test_complete_redirect_refreshes_when_session_lookup_fails(payment_service, gateway, host, context):
    await _initiate_pending(payment_service, gateway, context)
    gateway.queue_error(GatewayTransportError("session endpoint down"))
    gateway.queue(200, {"id": "gw-1", "state": "authorised"})

    results = await payment_service.complete_redirect("pay-1", context, session_id="sess-1")

    assert results[0].status == TransactionStatus.PROCESSED
    assert gateway.names() == ["create_payment", "get_session", "get_payment"]
    assert host.notifications == [("acc-1", "tx-1", True)]


@pytest.mark.asyncio
async def test_refresh_isolates_gateway_failure_per_record(payment_service, gateway, host, context):
    await _initiate_pending(payment_service, gateway, context)
    gateway.queue(201, {"id": "gw-2", "state": "pending"})
    await payment_service.initiate(_nonce_request(transaction_id="tx-2"), context)
    gateway.queue_error(GatewayTransportError("Request timed out"))
    gateway.queue(200, {"id": "gw-2", "state": "authorised"})

    results = await payment_service.refresh_pending("pay-1", context)

    assert [r.status for r in results] == [TransactionStatus.PENDING, TransactionStatus.PROCESSED]
    assert gateway.calls[-2:] == [("get_payment", "gw-1"), ("get_payment", "gw-2")]
    assert host.notifications == [("acc-1", "tx-2", True)]


@pytest.mark.asyncio
async def test_refresh_isolates_ledger_failure_per_record(payment_service, gateway, host, uow_factory, context, monkeypatch):
    await _initiate_pending(payment_service, gateway, context)
    gateway.queue(201, {"id": "gw-2", "state": "pending"})
    await payment_service.initiate(_nonce_request(transaction_id="tx-2"), context)
    async with uow_factory(readonly=True) as uow:
        broken_id = (await uow.ledger.list_by_payment("pay-1", "tenant-1"))[0].id
    get_by_id = SQLAlchemyTransactionLedgerRepository.get_by_id

    async def failing_get_by_id(self, record_id):
        if record_id == broken_id:
            await self._read(text("SELECT id FROM missing_ledger_table"), "ledger.get_by_id")
        return await get_by_id(self, record_id)

    monkeypatch.setattr(SQLAlchemyTransactionLedgerRepository, "get_by_id", failing_get_by_id)
    gateway.queue(200, {"id": "gw-1", "state": "authorised"})
    gateway.queue(200, {"id": "gw-2", "state": "authorised"})

    results = await payment_service.refresh_pending("pay-1", context)

    assert [r.status for r in results] == [TransactionStatus.PENDING, TransactionStatus.PROCESSED]
    assert host.notifications == [("acc-1", "tx-2", True)]


@pytest.mark.asyncio
async def test_host_notification_failure_keeps_ledger_update(payment_service, gateway, host, context):
    await _initiate_pending(payment_service, gateway, context)
    host.fail_notify = True

    outcome = await payment_service.handle_webhook_body(_webhook("authorised"), context)

    assert outcome.updated is True
    assert outcome.notified is False
    results = await payment_service.get_payment_info("pay-1", context)
    assert results[0].status == TransactionStatus.PROCESSED


@pytest.mark.asyncio
async def test_reconciliation_conflict_is_bounded(payment_service, gateway, context, monkeypatch):
    await _initiate_pending(payment_service, gateway, context)
    attempts = []

    async def always_stale(self, record_id, expected_revision, status, gateway_state, additional_data):
        attempts.append(record_id)
        return False

    monkeypatch.setattr(SQLAlchemyTransactionLedgerRepository, "update_outcome", always_stale)

    with pytest.raises(ReconciliationConflictException):
        await payment_service.handle_webhook_body(_webhook("authorised"), context)
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_webhook_edge_cases(payment_service, context):
    with pytest.raises(InvalidNotificationException):
        await payment_service.handle_webhook_body(b"not json", context)
    with pytest.raises(InvalidNotificationException):
        await payment_service.handle_webhook_body(json.dumps({"resource_type": "payment", "resource": {}}), context)

    ignored = await payment_service.handle_webhook_body(json.dumps({"id": "evt-2", "resource_type": "payer"}), context)
    unknown = await payment_service.handle_webhook_body(_webhook("authorised", gateway_id="gw-unknown"), context)
    assert ignored.matched is False
    assert unknown.matched is False


@pytest.mark.asyncio
async def test_capture_uses_latest_authorised_transaction(payment_service, gateway, context):
    gateway.queue(201, {"id": "t1", "state": "authorised"})
    gateway.queue(402, {"id": "t2", "state": "declined"})
    await payment_service.initiate(_nonce_request(), context)
    await payment_service.initiate(_nonce_request(transaction_id="tx-2"), context)
    gateway.queue(200, {"id": "cap-1", "state": "captured"})

    result = await payment_service.capture(
        CapturePayment(account_id="acc-1", payment_id="pay-1", amount=Decimal("10.00"), currency="USD"), context
    )

    assert gateway.calls[-1] == ("capture_payment", "t1", {"invoice_number": "pay-1", "amount": "10.00"})
    assert result.kind == TransactionKind.CAPTURE
    assert result.status == TransactionStatus.PROCESSED
    assert result.second_reference_id == "t1"


@pytest.mark.asyncio
async def test_void_without_originating_transaction_never_calls_gateway(payment_service, gateway, context):
    with pytest.raises(MissingOriginatingTransactionException):
        await payment_service.void(VoidPayment(account_id="acc-1", payment_id="pay-1"), context)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_void_success_without_state_is_canceled(payment_service, gateway, context):
    gateway.queue(200, {"status": "DONE"})

    result = await payment_service.void(
        VoidPayment(account_id="acc-1", payment_id="pay-1", original_gateway_transaction_id="gw-explicit"), context
    )

    assert gateway.calls[0][:2] == ("void_payment", "gw-explicit")
    assert result.status == TransactionStatus.CANCELED
    assert result.amount is None


@pytest.mark.asyncio
async def test_refund_falls_back_to_captured_purchase(payment_service, gateway, context):
    gateway.queue(201, {"id": "p1", "state": "captured"})
    await payment_service.initiate(_nonce_request(kind=TransactionKind.PURCHASE), context)
    gateway.queue(500, {"result": {"code": "refund_failed"}})

    result = await payment_service.refund(
        RefundPayment(account_id="acc-1", payment_id="pay-1", amount=Decimal("4.00"), currency="USD"), context
    )

    assert gateway.calls[-1][:2] == ("refund_payment", "p1")
    assert result.status == TransactionStatus.ERROR
    assert result.gateway_error_code == "refund_failed"


@pytest.mark.asyncio
async def test_stale_pending_listing(payment_service, gateway, context):
    await _initiate_pending(payment_service, gateway, context)

    assert await payment_service.list_stale_pending(older_than_seconds=-3600) == [("tenant-1", "pay-1")]
    assert await payment_service.list_stale_pending(older_than_seconds=3600) == []


@pytest.mark.asyncio
async def test_search_transactions(payment_service, gateway, context):
    await _initiate_pending(payment_service, gateway, context)

    page = await payment_service.search_transactions("gw-1", context, limit=10)

    assert page.total == 1
    assert page.items[0].transaction_id == "tx-1"
