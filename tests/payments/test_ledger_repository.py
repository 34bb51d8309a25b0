from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text

from domain.common.exceptions import LedgerStoreException
from domain.payment.entity import TransactionKind, TransactionRecord, TransactionStatus


def _record(**overrides):
    fields = dict(
        account_id="acc-1",
        payment_id="pay-1",
        transaction_id="tx-1",
        tenant_id="tenant-1",
        kind=TransactionKind.AUTHORIZE,
        status=TransactionStatus.PENDING,
        amount=Decimal("10.00"),
        currency="USD",
        gateway_transaction_id="gw-1",
        gateway_state="pending",
        additional_data={"id": "gw-1", "state": "pending"},
    )
    fields.update(overrides)
    return TransactionRecord(**fields)


@pytest.mark.asyncio
async def test_add_and_lookup(uow_factory):
    async with uow_factory() as uow:
        saved = await uow.ledger.add(_record())
    assert saved.id is not None
    assert saved.revision == 0

    async with uow_factory(readonly=True) as uow:
        by_gw = await uow.ledger.get_by_gateway_transaction_id("gw-1", "tenant-1")
        other_tenant = await uow.ledger.get_by_gateway_transaction_id("gw-1", "tenant-2")
    assert by_gw.amount == Decimal("10.00")
    assert by_gw.additional_data["state"] == "pending"
    assert other_tenant is None


@pytest.mark.asyncio
async def test_latest_by_kind_and_state_prefers_newest(uow_factory):
    async with uow_factory() as uow:
        await uow.ledger.add(_record(gateway_transaction_id="t1", gateway_state="authorised", status=TransactionStatus.PROCESSED))
        await uow.ledger.add(_record(transaction_id="tx-2", gateway_transaction_id="t2", gateway_state="authorised", status=TransactionStatus.PROCESSED))
        await uow.ledger.add(_record(transaction_id="tx-3", gateway_transaction_id="t3", gateway_state="declined", status=TransactionStatus.ERROR))

    async with uow_factory(readonly=True) as uow:
        latest = await uow.ledger.get_latest_by_kind_and_state("pay-1", TransactionKind.AUTHORIZE, "AUTHORISED", "tenant-1")
        records = await uow.ledger.list_by_payment("pay-1", "tenant-1")
    assert latest.gateway_transaction_id == "t2"
    assert [r.gateway_transaction_id for r in records] == ["t1", "t2", "t3"]


@pytest.mark.asyncio
async def test_update_outcome_is_compare_and_swap(uow_factory):
    async with uow_factory() as uow:
        saved = await uow.ledger.add(_record())

    async with uow_factory() as uow:
        first = await uow.ledger.update_outcome(saved.id, 0, TransactionStatus.PROCESSED, "authorised", {"state": "authorised"})
    async with uow_factory() as uow:
        stale = await uow.ledger.update_outcome(saved.id, 0, TransactionStatus.ERROR, "declined", {"state": "declined"})

    assert first is True
    assert stale is False
    async with uow_factory(readonly=True) as uow:
        current = await uow.ledger.get_by_id(saved.id)
    assert current.status == TransactionStatus.PROCESSED
    assert current.gateway_state == "authorised"
    assert current.revision == 1
    # initiation fields are untouched
    assert current.amount == Decimal("10.00")
    assert current.kind == TransactionKind.AUTHORIZE


@pytest.mark.asyncio
async def test_list_pending_payments(uow_factory):
    async with uow_factory() as uow:
        await uow.ledger.add(_record())
        await uow.ledger.add(_record(payment_id="pay-2", transaction_id="tx-9", status=TransactionStatus.PROCESSED))

    async with uow_factory(readonly=True) as uow:
        later = await uow.ledger.list_pending_payments(datetime.now(timezone.utc) + timedelta(hours=1))
        earlier = await uow.ledger.list_pending_payments(datetime.now(timezone.utc) - timedelta(hours=1))
    assert later == [("tenant-1", "pay-1")]
    assert earlier == []


@pytest.mark.asyncio
async def test_search_matches_identifiers(uow_factory):
    async with uow_factory() as uow:
        await uow.ledger.add(_record())
        await uow.ledger.add(_record(payment_id="other", transaction_id="tx-x", gateway_transaction_id="gw-x"))

    async with uow_factory(readonly=True) as uow:
        found = await uow.ledger.search("pay-", "tenant-1")
        total = await uow.ledger.count_search("gw-", "tenant-1")
    assert [r.payment_id for r in found] == ["pay-1"]
    assert total == 2


@pytest.mark.asyncio
async def test_read_failures_surface_as_store_errors(uow_factory, session_factory):
    async with session_factory() as session:
        await session.execute(text("DROP TABLE ompay_responses"))
        await session.commit()

    async with uow_factory(readonly=True) as uow:
        with pytest.raises(LedgerStoreException) as exc_info:
            await uow.ledger.get_by_id(1)
        with pytest.raises(LedgerStoreException):
            await uow.ledger.list_by_payment("pay-1", "tenant-1")
    assert exc_info.value.details == {"operation": "ledger.get_by_id"}
