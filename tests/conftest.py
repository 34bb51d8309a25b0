"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("OMPAY__MERCHANT_ID", "merchant-test")
os.environ.setdefault("OMPAY__CLIENT_ID", "client-test")
os.environ.setdefault("OMPAY__CLIENT_SECRET", "secret-test")

import functools
from collections import deque
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from application.dtos.payments import CallContext, GatewayReply, HostAccount
from application.services.payment_method_service import PaymentMethodService
from application.services.payment_service import PaymentService
from infrastructure.models import Base
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


class FakeGateway:
    """Records every call and answers from a queue of canned replies."""

    provider = "fake"

    def __init__(self):
        self.calls = []
        self.replies = deque()
        self.client_token = "tok_test"

    def queue(self, status_code: int = 200, body: Optional[dict] = None):
        self.replies.append(GatewayReply(status_code=status_code, body=body or {}))

    def queue_error(self, exc: Exception):
        self.replies.append(exc)

    def names(self):
        return [c[0] for c in self.calls]

    async def _reply(self, name, *args):
        self.calls.append((name, *args))
        if not self.replies:
            raise AssertionError(f"unexpected gateway call: {name}")
        reply = self.replies.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def create_client_token(self):
        self.calls.append(("create_client_token",))
        return self.client_token

    async def create_payment(self, payload):
        return await self._reply("create_payment", payload)

    async def capture_payment(self, gateway_transaction_id, payload):
        return await self._reply("capture_payment", gateway_transaction_id, payload)

    async def void_payment(self, gateway_transaction_id, payload):
        return await self._reply("void_payment", gateway_transaction_id, payload)

    async def refund_payment(self, gateway_transaction_id, payload):
        return await self._reply("refund_payment", gateway_transaction_id, payload)

    async def get_payment(self, gateway_transaction_id):
        return await self._reply("get_payment", gateway_transaction_id)

    async def get_session(self, session_id):
        return await self._reply("get_session", session_id)

    async def list_cards(self, payer_id):
        return await self._reply("list_cards", payer_id)

    async def delete_card(self, payer_id, card_id):
        return await self._reply("delete_card", payer_id, card_id)

    async def set_default_card(self, payer_id, card_id):
        return await self._reply("set_default_card", payer_id, card_id)

    def verify_webhook(self, headers, body):
        return None

    async def aclose(self):
        return None


class FakeHost:
    def __init__(self):
        self.accounts = {}
        self.notifications = []
        self.registrations = []
        self.fail_notify = False

    async def get_account(self, account_id, context):
        return self.accounts.get(account_id)

    async def notify_pending_transaction_resolved(self, account_id, transaction_id, is_success, context):
        if self.fail_notify:
            raise RuntimeError("host unavailable")
        self.notifications.append((account_id, transaction_id, is_success))

    async def register_payment_method(self, account_id, payment_method_id, gateway_card_id, is_default, context):
        self.registrations.append((account_id, payment_method_id, gateway_card_id, is_default))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ompay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    return functools.partial(SQLAlchemyUnitOfWork, session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def host():
    h = FakeHost()
    h.accounts["acc-1"] = HostAccount(account_id="acc-1", name="Jane Payer", email="jane@example.com", country="US")
    return h


@pytest.fixture
def context():
    return CallContext(tenant_id="tenant-1")


@pytest.fixture
def payment_service(gateway, host, uow_factory):
    return PaymentService(gateway, host, uow_factory, form_action_url="http://engine.test/api/v1/ompay/process-nonce")


@pytest.fixture
def payment_method_service(gateway, uow_factory):
    return PaymentMethodService(gateway, uow_factory)
