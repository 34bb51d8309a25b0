import base64
import hashlib
import hmac
import json

import httpx
import pytest

from core.settings import GatewayRetry, OmPaySettings, WebhookSettings
from domain.common.exceptions import GatewayTransportError, WebhookSignatureException
from infrastructure.external.payments.ompay_client import OmPayClient


def _settings(**overrides):
    fields = dict(
        merchant_id="m-1",
        client_id="client",
        client_secret="secret",
        api_base_url="https://gw.test/v1/merchants/",
        retry=GatewayRetry(max=2, base_backoff=0),
        webhook=WebhookSettings(signing_secret="whsec"),
    )
    fields.update(overrides)
    return OmPaySettings(**fields)


def _client(handler, **overrides):
    requests = []

    def _record(request: httpx.Request):
        requests.append(request)
        return handler(request, len(requests))

    return OmPayClient(_settings(**overrides), transport=httpx.MockTransport(_record)), requests


@pytest.mark.asyncio
async def test_create_payment_sends_basic_auth_and_json():
    client, requests = _client(lambda req, n: httpx.Response(201, json={"id": "gw-1", "state": "pending"}))

    reply = await client.create_payment({"intent": "auth"})
    await client.aclose()

    assert reply.ok and reply.body["state"] == "pending"
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://gw.test/v1/merchants/m-1/payment"
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"client:secret").decode()
    assert json.loads(request.content) == {"intent": "auth"}


@pytest.mark.asyncio
async def test_follow_up_and_card_endpoints():
    client, requests = _client(lambda req, n: httpx.Response(200, json={}))

    await client.capture_payment("gw-1", {"amount": "1.00"})
    await client.void_payment("gw-1", {})
    await client.refund_payment("gw-1", {})
    await client.list_cards("payer-1")
    await client.delete_card("payer-1", "card-1")
    await client.set_default_card("payer-1", "card-1")

    assert [(r.method, r.url.path) for r in requests] == [
        ("POST", "/v1/merchants/m-1/payment/gw-1/capture"),
        ("POST", "/v1/merchants/m-1/payment/gw-1/void"),
        ("POST", "/v1/merchants/m-1/payment/gw-1/refund"),
        ("GET", "/v1/merchants/m-1/payer/payer-1/card"),
        ("DELETE", "/v1/merchants/m-1/payer/payer-1/card/card-1"),
        ("PUT", "/v1/merchants/m-1/payer/payer-1"),
    ]
    assert json.loads(requests[-1].content) == {"default_card": "card-1"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, content, expected",
    [
        (200, b"DONE", {"status": "DONE"}),
        (200, b"", {}),
        (404, b"", {}),
        (200, b"ok, not json", {"rawResponse": "ok, not json"}),
        (200, b'[{"id": "c1"}]', {"data": [{"id": "c1"}]}),
        (402, b'{"state": "declined"}', {"state": "declined"}),
    ],
)
async def test_body_parsing(status, content, expected):
    client, _ = _client(lambda req, n: httpx.Response(status, content=content))

    reply = await client.void_payment("gw-1", {})

    assert reply.status_code == status
    assert reply.body == expected


@pytest.mark.asyncio
async def test_unparsable_error_body_raises_transport_error():
    client, requests = _client(lambda req, n: httpx.Response(502, content=b"<html>bad gateway</html>"))

    with pytest.raises(GatewayTransportError) as exc_info:
        await client.create_payment({})

    assert exc_info.value.status_code == 502
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_post_is_not_retried_on_server_error():
    client, requests = _client(lambda req, n: httpx.Response(503, json={"error": "busy"}))

    reply = await client.create_payment({})

    assert reply.status_code == 503
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_get_is_retried_then_returns_last_response():
    client, requests = _client(lambda req, n: httpx.Response(503, json={"error": "busy"}))

    reply = await client.get_payment("gw-1")

    assert reply.status_code == 503
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_get_recovers_after_transient_error():
    def handler(request, n):
        if n == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"id": "gw-1", "state": "authorised"})

    client, requests = _client(handler)

    reply = await client.get_payment("gw-1")

    assert reply.body["state"] == "authorised"
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_connect_error_is_retried_for_post():
    def handler(request, n):
        if n == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(201, json={"id": "gw-1"})

    client, requests = _client(handler)

    reply = await client.create_payment({})

    assert reply.status_code == 201
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_read_timeout_on_post_is_not_retried():
    def handler(request, n):
        raise httpx.ReadTimeout("slow", request=request)

    client, requests = _client(handler)

    with pytest.raises(GatewayTransportError):
        await client.create_payment({})
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_client_token():
    client, _ = _client(lambda req, n: httpx.Response(200, json={"accessToken": "tok-1"}))
    assert await client.create_client_token() == "tok-1"

    client, _ = _client(lambda req, n: httpx.Response(401, json={"error": "unauthorized"}))
    with pytest.raises(GatewayTransportError):
        await client.create_client_token()


def test_sandbox_and_live_base_urls():
    assert OmPaySettings(merchant_id="m", test_mode=True).resolved_api_base_url.startswith("https://api.sandbox.")
    assert OmPaySettings(merchant_id="m", test_mode=False).resolved_api_base_url.startswith("https://api.ompay.")


def test_healthcheck_reports_missing_keys():
    report = OmPaySettings(merchant_id="m", client_id=None, client_secret="").healthcheck()
    assert report["healthy"] is False
    assert report["missing"] == ["client_id", "client_secret"]


class TestWebhookSignature:
    body = b'{"id": "evt-1"}'

    def _sign(self, secret="whsec"):
        return hmac.new(secret.encode(), self.body, hashlib.sha256).hexdigest()

    def test_valid_signature(self):
        client = OmPayClient(_settings())
        client.verify_webhook({"X-OMPay-Signature": self._sign()}, self.body)
        client.verify_webhook({"x-ompay-signature": "sha256=" + self._sign()}, self.body)

    def test_invalid_or_missing_signature(self):
        client = OmPayClient(_settings())
        with pytest.raises(WebhookSignatureException):
            client.verify_webhook({"X-OMPay-Signature": self._sign("other")}, self.body)
        with pytest.raises(WebhookSignatureException):
            client.verify_webhook({}, self.body)

    def test_skipped_without_secret(self):
        client = OmPayClient(_settings(webhook=WebhookSettings()))
        client.verify_webhook({}, self.body)
