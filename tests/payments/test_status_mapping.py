import pytest

from domain.payment.document import GatewayDocument
from domain.payment.entity import TransactionKind, TransactionStatus
from domain.payment.status import classify_outcome, map_gateway_state


@pytest.mark.parametrize(
    "state, expected",
    [
        ("authorised", TransactionStatus.PROCESSED),
        ("CAPTURED", TransactionStatus.PROCESSED),
        ("Pending", TransactionStatus.PENDING),
        ("requires_action", TransactionStatus.PENDING),
        ("declined", TransactionStatus.ERROR),
        ("failed", TransactionStatus.ERROR),
        ("voided", TransactionStatus.CANCELED),
        ("cancelled", TransactionStatus.CANCELED),
        ("something_new", TransactionStatus.UNDEFINED),
        (None, TransactionStatus.UNDEFINED),
    ],
)
def test_gateway_state_mapping(state, expected):
    assert map_gateway_state(state) == expected


def test_failed_initiation_is_error_whatever_the_state():
    assert classify_outcome(TransactionKind.AUTHORIZE, "pending", http_ok=False) == TransactionStatus.ERROR
    assert classify_outcome(TransactionKind.PURCHASE, None, http_ok=False) == TransactionStatus.ERROR
    assert classify_outcome(TransactionKind.PURCHASE, "captured", http_ok=True) == TransactionStatus.PROCESSED


def test_follow_up_success_with_unknown_state_counts_as_expected():
    assert classify_outcome(TransactionKind.VOID, None, http_ok=True) == TransactionStatus.CANCELED
    assert classify_outcome(TransactionKind.CAPTURE, "weird", http_ok=True) == TransactionStatus.PROCESSED


def test_failed_follow_up_never_reports_success():
    assert classify_outcome(TransactionKind.CAPTURE, None, http_ok=False) == TransactionStatus.ERROR
    assert classify_outcome(TransactionKind.VOID, "voided", http_ok=False) == TransactionStatus.CANCELED
    assert classify_outcome(TransactionKind.REFUND, "declined", http_ok=False) == TransactionStatus.ERROR


def test_gateway_document_typed_reads():
    doc = GatewayDocument({"id": 42, "flag": "TRUE", "result": {"code": "05"}, "cards": [{"id": "c1"}, "junk"], "obj": {}})
    assert doc.get_str("id") == "42"
    assert doc.get_str("obj") is None
    assert doc.get_bool("flag") is True
    assert doc.find_str("result.description", "result.code") == "05"
    assert [c.get_str("id") for c in doc.get_list("cards")] == ["c1"]
    assert doc.get_nested("missing").get_str("x") is None
