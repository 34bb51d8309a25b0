"""
Gateway state -> canonical status mapping.

Every component classifies gateway outcomes through this module; the state
table itself lives in ``shared.codes.payment_codes``.
"""
from __future__ import annotations

from typing import Optional

import structlog

from domain.payment.entity import TransactionKind, TransactionStatus
from shared.codes.payment_codes import OMPAY_STATE_TO_STATUS


logger = structlog.get_logger(__name__)


# Follow-up operation -> status a successful gateway reply stands for.
FOLLOW_UP_SUCCESS_STATUS = {
    TransactionKind.CAPTURE: TransactionStatus.PROCESSED,
    TransactionKind.REFUND: TransactionStatus.PROCESSED,
    TransactionKind.VOID: TransactionStatus.CANCELED,
}

# Follow-up operation -> (originating kind, state) pairs, tried in order.
ORIGINATING_CANDIDATES = {
    TransactionKind.CAPTURE: ((TransactionKind.AUTHORIZE, "authorised"),),
    TransactionKind.VOID: ((TransactionKind.AUTHORIZE, "authorised"),),
    TransactionKind.REFUND: (
        (TransactionKind.CAPTURE, "captured"),
        (TransactionKind.PURCHASE, "captured"),
        (TransactionKind.PURCHASE, "authorised"),
    ),
}


def map_gateway_state(state: Optional[str]) -> TransactionStatus:
    """Case-insensitive and total: unknown states map to UNDEFINED."""
    if state is None:
        return TransactionStatus.UNDEFINED
    name = OMPAY_STATE_TO_STATUS.get(state.strip().lower())
    if name is None:
        logger.warning("unknown_gateway_state", state=state)
        return TransactionStatus.UNDEFINED
    return TransactionStatus(name)


def classify_outcome(kind: TransactionKind, state: Optional[str], http_ok: bool) -> TransactionStatus:
    """Status of a gateway reply, reclassified by HTTP outcome.

    A non-2xx authorize/purchase is always ERROR. A failed follow-up never
    reports its success status unless the gateway state says so, and a 2xx
    follow-up with a state outside the table counts as the operation's
    success status.
    """
    status = map_gateway_state(state)
    expected = FOLLOW_UP_SUCCESS_STATUS.get(kind)
    if expected is None:
        return status if http_ok else TransactionStatus.ERROR
    if http_ok and status == TransactionStatus.UNDEFINED:
        return expected
    if not http_ok and status != expected:
        return TransactionStatus.ERROR
    return status
