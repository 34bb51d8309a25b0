"""
Payment specific codes and gateway state mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Gateway/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    TRANSPORT_ERROR = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003

    # Reconciliation errors (61xxx)
    MISSING_ORIGINATING_TRANSACTION = 61000
    INVALID_NOTIFICATION = 61001
    RECONCILIATION_CONFLICT = 61002


# OMPay state (lower-cased) -> canonical status name. Anything else is UNDEFINED.
OMPAY_STATE_TO_STATUS = {
    "authorised": "PROCESSED",
    "captured": "PROCESSED",
    "pending": "PENDING",
    "requires_action": "PENDING",
    "declined": "ERROR",
    "failed": "ERROR",
    "voided": "CANCELED",
    "cancelled": "CANCELED",
}
