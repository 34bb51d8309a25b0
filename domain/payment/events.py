"""
Payment domain events.

Dataclass events record reconciliation facts for downstream handling
(host platform notification, logging). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid

from domain.payment.entity import TransactionStatus


@dataclass
class TransactionEvent:
    account_id: str
    payment_id: str
    transaction_id: str
    tenant_id: str
    gateway_transaction_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PendingTransactionResolved(TransactionEvent):
    """A PENDING ledger record reached a non-PENDING status."""

    previous_status: TransactionStatus = TransactionStatus.PENDING
    new_status: TransactionStatus = TransactionStatus.UNDEFINED
    channel: str = "webhook"  # webhook | refresh

    @property
    def is_success(self) -> bool:
        return self.new_status == TransactionStatus.PROCESSED
