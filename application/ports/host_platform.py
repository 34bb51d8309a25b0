"""
Host platform port: callbacks into the billing platform that owns accounts,
payments and payment methods.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import CallContext, HostAccount


@runtime_checkable
class HostPlatform(Protocol):
    async def get_account(self, account_id: str, context: CallContext) -> Optional[HostAccount]: ...

    async def notify_pending_transaction_resolved(
        self,
        account_id: str,
        transaction_id: str,
        is_success: bool,
        context: CallContext,
    ) -> None: ...

    async def register_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        gateway_card_id: str,
        is_default: bool,
        context: CallContext,
    ) -> None: ...
