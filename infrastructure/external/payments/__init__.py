"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_gateway import PaymentGateway
from core.settings import OmPaySettings


def get_payment_gateway(settings: Optional[OmPaySettings] = None) -> PaymentGateway:
    from .ompay_client import OmPayClient
    return OmPayClient(settings)
