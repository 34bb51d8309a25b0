"""
Composition helpers shared by the API and Celery entry points.

The API keeps one gateway client and one host client for the process
lifetime; Celery tasks build fresh ones per run because every task runs in
its own event loop.
"""
from __future__ import annotations

from typing import Optional

from application.ports.host_platform import HostPlatform
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_method_service import PaymentMethodService
from application.services.payment_service import PaymentService
from core.settings import ompay_settings
from infrastructure.external.host import HostPlatformClient
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


_gateway: Optional[PaymentGateway] = None
_host: Optional[HostPlatformClient] = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = get_payment_gateway()
    return _gateway


def get_host_platform() -> HostPlatform:
    global _host
    if _host is None:
        _host = HostPlatformClient()
    return _host


async def close_clients() -> None:
    """Close the process-wide HTTP clients (called on application shutdown)."""
    global _gateway, _host
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
    if _host is not None:
        await _host.aclose()
        _host = None


def build_payment_service(
    gateway: Optional[PaymentGateway] = None,
    host: Optional[HostPlatform] = None,
) -> PaymentService:
    return PaymentService(
        gateway or get_gateway(),
        host or get_host_platform(),
        SQLAlchemyUnitOfWork,
        form_action_url=ompay_settings.form_action_url,
        test_mode=ompay_settings.test_mode,
    )


def build_payment_method_service(gateway: Optional[PaymentGateway] = None) -> PaymentMethodService:
    return PaymentMethodService(gateway or get_gateway(), SQLAlchemyUnitOfWork)
