"""
API依赖项 - 调用上下文与应用服务
"""
from typing import Optional

from fastapi import Header

from application.dtos.payments import CallContext
from application.services.payment_method_service import PaymentMethodService
from application.services.payment_service import PaymentService
from application.ports.payment_gateway import PaymentGateway
from core.config import settings
from infrastructure.container import (
    build_payment_method_service,
    build_payment_service,
    get_gateway,
)


async def get_call_context(
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
) -> CallContext:
    """宿主平台通过 X-Tenant-Id 传递租户，缺省使用配置中的默认租户"""
    return CallContext(tenant_id=x_tenant_id or settings.DEFAULT_TENANT_ID)


async def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


async def get_payment_service() -> PaymentService:
    return build_payment_service()


async def get_payment_method_service() -> PaymentMethodService:
    return build_payment_method_service()
