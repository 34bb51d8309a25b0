"""OMPay reconciliation tasks: per-payment refresh and the periodic pending sweep."""
from __future__ import annotations

import asyncio

from celery import shared_task

from application.dtos.payments import CallContext
from core.config import settings
from core.logging_config import get_logger
from infrastructure.container import build_payment_service
from infrastructure.database import engine
from infrastructure.external.host import HostPlatformClient
from infrastructure.external.payments import get_payment_gateway
from ..utils.base_task import BaseTask

logger = get_logger(__name__)


async def _with_service(fn):
    """Run ``fn(service)`` with clients owned by the current event loop."""
    gateway = get_payment_gateway()
    host = HostPlatformClient()
    try:
        return await fn(build_payment_service(gateway, host))
    finally:
        await gateway.aclose()
        await host.aclose()
        # 连接池绑定在 asyncio.run 创建的事件循环上
        await engine.dispose()


@shared_task(name="ompay.refresh_payment", bind=True, base=BaseTask)
def refresh_payment(self, tenant_id: str, payment_id: str) -> dict:
    """Pull the gateway outcome for every PENDING record of one host payment.

    Per-record gateway failures are logged and left PENDING; the next sweep picks them up.
    """
    context = CallContext(tenant_id=tenant_id)
    results = asyncio.run(_with_service(lambda service: service.refresh_pending(payment_id, context)))
    statuses = [r.status.value for r in results]
    logger.info("payment_refresh_task_done", tenant_id=tenant_id, payment_id=payment_id, statuses=statuses)
    return {"payment_id": payment_id, "statuses": statuses}


@shared_task(name="ompay.sweep_pending", bind=True, base=BaseTask)
def sweep_pending(self, older_than_seconds: int | None = None, limit: int | None = None) -> int:
    """Fan out a refresh for every payment left PENDING longer than the threshold."""
    older_than = older_than_seconds if older_than_seconds is not None else settings.celery.sweep_min_age_seconds
    batch = limit if limit is not None else settings.celery.sweep_batch_size
    pending = asyncio.run(
        _with_service(lambda service: service.list_stale_pending(older_than_seconds=older_than, limit=batch))
    )
    for tenant_id, payment_id in pending:
        refresh_payment.delay(tenant_id, payment_id)
    logger.info("pending_sweep_dispatched", count=len(pending), older_than_seconds=older_than)
    return len(pending)
