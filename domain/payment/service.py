"""
卡库领域服务 - 注册、镜像同步与默认卡维护
"""
from __future__ import annotations

import uuid
from typing import List, Optional, Sequence

import structlog

from .document import GatewayDocument
from .entity import PaymentMethodRecord
from .repository import PaymentMethodRepository


logger = structlog.get_logger(__name__)

CARD_METADATA_FIELDS = ("type", "last4", "expire_month", "expire_year", "name", "bin_data")


def card_metadata(card: GatewayDocument) -> dict:
    """从网关卡对象提取展示用元数据（不含任何卡号）"""
    metadata = {}
    for key in CARD_METADATA_FIELDS:
        if key == "bin_data":
            if card.has_object(key):
                metadata[key] = card.get_nested(key).to_dict()
            continue
        value = card.get_str(key)
        if value is not None:
            metadata["card_type" if key == "type" else key] = value
    return metadata


class PaymentMethodVault:
    """
    卡库领域服务

    业务规则：
    1. 每个账户最多一条未删除的默认卡
    2. 设置默认卡时先清除旧默认，再设置新默认（同一工作单元内）
    3. 同步是镜像操作：同步后某付款人的本地卡集合与网关完全一致
    """

    def __init__(self, repository: PaymentMethodRepository):
        self.repository = repository

    async def enroll(
        self,
        *,
        account_id: str,
        tenant_id: str,
        gateway_card_id: str,
        gateway_payer_id: Optional[str],
        metadata: Optional[dict] = None,
        is_default: bool = False,
        payment_method_id: Optional[str] = None,
    ) -> PaymentMethodRecord:
        """注册卡；设为默认时先清除账户现有默认卡"""
        if is_default:
            await self.repository.clear_default(account_id, tenant_id)
        record = await self.repository.add(
            PaymentMethodRecord(
                account_id=account_id,
                payment_method_id=payment_method_id or str(uuid.uuid4()),
                tenant_id=tenant_id,
                gateway_card_id=gateway_card_id,
                gateway_payer_id=gateway_payer_id,
                is_default=is_default,
                metadata=metadata or {},
            )
        )
        logger.info(
            "payment_method_enrolled",
            account_id=account_id,
            payment_method_id=record.payment_method_id,
            gateway_card_id=gateway_card_id,
            is_default=is_default,
        )
        return record

    async def make_default(self, record: PaymentMethodRecord) -> None:
        await self.repository.clear_default(record.account_id, record.tenant_id)
        await self.repository.set_default(record.payment_method_id, record.tenant_id)

    async def synchronize(
        self,
        *,
        account_id: str,
        tenant_id: str,
        gateway_payer_id: str,
        cards: Sequence[GatewayDocument],
    ) -> List[PaymentMethodRecord]:
        """以网关卡列表为准镜像本地卡库，返回该付款人同步后的记录"""
        local = {
            pm.gateway_card_id: pm
            for pm in await self.repository.list_by_payer(account_id, gateway_payer_id, tenant_id)
        }

        default_card_id = None
        for card in cards:
            if card.get_bool("is_default") and card.get_str("id"):
                if default_card_id is None:
                    default_card_id = card.get_str("id")
                else:
                    logger.warning(
                        "vault_sync_multiple_defaults",
                        account_id=account_id,
                        gateway_payer_id=gateway_payer_id,
                        ignored_card_id=card.get_str("id"),
                    )
        if default_card_id is not None:
            await self.repository.clear_default(account_id, tenant_id)

        seen: set[str] = set()
        synced: List[PaymentMethodRecord] = []
        inserted = updated = 0
        for card in cards:
            card_id = card.get_str("id")
            if not card_id or card_id in seen:
                continue
            seen.add(card_id)
            is_default = card_id == default_card_id
            existing = local.get(card_id)
            if existing is not None:
                existing.metadata = card_metadata(card)
                existing.is_default = is_default
                synced.append(await self.repository.update(existing))
                updated += 1
            else:
                synced.append(
                    await self.repository.add(
                        PaymentMethodRecord(
                            account_id=account_id,
                            payment_method_id=str(uuid.uuid4()),
                            tenant_id=tenant_id,
                            gateway_card_id=card_id,
                            gateway_payer_id=gateway_payer_id,
                            is_default=is_default,
                            metadata=card_metadata(card),
                        )
                    )
                )
                inserted += 1

        removed = [pm for card_id, pm in local.items() if card_id not in seen]
        for pm in removed:
            await self.repository.mark_deleted(pm.payment_method_id, tenant_id)

        logger.info(
            "vault_synchronized",
            account_id=account_id,
            gateway_payer_id=gateway_payer_id,
            inserted=inserted,
            updated=updated,
            deleted=len(removed),
        )
        return synced
