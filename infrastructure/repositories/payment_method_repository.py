"""
卡库仓储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import LedgerStoreException, PaymentMethodNotFoundException
from domain.payment.entity import PaymentMethodRecord
from domain.payment.repository import PaymentMethodRepository
from infrastructure.models.payment import OmPayPaymentMethodModel


logger = get_logger(__name__)


class SQLAlchemyPaymentMethodRepository(PaymentMethodRepository):
    """卡库仓储的SQLAlchemy实现（已删除记录不可见）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OmPayPaymentMethodModel) -> PaymentMethodRecord:
        return PaymentMethodRecord(
            id=model.id,
            account_id=model.account_id,
            payment_method_id=model.payment_method_id,
            tenant_id=model.tenant_id,
            gateway_card_id=model.gateway_card_id,
            gateway_payer_id=model.gateway_payer_id,
            is_default=bool(model.is_default),
            is_deleted=bool(model.is_deleted),
            metadata=dict(model.extra_metadata or {}),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: PaymentMethodRecord) -> OmPayPaymentMethodModel:
        return OmPayPaymentMethodModel(
            account_id=entity.account_id,
            payment_method_id=entity.payment_method_id,
            tenant_id=entity.tenant_id,
            gateway_card_id=entity.gateway_card_id,
            gateway_payer_id=entity.gateway_payer_id,
            is_default=entity.is_default,
            is_deleted=False,
            extra_metadata=entity.metadata,
        )

    def _active(self, tenant_id: str):
        return (
            OmPayPaymentMethodModel.tenant_id == tenant_id,
            OmPayPaymentMethodModel.is_deleted.is_(False),
        )

    async def add(self, record: PaymentMethodRecord) -> PaymentMethodRecord:
        try:
            db_pm = self._to_model(record)
            self.session.add(db_pm)
            await self.session.flush()
            await self.session.refresh(db_pm)
        except SQLAlchemyError as e:
            logger.error(
                "payment_method_write_failed",
                account_id=record.account_id,
                payment_method_id=record.payment_method_id,
                error=str(e),
            )
            raise LedgerStoreException("Failed to save payment method", operation="vault.add") from e
        return self._to_entity(db_pm)

    async def _get_model(self, payment_method_id: str, tenant_id: str) -> Optional[OmPayPaymentMethodModel]:
        result = await self.session.execute(
            select(OmPayPaymentMethodModel).where(
                OmPayPaymentMethodModel.payment_method_id == payment_method_id,
                *self._active(tenant_id),
            )
        )
        return result.scalar_one_or_none()

    async def get(self, payment_method_id: str, tenant_id: str) -> Optional[PaymentMethodRecord]:
        db_pm = await self._get_model(payment_method_id, tenant_id)
        return self._to_entity(db_pm) if db_pm else None

    async def get_by_gateway_card_id(self, account_id: str, gateway_card_id: str, tenant_id: str) -> Optional[PaymentMethodRecord]:
        result = await self.session.execute(
            select(OmPayPaymentMethodModel)
            .where(
                OmPayPaymentMethodModel.account_id == account_id,
                OmPayPaymentMethodModel.gateway_card_id == gateway_card_id,
                *self._active(tenant_id),
            )
            .order_by(OmPayPaymentMethodModel.id.desc())
            .limit(1)
        )
        db_pm = result.scalars().first()
        return self._to_entity(db_pm) if db_pm else None

    async def list_by_account(self, account_id: str, tenant_id: str) -> List[PaymentMethodRecord]:
        result = await self.session.execute(
            select(OmPayPaymentMethodModel)
            .where(OmPayPaymentMethodModel.account_id == account_id, *self._active(tenant_id))
            .order_by(OmPayPaymentMethodModel.id.asc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_by_payer(self, account_id: str, gateway_payer_id: str, tenant_id: str) -> List[PaymentMethodRecord]:
        result = await self.session.execute(
            select(OmPayPaymentMethodModel)
            .where(
                OmPayPaymentMethodModel.account_id == account_id,
                OmPayPaymentMethodModel.gateway_payer_id == gateway_payer_id,
                *self._active(tenant_id),
            )
            .order_by(OmPayPaymentMethodModel.id.asc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def get_latest_payer_id(self, account_id: str, tenant_id: str) -> Optional[str]:
        result = await self.session.execute(
            select(OmPayPaymentMethodModel.gateway_payer_id)
            .where(
                OmPayPaymentMethodModel.account_id == account_id,
                OmPayPaymentMethodModel.gateway_payer_id.is_not(None),
                *self._active(tenant_id),
            )
            .order_by(OmPayPaymentMethodModel.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def update(self, record: PaymentMethodRecord) -> PaymentMethodRecord:
        db_pm = await self._get_model(record.payment_method_id, record.tenant_id)
        if not db_pm:
            raise PaymentMethodNotFoundException(record.payment_method_id)

        db_pm.gateway_payer_id = record.gateway_payer_id
        db_pm.is_default = record.is_default
        db_pm.extra_metadata = record.metadata

        await self.session.flush()
        await self.session.refresh(db_pm)
        return self._to_entity(db_pm)

    async def clear_default(self, account_id: str, tenant_id: str) -> None:
        await self.session.execute(
            update(OmPayPaymentMethodModel)
            .where(
                OmPayPaymentMethodModel.account_id == account_id,
                OmPayPaymentMethodModel.tenant_id == tenant_id,
                OmPayPaymentMethodModel.is_default.is_(True),
            )
            .values(is_default=False)
        )

    async def set_default(self, payment_method_id: str, tenant_id: str) -> None:
        await self.session.execute(
            update(OmPayPaymentMethodModel)
            .where(OmPayPaymentMethodModel.payment_method_id == payment_method_id, *self._active(tenant_id))
            .values(is_default=True)
        )

    async def mark_deleted(self, payment_method_id: str, tenant_id: str) -> None:
        await self.session.execute(
            update(OmPayPaymentMethodModel)
            .where(
                OmPayPaymentMethodModel.payment_method_id == payment_method_id,
                OmPayPaymentMethodModel.tenant_id == tenant_id,
            )
            .values(is_deleted=True, is_default=False)
        )
        logger.info("payment_method_soft_deleted", payment_method_id=payment_method_id)

    def _search_criteria(self, search_key: str, tenant_id: str):
        pattern = f"%{search_key}%"
        return (
            *self._active(tenant_id),
            or_(
                OmPayPaymentMethodModel.account_id.like(pattern),
                OmPayPaymentMethodModel.payment_method_id.like(pattern),
                OmPayPaymentMethodModel.gateway_card_id.like(pattern),
                OmPayPaymentMethodModel.gateway_payer_id.like(pattern),
            ),
        )

    async def search(self, search_key: str, tenant_id: str, offset: int = 0, limit: int = 100) -> List[PaymentMethodRecord]:
        result = await self.session.execute(
            select(OmPayPaymentMethodModel)
            .where(*self._search_criteria(search_key, tenant_id))
            .order_by(OmPayPaymentMethodModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def count_search(self, search_key: str, tenant_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(OmPayPaymentMethodModel).where(*self._search_criteria(search_key, tenant_id))
        )
        return int(result.scalar_one())
