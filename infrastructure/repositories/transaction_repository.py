"""
交易账本仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import LedgerStoreException
from domain.payment.entity import TransactionKind, TransactionRecord, TransactionStatus
from domain.payment.repository import TransactionLedgerRepository
from infrastructure.models.payment import OmPayResponseModel


logger = get_logger(__name__)


class SQLAlchemyTransactionLedgerRepository(TransactionLedgerRepository):
    """交易账本仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _read(self, statement, operation: str):
        """执行只读查询，数据库异常统一转换为 LedgerStoreException"""
        try:
            return await self.session.execute(statement)
        except SQLAlchemyError as e:
            logger.error("ledger_read_failed", operation=operation, error=str(e))
            raise LedgerStoreException("Failed to read ledger", operation=operation) from e

    def _to_entity(self, model: OmPayResponseModel) -> TransactionRecord:
        """将数据库模型转换为领域实体"""
        return TransactionRecord(
            id=model.id,
            account_id=model.account_id,
            payment_id=model.payment_id,
            transaction_id=model.transaction_id,
            tenant_id=model.tenant_id,
            kind=TransactionKind(model.kind),
            status=TransactionStatus(model.status),
            amount=Decimal(str(model.amount)) if model.amount is not None else None,
            currency=model.currency,
            gateway_transaction_id=model.gateway_transaction_id,
            gateway_reference_id=model.gateway_reference_id,
            gateway_payer_id=model.gateway_payer_id,
            gateway_card_id=model.gateway_card_id,
            gateway_state=model.gateway_state,
            redirect_url=model.redirect_url,
            authenticate_url=model.authenticate_url,
            additional_data=model.additional_data or {},
            revision=model.revision,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: TransactionRecord) -> OmPayResponseModel:
        """将领域实体转换为数据库模型"""
        return OmPayResponseModel(
            account_id=entity.account_id,
            payment_id=entity.payment_id,
            transaction_id=entity.transaction_id,
            tenant_id=entity.tenant_id,
            kind=entity.kind.value,
            status=entity.status.value,
            amount=entity.amount,
            currency=entity.currency,
            gateway_transaction_id=entity.gateway_transaction_id,
            gateway_reference_id=entity.gateway_reference_id,
            gateway_payer_id=entity.gateway_payer_id,
            gateway_card_id=entity.gateway_card_id,
            gateway_state=entity.gateway_state,
            redirect_url=entity.redirect_url,
            authenticate_url=entity.authenticate_url,
            additional_data=entity.additional_data,
            revision=0,
        )

    async def add(self, record: TransactionRecord) -> TransactionRecord:
        """追加账本记录"""
        try:
            db_record = self._to_model(record)
            self.session.add(db_record)
            await self.session.flush()
            await self.session.refresh(db_record)
        except SQLAlchemyError as e:
            logger.error(
                "ledger_write_failed",
                payment_id=record.payment_id,
                transaction_id=record.transaction_id,
                gateway_transaction_id=record.gateway_transaction_id,
                error=str(e),
            )
            raise LedgerStoreException("Failed to record gateway response", operation="ledger.add") from e
        logger.info(
            "ledger_record_added",
            record_id=db_record.id,
            payment_id=db_record.payment_id,
            kind=db_record.kind,
            status=db_record.status,
        )
        return self._to_entity(db_record)

    async def get_by_id(self, record_id: int) -> Optional[TransactionRecord]:
        result = await self._read(
            select(OmPayResponseModel).where(OmPayResponseModel.id == record_id),
            "ledger.get_by_id",
        )
        db_record = result.scalar_one_or_none()
        return self._to_entity(db_record) if db_record else None

    async def _latest(self, *criteria) -> Optional[TransactionRecord]:
        result = await self._read(
            select(OmPayResponseModel)
            .where(*criteria)
            .order_by(OmPayResponseModel.id.desc())
            .limit(1),
            "ledger.lookup",
        )
        db_record = result.scalars().first()
        return self._to_entity(db_record) if db_record else None

    async def get_by_transaction_id(self, transaction_id: str, tenant_id: str) -> Optional[TransactionRecord]:
        return await self._latest(
            OmPayResponseModel.transaction_id == transaction_id,
            OmPayResponseModel.tenant_id == tenant_id,
        )

    async def get_by_gateway_transaction_id(self, gateway_transaction_id: str, tenant_id: str) -> Optional[TransactionRecord]:
        return await self._latest(
            OmPayResponseModel.gateway_transaction_id == gateway_transaction_id,
            OmPayResponseModel.tenant_id == tenant_id,
        )

    async def get_by_gateway_reference_id(self, gateway_reference_id: str, tenant_id: str) -> Optional[TransactionRecord]:
        return await self._latest(
            OmPayResponseModel.gateway_reference_id == gateway_reference_id,
            OmPayResponseModel.tenant_id == tenant_id,
        )

    async def list_by_payment(self, payment_id: str, tenant_id: str) -> List[TransactionRecord]:
        result = await self._read(
            select(OmPayResponseModel)
            .where(
                OmPayResponseModel.payment_id == payment_id,
                OmPayResponseModel.tenant_id == tenant_id,
            )
            .order_by(OmPayResponseModel.id.asc()),
            "ledger.list_by_payment",
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def get_latest_by_kind_and_state(
        self,
        payment_id: str,
        kind: TransactionKind,
        gateway_state: str,
        tenant_id: str,
    ) -> Optional[TransactionRecord]:
        return await self._latest(
            OmPayResponseModel.payment_id == payment_id,
            OmPayResponseModel.tenant_id == tenant_id,
            OmPayResponseModel.kind == kind.value,
            func.lower(OmPayResponseModel.gateway_state) == gateway_state.lower(),
        )

    async def update_outcome(
        self,
        record_id: int,
        expected_revision: int,
        status: TransactionStatus,
        gateway_state: Optional[str],
        additional_data: dict,
    ) -> bool:
        """仅当 revision 未变化时重写结果信封"""
        try:
            result = await self.session.execute(
                update(OmPayResponseModel)
                .where(
                    OmPayResponseModel.id == record_id,
                    OmPayResponseModel.revision == expected_revision,
                )
                .values(
                    status=status.value,
                    gateway_state=gateway_state,
                    additional_data=additional_data,
                    revision=OmPayResponseModel.revision + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error("ledger_update_failed", record_id=record_id, error=str(e))
            raise LedgerStoreException("Failed to update gateway outcome", operation="ledger.update_outcome") from e
        swapped = result.rowcount == 1
        if swapped:
            logger.info("ledger_outcome_updated", record_id=record_id, status=status.value, revision=expected_revision + 1)
        return swapped

    async def list_pending_payments(self, updated_before: datetime, limit: int = 100) -> List[Tuple[str, str]]:
        result = await self._read(
            select(OmPayResponseModel.tenant_id, OmPayResponseModel.payment_id)
            .where(
                OmPayResponseModel.status == TransactionStatus.PENDING.value,
                OmPayResponseModel.updated_at < updated_before,
            )
            .distinct()
            .limit(limit),
            "ledger.list_pending_payments",
        )
        return [(row[0], row[1]) for row in result.all()]

    def _search_criteria(self, search_key: str, tenant_id: str):
        pattern = f"%{search_key}%"
        return (
            OmPayResponseModel.tenant_id == tenant_id,
            or_(
                OmPayResponseModel.payment_id.like(pattern),
                OmPayResponseModel.transaction_id.like(pattern),
                OmPayResponseModel.account_id.like(pattern),
                OmPayResponseModel.gateway_transaction_id.like(pattern),
                OmPayResponseModel.gateway_reference_id.like(pattern),
            ),
        )

    async def search(self, search_key: str, tenant_id: str, offset: int = 0, limit: int = 100) -> List[TransactionRecord]:
        result = await self._read(
            select(OmPayResponseModel)
            .where(*self._search_criteria(search_key, tenant_id))
            .order_by(OmPayResponseModel.id.desc())
            .offset(offset)
            .limit(limit),
            "ledger.search",
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def count_search(self, search_key: str, tenant_id: str) -> int:
        result = await self._read(
            select(func.count()).select_from(OmPayResponseModel).where(*self._search_criteria(search_key, tenant_id)),
            "ledger.count_search",
        )
        return int(result.scalar_one())
