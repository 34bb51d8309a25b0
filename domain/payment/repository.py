"""
支付仓储接口 - 定义账本与卡库数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Tuple

from .entity import TransactionRecord, PaymentMethodRecord, TransactionKind, TransactionStatus


class TransactionLedgerRepository(ABC):
    """交易账本仓储 - 只追加；仅结果信封可更新"""

    @abstractmethod
    async def add(self, record: TransactionRecord) -> TransactionRecord:
        """追加一条网关交互记录"""
        pass

    @abstractmethod
    async def get_by_id(self, record_id: int) -> Optional[TransactionRecord]:
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str, tenant_id: str) -> Optional[TransactionRecord]:
        """根据宿主交易ID获取最新记录"""
        pass

    @abstractmethod
    async def get_by_gateway_transaction_id(self, gateway_transaction_id: str, tenant_id: str) -> Optional[TransactionRecord]:
        """根据网关交易ID获取记录"""
        pass

    @abstractmethod
    async def get_by_gateway_reference_id(self, gateway_reference_id: str, tenant_id: str) -> Optional[TransactionRecord]:
        """根据网关引用ID获取最新记录"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: str, tenant_id: str) -> List[TransactionRecord]:
        """获取宿主支付的全部记录（按记录ID升序）"""
        pass

    @abstractmethod
    async def get_latest_by_kind_and_state(
        self,
        payment_id: str,
        kind: TransactionKind,
        gateway_state: str,
        tenant_id: str,
    ) -> Optional[TransactionRecord]:
        """获取指定类型与网关状态的最新记录（用于定位原始交易）"""
        pass

    @abstractmethod
    async def update_outcome(
        self,
        record_id: int,
        expected_revision: int,
        status: TransactionStatus,
        gateway_state: Optional[str],
        additional_data: dict,
    ) -> bool:
        """比较并交换结果信封；revision 不匹配时返回 False"""
        pass

    @abstractmethod
    async def list_pending_payments(self, updated_before: datetime, limit: int = 100) -> List[Tuple[str, str]]:
        """列出含 PENDING 记录的 (tenant_id, payment_id)"""
        pass

    @abstractmethod
    async def search(self, search_key: str, tenant_id: str, offset: int = 0, limit: int = 100) -> List[TransactionRecord]:
        pass

    @abstractmethod
    async def count_search(self, search_key: str, tenant_id: str) -> int:
        pass


class PaymentMethodRepository(ABC):
    """卡库仓储 - 已删除记录对所有读取不可见"""

    @abstractmethod
    async def add(self, record: PaymentMethodRecord) -> PaymentMethodRecord:
        pass

    @abstractmethod
    async def get(self, payment_method_id: str, tenant_id: str) -> Optional[PaymentMethodRecord]:
        pass

    @abstractmethod
    async def get_by_gateway_card_id(self, account_id: str, gateway_card_id: str, tenant_id: str) -> Optional[PaymentMethodRecord]:
        pass

    @abstractmethod
    async def list_by_account(self, account_id: str, tenant_id: str) -> List[PaymentMethodRecord]:
        pass

    @abstractmethod
    async def list_by_payer(self, account_id: str, gateway_payer_id: str, tenant_id: str) -> List[PaymentMethodRecord]:
        pass

    @abstractmethod
    async def get_latest_payer_id(self, account_id: str, tenant_id: str) -> Optional[str]:
        """账户最近一条未删除记录的付款人ID"""
        pass

    @abstractmethod
    async def update(self, record: PaymentMethodRecord) -> PaymentMethodRecord:
        """更新卡元数据与默认标记"""
        pass

    @abstractmethod
    async def clear_default(self, account_id: str, tenant_id: str) -> None:
        pass

    @abstractmethod
    async def set_default(self, payment_method_id: str, tenant_id: str) -> None:
        pass

    @abstractmethod
    async def mark_deleted(self, payment_method_id: str, tenant_id: str) -> None:
        pass

    @abstractmethod
    async def search(self, search_key: str, tenant_id: str, offset: int = 0, limit: int = 100) -> List[PaymentMethodRecord]:
        pass

    @abstractmethod
    async def count_search(self, search_key: str, tenant_id: str) -> int:
        pass
