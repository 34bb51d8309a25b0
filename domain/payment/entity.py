"""
支付领域实体 - 网关交易账本记录与卡库记录
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.document import GatewayDocument


class TransactionKind(str, Enum):
    """交易类型"""
    AUTHORIZE = "AUTHORIZE"
    PURCHASE = "PURCHASE"
    CAPTURE = "CAPTURE"
    VOID = "VOID"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    """规范化交易状态（与网关词汇无关）"""
    PROCESSED = "PROCESSED"
    PENDING = "PENDING"
    ERROR = "ERROR"
    CANCELED = "CANCELED"
    UNDEFINED = "UNDEFINED"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class TransactionRecord:
    """
    账本记录 - 每次网关交互一条，只追加

    业务规则：
    1. 发起字段（标识、类型、金额、网关关联）创建后不可变
    2. 只有结果信封（additional_data + status/gateway_state）可在对账时整体重写
    3. 每次重写 revision 加一，用于乐观并发控制
    """

    account_id: str
    payment_id: str
    transaction_id: str
    tenant_id: str
    kind: TransactionKind
    status: TransactionStatus = TransactionStatus.UNDEFINED

    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    # 网关关联
    gateway_transaction_id: Optional[str] = None
    gateway_reference_id: Optional[str] = None
    gateway_payer_id: Optional[str] = None
    gateway_card_id: Optional[str] = None
    gateway_state: Optional[str] = None

    # 3DS
    redirect_url: Optional[str] = None
    authenticate_url: Optional[str] = None

    additional_data: dict = field(default_factory=dict)

    id: Optional[int] = None
    revision: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.additional_data is None:
            self.additional_data = {}
        if self.amount is not None and self.amount < 0:
            raise DomainValidationException(f"交易金额不能为负: {self.amount}", field="amount")
        if self.currency is not None and (len(self.currency) != 3 or not self.currency.isalpha()):
            raise DomainValidationException(f"无效的货币代码: {self.currency}", field="currency")
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def envelope(self) -> GatewayDocument:
        return GatewayDocument(self.additional_data)

    @property
    def result_code(self) -> Optional[str]:
        return self.envelope.find_str("result.code")

    @property
    def result_description(self) -> Optional[str]:
        return self.envelope.find_str("result.description", "result.message")

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING


@dataclass
class PaymentMethodRecord:
    """
    卡库记录 - 只保存网关签发的卡 ID / 付款人 ID，绝不保存卡号

    每个账户最多一条未删除的默认记录；删除为软删除。
    """

    account_id: str
    payment_method_id: str
    tenant_id: str
    gateway_card_id: str
    gateway_payer_id: Optional[str] = None
    is_default: bool = False
    is_deleted: bool = False
    metadata: dict = field(default_factory=dict)

    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.gateway_card_id:
            raise DomainValidationException("网关卡 ID 不能为空", field="gateway_card_id")
        if self.metadata is None:
            self.metadata = {}
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def resolved_payer_id(self) -> Optional[str]:
        """付款人 ID，旧数据可能只存在于 metadata 中"""
        if self.gateway_payer_id:
            return self.gateway_payer_id
        fallback = self.metadata.get("ompay_payer_id")
        return str(fallback) if fallback else None
