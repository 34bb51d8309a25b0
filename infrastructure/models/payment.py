"""
OMPay 数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, Integer, String, Numeric, DateTime, JSON, Index
)
from datetime import datetime, timezone

from .base import Base


class OmPayResponseModel(Base):
    """
    网关交互账本

    每次网关交互一行，只追加；对账只重写 status / gateway_state / additional_data / revision
    """
    __tablename__ = "ompay_responses"

    # 主键（单调递增，作为"最新记录"的排序依据）
    id = Column(Integer, primary_key=True, autoincrement=True)

    # 宿主平台标识
    account_id = Column(String(64), nullable=False, comment="宿主账户ID")
    payment_id = Column(String(64), nullable=False, index=True, comment="宿主支付ID")
    transaction_id = Column(String(64), nullable=False, index=True, comment="宿主支付交易ID")
    tenant_id = Column(String(64), nullable=False, comment="宿主租户ID")

    kind = Column(String(32), nullable=False, comment="交易类型: AUTHORIZE/PURCHASE/CAPTURE/VOID/REFUND")

    amount = Column(Numeric(precision=15, scale=2), nullable=True, comment="金额（VOID 为空）")
    currency = Column(String(3), nullable=True, comment="货币代码 ISO-4217")

    # 网关关联
    gateway_transaction_id = Column(String(128), nullable=True, index=True, comment="网关交易ID")
    gateway_reference_id = Column(String(128), nullable=True, index=True, comment="网关引用ID（原始交易）")
    gateway_payer_id = Column(String(128), nullable=True, comment="网关付款人ID")
    gateway_card_id = Column(String(128), nullable=True, comment="网关卡ID")

    # 结果（对账时可变）
    status = Column(String(16), nullable=False, default="UNDEFINED", comment="规范化状态")
    gateway_state = Column(String(64), nullable=True, comment="网关原始状态")
    revision = Column(Integer, nullable=False, default=0, comment="乐观锁版本号")

    # 3DS
    redirect_url = Column(String(1024), nullable=True, comment="重定向URL")
    authenticate_url = Column(String(1024), nullable=True, comment="3DS 认证URL")

    # 网关完整响应（JSON）
    additional_data = Column(JSON, nullable=True, comment="网关响应信封")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        Index("ix_ompay_responses_payment_kind", "tenant_id", "payment_id", "kind"),
        Index("ix_ompay_responses_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return (
            f"<OmPayResponseModel(id={self.id}, payment_id='{self.payment_id}', "
            f"kind='{self.kind}', gateway_transaction_id='{self.gateway_transaction_id}', status='{self.status}')>"
        )


class OmPayPaymentMethodModel(Base):
    """
    卡库（仅保存网关卡ID/付款人ID与展示元数据）
    """
    __tablename__ = "ompay_payment_methods"

    id = Column(Integer, primary_key=True, autoincrement=True)

    account_id = Column(String(64), nullable=False, comment="宿主账户ID")
    payment_method_id = Column(String(64), nullable=False, unique=True, comment="宿主支付方式ID")
    tenant_id = Column(String(64), nullable=False, comment="宿主租户ID")

    gateway_card_id = Column(String(128), nullable=False, comment="网关卡ID")
    gateway_payer_id = Column(String(128), nullable=True, comment="网关付款人ID")

    is_default = Column(Boolean, nullable=False, default=False, comment="是否默认")
    is_deleted = Column(Boolean, nullable=False, default=False, comment="软删除标记")

    # 卡展示元数据（使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="卡元数据")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        Index("ix_ompay_pm_account", "tenant_id", "account_id", "is_deleted"),
        Index("ix_ompay_pm_payer", "tenant_id", "account_id", "gateway_payer_id"),
    )

    def __repr__(self):
        return (
            f"<OmPayPaymentMethodModel(id={self.id}, payment_method_id='{self.payment_method_id}', "
            f"gateway_card_id='{self.gateway_card_id}', is_default={self.is_default})>"
        )
