"""add_ompay_tables

Revision ID: 3b1f6c2a9d40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3b1f6c2a9d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Gateway interaction ledger
    op.create_table(
        'ompay_responses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False, comment='宿主账户ID'),
        sa.Column('payment_id', sa.String(length=64), nullable=False, comment='宿主支付ID'),
        sa.Column('transaction_id', sa.String(length=64), nullable=False, comment='宿主支付交易ID'),
        sa.Column('tenant_id', sa.String(length=64), nullable=False, comment='宿主租户ID'),
        sa.Column('kind', sa.String(length=32), nullable=False, comment='交易类型: AUTHORIZE/PURCHASE/CAPTURE/VOID/REFUND'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=True, comment='金额（VOID 为空）'),
        sa.Column('currency', sa.String(length=3), nullable=True, comment='货币代码 ISO-4217'),
        sa.Column('gateway_transaction_id', sa.String(length=128), nullable=True, comment='网关交易ID'),
        sa.Column('gateway_reference_id', sa.String(length=128), nullable=True, comment='网关引用ID（原始交易）'),
        sa.Column('gateway_payer_id', sa.String(length=128), nullable=True, comment='网关付款人ID'),
        sa.Column('gateway_card_id', sa.String(length=128), nullable=True, comment='网关卡ID'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='UNDEFINED', comment='规范化状态'),
        sa.Column('gateway_state', sa.String(length=64), nullable=True, comment='网关原始状态'),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='0', comment='乐观锁版本号'),
        sa.Column('redirect_url', sa.String(length=1024), nullable=True, comment='重定向URL'),
        sa.Column('authenticate_url', sa.String(length=1024), nullable=True, comment='3DS 认证URL'),
        sa.Column('additional_data', sa.JSON(), nullable=True, comment='网关响应信封'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        comment='OMPay 网关交互账本（只追加）'
    )
    op.create_index('ix_ompay_responses_payment_id', 'ompay_responses', ['payment_id'], unique=False)
    op.create_index('ix_ompay_responses_transaction_id', 'ompay_responses', ['transaction_id'], unique=False)
    op.create_index('ix_ompay_responses_gateway_transaction_id', 'ompay_responses', ['gateway_transaction_id'], unique=False)
    op.create_index('ix_ompay_responses_gateway_reference_id', 'ompay_responses', ['gateway_reference_id'], unique=False)
    op.create_index('ix_ompay_responses_payment_kind', 'ompay_responses', ['tenant_id', 'payment_id', 'kind'], unique=False)
    op.create_index('ix_ompay_responses_status_updated', 'ompay_responses', ['status', 'updated_at'], unique=False)

    # Tokenized card vault
    op.create_table(
        'ompay_payment_methods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False, comment='宿主账户ID'),
        sa.Column('payment_method_id', sa.String(length=64), nullable=False, comment='宿主支付方式ID'),
        sa.Column('tenant_id', sa.String(length=64), nullable=False, comment='宿主租户ID'),
        sa.Column('gateway_card_id', sa.String(length=128), nullable=False, comment='网关卡ID'),
        sa.Column('gateway_payer_id', sa.String(length=128), nullable=True, comment='网关付款人ID'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false', comment='是否默认'),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default='false', comment='软删除标记'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='卡元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_method_id', name='uq_ompay_payment_methods_payment_method_id'),
        comment='OMPay 卡库'
    )
    op.create_index('ix_ompay_pm_account', 'ompay_payment_methods', ['tenant_id', 'account_id', 'is_deleted'], unique=False)
    op.create_index('ix_ompay_pm_payer', 'ompay_payment_methods', ['tenant_id', 'account_id', 'gateway_payer_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_ompay_pm_payer', table_name='ompay_payment_methods')
    op.drop_index('ix_ompay_pm_account', table_name='ompay_payment_methods')
    op.drop_table('ompay_payment_methods')

    op.drop_index('ix_ompay_responses_status_updated', table_name='ompay_responses')
    op.drop_index('ix_ompay_responses_payment_kind', table_name='ompay_responses')
    op.drop_index('ix_ompay_responses_gateway_reference_id', table_name='ompay_responses')
    op.drop_index('ix_ompay_responses_gateway_transaction_id', table_name='ompay_responses')
    op.drop_index('ix_ompay_responses_transaction_id', table_name='ompay_responses')
    op.drop_index('ix_ompay_responses_payment_id', table_name='ompay_responses')
    op.drop_table('ompay_responses')
