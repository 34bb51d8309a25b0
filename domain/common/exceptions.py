"""领域层业务异常定义，供领域、应用与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class GatewayTransportError(BusinessException):
    """网关不可达、超时或返回无法解析的响应"""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None):
        details = {k: v for k, v in {"status_code": status_code, "url": url}.items() if v is not None}
        super().__init__(
            code=PaymentCode.TRANSPORT_ERROR,
            message=message,
            error_type="GatewayTransportError",
            details=details or None,
        )
        self.status_code = status_code


class WebhookSignatureException(BusinessException):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="WebhookSignatureError",
        )


class MissingOriginatingTransactionException(BusinessException):
    def __init__(self, payment_id: str, operation: str):
        super().__init__(
            code=PaymentCode.MISSING_ORIGINATING_TRANSACTION,
            message=f"No originating gateway transaction found for {operation} on payment {payment_id}",
            error_type="MissingOriginatingTransaction",
            details={"payment_id": payment_id, "operation": operation},
        )


class InvalidNotificationException(BusinessException):
    def __init__(self, message: str):
        super().__init__(
            code=PaymentCode.INVALID_NOTIFICATION,
            message=message,
            error_type="InvalidNotification",
        )


class ReconciliationConflictException(BusinessException):
    def __init__(self, gateway_transaction_id: Optional[str], attempts: int):
        super().__init__(
            code=PaymentCode.RECONCILIATION_CONFLICT,
            message="Ledger record kept changing during reconciliation",
            error_type="ReconciliationConflict",
            details={"gateway_transaction_id": gateway_transaction_id, "attempts": attempts},
        )


class TransactionNotFoundException(BusinessException):
    def __init__(self, transaction_id: str):
        super().__init__(
            code=BusinessCode.TRANSACTION_NOT_FOUND,
            message="Transaction not found",
            error_type="TransactionNotFound",
            details={"transaction_id": transaction_id},
        )


class PaymentMethodNotFoundException(BusinessException):
    def __init__(self, payment_method_id: str):
        super().__init__(
            code=BusinessCode.PAYMENT_METHOD_NOT_FOUND,
            message="Payment method not found",
            error_type="PaymentMethodNotFound",
            details={"payment_method_id": payment_method_id},
        )


class LedgerStoreException(BusinessException):
    """持久化失败（账本或卡库写入）"""

    def __init__(self, message: str, *, operation: str):
        super().__init__(
            code=BusinessCode.DATABASE_ERROR,
            message=message,
            error_type="StoreError",
            details={"operation": operation},
        )


class HostPlatformException(BusinessException):
    """宿主平台回调被拒绝"""

    def __init__(self, message: str, *, operation: str, status_code: Optional[int] = None):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=message,
            error_type="HostPlatformError",
            details={"operation": operation, "status_code": status_code},
        )
