"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import OmPayResponseModel, OmPayPaymentMethodModel

__all__ = [
    "Base",
    "metadata",
    "OmPayResponseModel",
    "OmPayPaymentMethodModel",
]
