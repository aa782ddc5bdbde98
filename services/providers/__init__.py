"""
Number provider adapters

Each vendor implements the same capability interface (``BaseProvider``) and returns
``ProviderResult`` envelopes, so vendor quirks never leak into the order lifecycle.
"""

from .base import (
    BaseProvider,
    ProviderResult,
    ServiceOffer,
    NumberAllocation,
    SmsCheck,
    STATUS_READY,
    STATUS_CANCEL,
    STATUS_COMPLETE,
)
from .manager import ProviderManager

__all__ = [
    "BaseProvider",
    "ProviderResult",
    "ServiceOffer",
    "NumberAllocation",
    "SmsCheck",
    "STATUS_READY",
    "STATUS_CANCEL",
    "STATUS_COMPLETE",
    "ProviderManager",
]
