"""
Domain errors for the broker.

Every rejection states whether money moved (``funds_moved``) so handlers can tell the user.
Provider and gateway failures are never raised; they come back as result envelopes.
Storage corruption is not a rejection: it propagates to the job failure observer.
"""

from typing import Optional


class StorageCorruptError(Exception):
    """A persisted collection exists but cannot be parsed"""

    def __init__(self, collection: str, path: str, reason: str = ""):
        super().__init__(f"Collection '{collection}' at {path} is corrupt: {reason}")
        self.collection = collection
        self.path = path


class BrokerError(Exception):
    """Base class for user-facing broker rejections"""

    funds_moved = False

    def __init__(self, message: str = "", funds_moved: Optional[bool] = None):
        super().__init__(message or self.__class__.__doc__)
        if funds_moved is not None:
            self.funds_moved = funds_moved


class InsufficientBalanceError(BrokerError):
    """Balance is too low for this operation"""

    def __init__(self, user_id: int, balance: int, required: int):
        super().__init__(f"User {user_id} has {balance}, needs {required}")
        self.user_id = user_id
        self.balance = balance
        self.required = required


class DuplicateOrderError(BrokerError):
    """User already has an order in progress"""


class PriceChangedError(BrokerError):
    """Provider re-quoted a different price; confirmation required"""

    def __init__(self, old_price: int, new_price: int):
        super().__init__(f"Price changed from {old_price} to {new_price}")
        self.old_price = old_price
        self.new_price = new_price


class OrderNotFoundError(BrokerError):
    """No matching order for this user"""


class AlreadyTerminalError(BrokerError):
    """Order has already been resolved or is being resolved"""


class CancelTooEarlyError(BrokerError):
    """Cancel is not allowed yet"""

    def __init__(self, remaining_seconds: int):
        super().__init__(f"Cancel available in {remaining_seconds}s")
        self.remaining_seconds = remaining_seconds


class RefundFailureError(BrokerError):
    """Upstream cancel failed; order is active again and balance untouched"""


class OrderInProgressError(BrokerError):
    """Another request for this user is still being processed"""


class OutOfStockError(BrokerError):
    """Requested item is out of stock"""


class PurchaseFailedError(BrokerError):
    """Purchase could not be completed"""


class ProviderNotFoundError(BrokerError):
    """Unknown or disabled provider"""


class DuplicateDepositError(BrokerError):
    """User already has a pending deposit"""


class DepositNotFoundError(BrokerError):
    """No pending deposit with this id"""


class InvalidAmountError(BrokerError):
    """Amount is outside the accepted range"""


class ProductNotFoundError(BrokerError):
    """No product with this id"""
