"""
Domain records for the number broker.

Every record is persisted as a plain JSON object through the atomic store, so each
dataclass carries a ``to_dict``/``from_dict`` pair. Money is held in whole IDR units (int).
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, List, Optional


class OrderStatus(Enum):
    """Number order lifecycle states"""
    ACTIVE = "active"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)


class DepositStatus(Enum):
    """Payment intent lifecycle states"""
    PENDING = "pending"
    SUCCESS = "success"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class GatewayStatus(Enum):
    """Normalized status reported by the payment gateway"""
    PENDING = "pending"
    SUCCESS = "success"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SmsStatus(Enum):
    WAITING = "Waiting"
    SUCCESS = "Success"


class PaymentMethod(Enum):
    BALANCE = "balance"
    QRIS = "qris"


class Collection:
    """Names of the persisted JSON collections"""
    ACCOUNTS = "accounts"
    ORDERS = "orders"
    HISTORY = "history"
    TOP_USERS = "top_users"
    PENDING_DEPOSITS = "pending_deposits"
    PRODUCTS = "products"
    PRODUCT_ORDERS = "product_orders"
    BANNED_USERS = "banned_users"
    RATE_LIMITS = "rate_limits"

    DEFAULTS: Dict[str, Any] = {
        ACCOUNTS: {},
        ORDERS: {},
        HISTORY: {},
        TOP_USERS: {},
        PENDING_DEPOSITS: [],
        PRODUCTS: {},
        PRODUCT_ORDERS: {},
        BANNED_USERS: [],
        RATE_LIMITS: {},
    }


@dataclass
class Account:
    user_id: int
    balance: int = 0
    last_updated_at: float = 0.0
    # most recent idempotency keys applied to this balance, oldest first
    ledger_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            user_id=int(data["user_id"]),
            balance=int(data.get("balance", 0)),
            last_updated_at=float(data.get("last_updated_at", 0.0)),
            ledger_keys=list(data.get("ledger_keys", [])),
        )


@dataclass
class ServiceSelection:
    """What the user picked in the catalog, including the price they were shown"""
    provider_key: str
    service_id: str
    country: str
    shown_price: int


@dataclass
class Order:
    order_id: str
    user_id: int
    provider_key: str
    service_id: str
    country: str
    price: int
    number: str
    status: OrderStatus
    created_at: float
    service_name: str = ""
    delivery_ref: Dict[str, Any] = field(default_factory=dict)

    @property
    def refund_key(self) -> str:
        return f"refund:{self.user_id}:{self.order_id}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            order_id=str(data["order_id"]),
            user_id=int(data["user_id"]),
            provider_key=data["provider_key"],
            service_id=str(data["service_id"]),
            country=str(data["country"]),
            price=int(data["price"]),
            number=str(data.get("number", "")),
            status=OrderStatus(data["status"]),
            created_at=float(data["created_at"]),
            service_name=data.get("service_name", ""),
            delivery_ref=dict(data.get("delivery_ref") or {}),
        )


@dataclass
class HistoryEntry:
    order_id: str
    provider_key: str
    service_name: str
    country: str
    number: str
    sms_code: str
    price: int
    completed_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class DepositIntent:
    trx_id: str
    user_id: int
    amount_requested: int
    amount_to_credit: int
    created_at: float
    expires_at: float
    status: DepositStatus = DepositStatus.PENDING
    fee: int = 0
    payload: str = ""
    delivery_ref: Dict[str, Any] = field(default_factory=dict)
    linked_product_id: Optional[str] = None
    resolved_at: Optional[float] = None
    delivery_failed: bool = False

    @property
    def is_product_payment(self) -> bool:
        return self.linked_product_id is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DepositIntent":
        return cls(
            trx_id=str(data["trx_id"]),
            user_id=int(data["user_id"]),
            amount_requested=int(data["amount_requested"]),
            amount_to_credit=int(data["amount_to_credit"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            status=DepositStatus(data.get("status", DepositStatus.PENDING.value)),
            fee=int(data.get("fee", 0)),
            payload=data.get("payload", ""),
            delivery_ref=dict(data.get("delivery_ref") or {}),
            linked_product_id=data.get("linked_product_id"),
            resolved_at=data.get("resolved_at"),
            delivery_failed=bool(data.get("delivery_failed", False)),
        )


@dataclass
class Product:
    product_id: str
    name: str
    price: int
    stock: int
    content: str = ""
    description: str = ""
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        return cls(
            product_id=str(data["product_id"]),
            name=data["name"],
            price=int(data["price"]),
            stock=int(data.get("stock", 0)),
            content=data.get("content", ""),
            description=data.get("description", ""),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class ProductOrder:
    product_order_id: str
    user_id: int
    product_id: str
    product_name: str
    price: int
    payment_method: PaymentMethod
    created_at: float
    reference: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["payment_method"] = self.payment_method.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductOrder":
        return cls(
            product_order_id=str(data["product_order_id"]),
            user_id=int(data["user_id"]),
            product_id=str(data["product_id"]),
            product_name=data.get("product_name", ""),
            price=int(data["price"]),
            payment_method=PaymentMethod(data["payment_method"]),
            created_at=float(data["created_at"]),
            reference=data.get("reference", ""),
        )
