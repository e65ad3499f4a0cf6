"""
Pydantic Schemas for the Gateway Wire Format

Every payload crossing the REST or realtime boundary is parsed into one
of these models. The gateway speaks camelCase; models accept both
camelCase and snake_case and serialize with aliases.

Status fields are closed enums: unknown values fail validation at the
boundary instead of silently defaulting.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# ENUMS
# =============================================================================

class ItemStatus(str, Enum):
    """Kitchen-side lifecycle of a single dish."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


# Integer codes used by the order service database columns
ITEM_STATUS_CODES = {
    0: ItemStatus.PENDING,
    1: ItemStatus.ACCEPTED,
    2: ItemStatus.PREPARING,
    3: ItemStatus.READY,
    4: ItemStatus.SERVED,
    5: ItemStatus.REJECTED,
    6: ItemStatus.CANCELLED,
}

TERMINAL_ITEM_STATUSES = frozenset(
    {ItemStatus.SERVED, ItemStatus.REJECTED, ItemStatus.CANCELLED}
)
ADVANCED_ITEM_STATUSES = frozenset(
    {ItemStatus.ACCEPTED, ItemStatus.PREPARING, ItemStatus.READY, ItemStatus.SERVED}
)
CUSTOMER_CANCELLABLE_STATUSES = frozenset({ItemStatus.PENDING, ItemStatus.ACCEPTED})

# Kitchen-side transitions enforced by the order service
ITEM_STATUS_TRANSITIONS = {
    ItemStatus.PENDING: {ItemStatus.ACCEPTED, ItemStatus.REJECTED, ItemStatus.CANCELLED},
    ItemStatus.ACCEPTED: {ItemStatus.PREPARING, ItemStatus.CANCELLED},
    ItemStatus.PREPARING: {ItemStatus.READY, ItemStatus.CANCELLED},
    ItemStatus.READY: {ItemStatus.SERVED, ItemStatus.CANCELLED},
    ItemStatus.SERVED: set(),
    ItemStatus.REJECTED: set(),
    ItemStatus.CANCELLED: set(),
}


class OrderStatus(str, Enum):
    """Order-level session state as stored by the order service."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ORDER_STATUS_CODES = {
    0: OrderStatus.PENDING,
    1: OrderStatus.ACCEPTED,
    2: OrderStatus.REJECTED,
    3: OrderStatus.PREPARING,
    4: OrderStatus.READY,
    5: OrderStatus.SERVED,
    6: OrderStatus.COMPLETED,
    7: OrderStatus.CANCELLED,
    8: OrderStatus.IN_PROGRESS,
}


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class DisplayStatus(str, Enum):
    """Coarse customer-facing order status."""
    RECEIVED = "RECEIVED"
    PREPARING = "PREPARING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_DISPLAY_STATUSES = frozenset(
    {DisplayStatus.READY, DisplayStatus.COMPLETED, DisplayStatus.CANCELLED}
)


class TimelineStep(str, Enum):
    RECEIVED = "Received"
    PREPARING = "Preparing"
    READY = "Ready"


def _coerce_enum(value: Any, enum_cls: type, codes: dict) -> Any:
    """Accept enum members, case-insensitive names or integer codes."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid {enum_cls.__name__}: {value!r}")
    if isinstance(value, int):
        if value not in codes:
            raise ValueError(f"Invalid {enum_cls.__name__} code: {value}")
        return codes[value]
    if isinstance(value, str):
        normalized = value.strip().upper()
        try:
            return enum_cls(normalized)
        except ValueError:
            valid = [e.value for e in enum_cls]
            raise ValueError(
                f"Invalid {enum_cls.__name__}: {value!r}. Must be one of: {valid}"
            )
    raise ValueError(f"Invalid {enum_cls.__name__}: {value!r}")


# =============================================================================
# BASE
# =============================================================================

class CamelModel(BaseModel):
    """Base model speaking the gateway's camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CART
# =============================================================================

class ModifierSelection(CamelModel):
    """A chosen option of a modifier group and its price delta."""
    modifier_group_id: str
    modifier_option_id: str
    name: Optional[str] = None
    price: float = Field(default=0.0, ge=0)


def modifier_signature(modifiers: List[ModifierSelection]) -> str:
    """Canonical, order-independent signature of a modifier list."""
    pairs = sorted(
        (m.modifier_group_id, m.modifier_option_id) for m in modifiers
    )
    return ",".join(f"{group}:{option}" for group, option in pairs)


def make_item_key(menu_item_id: str, modifiers: List[ModifierSelection]) -> str:
    """
    Stable cart line identity.

    Two additions of the same menu item with the same modifier choices
    (in any order) produce the same key.
    """
    signature = modifier_signature(modifiers)
    digest = hashlib.sha1(f"{menu_item_id}|{signature}".encode("utf-8")).hexdigest()
    return f"{menu_item_id}-{digest[:12]}"


class CartItem(CamelModel):
    """One line of a table cart."""
    item_key: str
    menu_item_id: str
    name: str = ""
    price: float = Field(default=0.0, ge=0)
    quantity: int = Field(..., ge=1)
    modifiers: List[ModifierSelection] = Field(default_factory=list)
    notes: str = ""
    total: Optional[float] = None

    @property
    def unit_total(self) -> float:
        return self.price + sum(m.price for m in self.modifiers)

    @property
    def total_price(self) -> float:
        """Server total when present, otherwise computed from unit prices."""
        if self.total is not None:
            return self.total
        return round(self.unit_total * self.quantity, 2)


class Cart(CamelModel):
    items: List[CartItem] = Field(default_factory=list)

    @property
    def total_price(self) -> float:
        return round(sum(item.total_price for item in self.items), 2)

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def find(self, item_key: str) -> Optional[CartItem]:
        for item in self.items:
            if item.item_key == item_key:
                return item
        return None

    def index_of(self, item_key: str) -> int:
        for index, item in enumerate(self.items):
            if item.item_key == item_key:
                return index
        return -1


class AddCartItemRequest(CamelModel):
    """Body of POST .../cart/items."""
    menu_item_id: str = Field(..., min_length=1)
    name: str = ""
    quantity: int = Field(default=1, ge=1, le=99)
    price: float = Field(default=0.0, ge=0)
    modifiers: List[ModifierSelection] = Field(default_factory=list)
    notes: str = Field(default="", max_length=500)

    @property
    def item_key(self) -> str:
        return make_item_key(self.menu_item_id, self.modifiers)


class UpdateCartItemRequest(CamelModel):
    """Body of PATCH .../cart/items/{itemKey}."""
    quantity: int = Field(..., ge=1, le=99)


class CheckoutRequest(CamelModel):
    notes: Optional[str] = Field(default=None, max_length=500)


# =============================================================================
# ORDERS
# =============================================================================

class OrderItem(CamelModel):
    id: str
    menu_item_id: str = ""
    name: str = ""
    quantity: int = Field(default=1, ge=0)
    unit_price: float = Field(default=0.0, ge=0)
    modifiers: List[ModifierSelection] = Field(default_factory=list)
    notes: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    rejection_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> ItemStatus:
        return _coerce_enum(v, ItemStatus, ITEM_STATUS_CODES)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES


class Order(CamelModel):
    id: str
    tenant_id: str = ""
    table_id: str = ""
    items: List[OrderItem] = Field(default_factory=list)
    status: Optional[OrderStatus] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    total: Optional[float] = None

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> Optional[OrderStatus]:
        if v is None:
            return None
        return _coerce_enum(v, OrderStatus, ORDER_STATUS_CODES)

    @field_validator("payment_status", mode="before")
    @classmethod
    def validate_payment_status(cls, v: Any) -> PaymentStatus:
        return _coerce_enum(v, PaymentStatus, {})

    def find_item(self, item_id: str) -> Optional[OrderItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class OrderPage(CamelModel):
    orders: List[Order] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20


class CancelOrderRequest(CamelModel):
    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Cancellation reason is required")
        return v.strip()


class UpdateItemsStatusRequest(CamelModel):
    item_ids: List[str] = Field(..., min_length=1)
    status: ItemStatus
    reason: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> ItemStatus:
        return _coerce_enum(v, ItemStatus, ITEM_STATUS_CODES)


# =============================================================================
# PAYMENT
# =============================================================================

class PaymentRequest(CamelModel):
    """Body of POST /payment/qr and POST /payment/bill."""
    tenant_id: str
    order_id: str


class PaymentQR(CamelModel):
    qr_code: str
    amount: float
    currency: str = "VND"
    payment_url: str = ""
    order_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class BillItem(CamelModel):
    id: str
    menu_item_id: Optional[str] = None
    name: str
    unit_price: float
    quantity: int
    subtotal: float
    modifiers: List[ModifierSelection] = Field(default_factory=list)
    modifiers_total: float = 0.0
    total: float
    status: Optional[str] = None


class BillSummary(CamelModel):
    subtotal: float
    modifiers_total: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    total: float
    currency: str = "VND"
    total_items: int = 0
    total_quantity: int = 0


class Bill(CamelModel):
    items: List[BillItem] = Field(default_factory=list)
    summary: BillSummary
    generated_at: datetime = Field(default_factory=utcnow)
    bill_number: Optional[str] = None


# =============================================================================
# IDENTITY / ENVELOPE
# =============================================================================

class TokenGrant(CamelModel):
    """Payload of GET /identity/auth/refresh."""
    access_token: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)

    def user_record(self) -> dict:
        return {
            "userId": self.user_id,
            "username": self.username,
            "email": self.email,
            "roles": self.roles,
        }


class ApiEnvelope(CamelModel):
    """Gateway response envelope; code 1000 means success."""
    code: int
    message: str = ""
    data: Any = None


class RoomAck(CamelModel):
    """Acknowledgement of order.join / order.leave."""
    success: bool = False
    error: Optional[str] = None
