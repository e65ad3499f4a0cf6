"""
Client-Local State Models

Values that exist only on the client: the restored session, derived
display state, payment modal state and user-facing notices. None of
these are sent to the server; wire payloads live in tableside.schemas.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from tableside.schemas import (
    DisplayStatus,
    OrderItem,
    TERMINAL_DISPLAY_STATUSES,
    TimelineStep,
)


# =============================================================================
# SESSION
# =============================================================================

class SessionKind(str, Enum):
    UNRESOLVED = "unresolved"
    AUTHENTICATED = "authenticated"
    GUEST = "guest"


@dataclass(frozen=True)
class Session:
    """
    Identity the client acts under.

    Exactly one kind holds at a time. A guest session records whether the
    guest mode was chosen explicitly or is the guest-allowed fallback after
    restoration found nothing usable.

    Attributes:
        kind: UNRESOLVED until restoration completes
        token: Bearer token (authenticated only)
        user: Persisted user record (authenticated only)
        explicit_guest: True when the device carries the guest flag
    """
    kind: SessionKind = SessionKind.UNRESOLVED
    token: Optional[str] = None
    user: Optional[dict] = None
    explicit_guest: bool = False

    @classmethod
    def unresolved(cls) -> "Session":
        return cls()

    @classmethod
    def authenticated(cls, token: str, user: Optional[dict] = None) -> "Session":
        return cls(kind=SessionKind.AUTHENTICATED, token=token, user=user)

    @classmethod
    def guest(cls, explicit: bool = False) -> "Session":
        return cls(kind=SessionKind.GUEST, explicit_guest=explicit)

    @property
    def is_authenticated(self) -> bool:
        return self.kind == SessionKind.AUTHENTICATED

    @property
    def is_guest(self) -> bool:
        return self.kind == SessionKind.GUEST

    @property
    def is_resolved(self) -> bool:
        return self.kind != SessionKind.UNRESOLVED


# =============================================================================
# DISPLAY
# =============================================================================

@dataclass(frozen=True)
class DisplayOrder:
    """Coarse order status derived from the item statuses."""
    status: DisplayStatus
    current_step: Optional[TimelineStep] = None
    rejection_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DISPLAY_STATUSES


@dataclass(frozen=True)
class OrderBatch:
    """Items placed by one checkout click (1 s creation-time proximity)."""
    anchor: datetime
    items: tuple[OrderItem, ...]
    display: DisplayOrder


# =============================================================================
# PAYMENT
# =============================================================================

class PaymentStep(str, Enum):
    IDLE = "IDLE"
    QR_PENDING = "QR_PENDING"
    QR_READY = "QR_READY"
    QR_FAILED = "QR_FAILED"
    BILL_PENDING = "BILL_PENDING"
    BILL_READY = "BILL_READY"
    BILL_UNSETTLED = "BILL_UNSETTLED"
    BILL_FAILED = "BILL_FAILED"
    DONE = "DONE"


@dataclass
class PaymentSession:
    """QR hand-off for one checkout; discarded when the modal closes."""
    order_id: str
    qr_code: str
    amount: float
    currency: str
    payment_url: str


# =============================================================================
# NOTICES
# =============================================================================

class NoticeLevel(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    """Inline message for the customer (toast / alert)."""
    level: NoticeLevel
    title: str
    message: str
    created_at: datetime = field(default_factory=datetime.now)


Notifier = Callable[[Notice], None]
