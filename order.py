"""
Order Aggregate
===============
Order and line-item value types.

Invariants:
- LineItem unit price is a snapshot taken at insertion, never repriced
- Order total is derived; it can always be recomputed from line items
- Line items may change only while the order is Unconfirmed
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from errors import ValidationError
from order_state import OrderStatus, ServiceType


logger = logging.getLogger(__name__)


PHONE_LOCAL_DIGITS = 10
DEFAULT_COUNTRY_CODE = "52"


# ============================================================================
# LINE ITEM
# ============================================================================

@dataclass(frozen=True)
class LineItem:
    """
    Immutable order line.

    name/description/unit_price are copied from the menu item when the line
    is added, so later menu edits do not rewrite history.
    """
    line_item_id: Optional[str]
    order_id: str
    menu_item_id: Optional[str]
    name: str
    quantity: int
    unit_price: float
    description: str = ""
    note: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return round(self.unit_price * self.quantity, 2)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {**asdict(self), "subtotal": self.subtotal}


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """Snapshot of one order as last read from the store."""
    order_id: str
    service_type: ServiceType
    status: OrderStatus
    created_at: datetime
    owner_id: Optional[str] = None
    table_number: Optional[int] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    occupants: Optional[int] = None
    note: Optional[str] = None
    total: float = 0.0
    line_items: Tuple[LineItem, ...] = field(default_factory=tuple)

    def computed_total(self) -> float:
        """Recompute total from line items."""
        return round(sum(item.subtotal for item in self.line_items), 2)

    def is_mutable(self) -> bool:
        """Check if line items can be changed."""
        return self.status == OrderStatus.UNCONFIRMED

    def is_takeout(self) -> bool:
        return self.service_type == ServiceType.TAKEOUT

    @property
    def label(self) -> str:
        """Table or takeout label used on boards and sales rows."""
        if self.service_type == ServiceType.DINE_IN and self.table_number is not None:
            return f"Mesa {self.table_number}"
        return "Para llevar"

    def item_count(self) -> int:
        return sum(item.quantity for item in self.line_items)

    def find_line_item(self, line_item_id: str) -> Optional[LineItem]:
        for item in self.line_items:
            if item.line_item_id == line_item_id:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Export to dictionary."""
        return {
            "order_id": self.order_id,
            "service_type": self.service_type.value,
            "status": self.status.value,
            "label": self.label,
            "owner_id": self.owner_id,
            "table_number": self.table_number,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "occupants": self.occupants,
            "note": self.note,
            "total": self.total,
            "computed_total": self.computed_total(),
            "item_count": self.item_count(),
            "created_at": self.created_at.isoformat(),
            "line_items": [item.to_dict() for item in self.line_items],
        }


# ============================================================================
# INPUT NORMALIZATION
# ============================================================================

def normalize_phone(raw: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a customer phone number for storage.

    A 10-digit local number gets the country code prefixed; a number that
    already carries the prefix with the expected length is kept as-is.

    Args:
        raw: Phone as typed (spaces, dashes and "+" are ignored)
        country_code: Digits of the country calling code

    Returns:
        Digits only, country code included (e.g. "521234567890")

    Raises:
        ValidationError: Any other length
    """
    digits = "".join(c for c in str(raw or "") if c.isdigit())

    if len(digits) == PHONE_LOCAL_DIGITS:
        return f"{country_code}{digits}"

    if (
        digits.startswith(country_code)
        and len(digits) == len(country_code) + PHONE_LOCAL_DIGITS
    ):
        return digits

    raise ValidationError(
        f"Invalid phone number: expected {PHONE_LOCAL_DIGITS} digits",
        field="customer_phone"
    )


def notification_target(stored_phone: str) -> str:
    """Convert a stored phone (digits with country code) to E.164."""
    digits = "".join(c for c in stored_phone if c.isdigit())
    return f"+{digits}"


def validate_quantity(quantity: Any) -> int:
    """
    Validate a line-item quantity.

    Raises:
        ValidationError: If quantity is not an integer >= 1
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"Quantity must be an integer: {quantity!r}", field="quantity")

    if quantity < 1:
        raise ValidationError(f"Quantity must be at least 1: {quantity}", field="quantity")

    return quantity


def clean_note(note: Optional[str]) -> Optional[str]:
    """Strip a free-text note; empty notes become None."""
    if note is None:
        return None
    note = note.strip()
    return note or None
