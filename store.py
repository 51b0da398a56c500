"""
Store Boundary
==============
What the core needs from the external database service.

Two write paths are conditional:
- update_order commits only while the order is still in expected_status
- line-item writes commit only while the parent order is Unconfirmed,
  and raise OrderLocked otherwise (require_unconfirmed=False is reserved
  for undoing a change the service could not commit)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, FrozenSet, List, Optional, Protocol, Sequence

from order import LineItem, Order
from order_state import OrderStatus, ServiceType


# Realtime subscription states reported to on_status callbacks
SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"


@dataclass(frozen=True)
class OrderQuery:
    """Filter-and-order query over orders."""
    statuses: Optional[FrozenSet[OrderStatus]] = None
    exclude_statuses: FrozenSet[OrderStatus] = frozenset()
    owner_id: Optional[str] = None
    service_type: Optional[ServiceType] = None
    created_after: Optional[datetime] = None
    newest_first: bool = True

    def matches(self, order: Order) -> bool:
        if self.statuses is not None and order.status not in self.statuses:
            return False
        if order.status in self.exclude_statuses:
            return False
        if self.owner_id is not None and order.owner_id != self.owner_id:
            return False
        if self.service_type is not None and order.service_type != self.service_type:
            return False
        if self.created_after is not None and order.created_at < self.created_after:
            return False
        return True


@dataclass(frozen=True)
class ChangeEvent:
    """Raw insert/update notification from the change feed."""
    order_id: str
    event_type: str
    table: str = "pedidos"
    status: Optional[OrderStatus] = None
    received_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class NewOrder:
    """Fields of an order about to be inserted (id and timestamp come from the store)."""
    service_type: ServiceType
    owner_id: Optional[str] = None
    table_number: Optional[int] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    occupants: Optional[int] = None
    note: Optional[str] = None
    status: OrderStatus = OrderStatus.UNCONFIRMED
    total: float = 0.0


class Subscription(Protocol):
    async def close(self) -> None:
        ...


class OrderStore(Protocol):
    """
    Backend-agnostic contract for orders, menu and sales.

    update_order is the only write path for order status; it MUST be a
    single-row conditional update on the current status.
    """

    # Orders
    async def insert_order(self, new_order: NewOrder) -> Order:
        ...

    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    async def list_orders(self, query: OrderQuery) -> List[Order]:
        ...

    async def update_order(
        self,
        order_id: str,
        expected_status: OrderStatus,
        status: Optional[OrderStatus] = None,
        total: Optional[float] = None,
    ) -> Optional[Order]:
        ...

    # Line items
    async def insert_line_item(self, item: LineItem, require_unconfirmed: bool = True) -> LineItem:
        ...

    async def update_line_item(
        self,
        line_item_id: str,
        quantity: int,
        require_unconfirmed: bool = True,
    ) -> LineItem:
        ...

    async def delete_line_item(self, line_item_id: str, require_unconfirmed: bool = True) -> LineItem:
        ...

    # Menu
    async def list_menu_items(self, include_inactive: bool = False) -> list:
        ...

    async def get_menu_item(self, menu_item_id: str):
        ...

    async def save_menu_item(self, item):
        ...

    async def delete_menu_item(self, menu_item_id: str) -> None:
        ...

    # Sales
    async def insert_sales_records(self, records: Sequence) -> int:
        ...

    async def has_sales_records(self, order_id: str) -> bool:
        ...

    async def list_sales_records(self, business_date: date) -> list:
        ...

    # Change feed
    async def subscribe_orders(
        self,
        channel_name: str,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[str], None],
        owner_id: Optional[str] = None,
    ) -> Subscription:
        ...
