"""
In-Memory Store
===============
Process-local implementation of the store boundary.

Rows are kept in the same column format as the hosted tables and parsed
through the same schemas, so local runs exercise the real boundary.
Conditional updates are compare-and-set under one asyncio lock; the
change feed delivers events asynchronously (call_soon), and
disconnect_all() drops every subscription the way a lost socket does.
"""

import asyncio
import itertools
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import schemas
from errors import OrderLocked, OrderNotFound
from menu import MenuItem
from order import LineItem, Order
from order_state import OrderStatus
from sales import SalesRecord
from store import CLOSED, SUBSCRIBED, ChangeEvent, NewOrder, OrderQuery


logger = logging.getLogger(__name__)


class LocalSubscription:
    """Handle for one in-process change-feed subscription."""

    def __init__(
        self,
        store: "InMemoryStore",
        channel_name: str,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[str], None],
        owner_id: Optional[str] = None
    ):
        self.store = store
        self.channel_name = channel_name
        self.on_change = on_change
        self.on_status = on_status
        self.owner_id = owner_id
        self.connected = True

    async def close(self):
        if self.connected:
            self.connected = False
            self.store._subscriptions.discard(self)


class InMemoryStore:
    """Dict-backed store with compare-and-set updates and a local change feed."""

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.line_items: Dict[str, Dict[str, Any]] = {}
        self.menu_items: Dict[str, Dict[str, Any]] = {}
        self.sales: List[Dict[str, Any]] = []

        self._ids = {
            schemas.ORDERS_TABLE: itertools.count(1),
            schemas.LINE_ITEMS_TABLE: itertools.count(1),
            schemas.MENU_TABLE: itertools.count(1),
        }
        self._lock = asyncio.Lock()
        self._subscriptions = set()

        self.update_count = 0
        self.conflict_count = 0

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def insert_order(self, new_order: NewOrder) -> Order:
        async with self._lock:
            order_id = next(self._ids[schemas.ORDERS_TABLE])
            row = {
                "id": order_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
                **schemas.new_order_to_row(new_order),
            }
            self.orders[str(order_id)] = row
            order = self._load(str(order_id))

        self._emit(schemas.ORDERS_TABLE, "INSERT", row)
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        await asyncio.sleep(0)
        if str(order_id) not in self.orders:
            return None
        return self._load(str(order_id))

    async def list_orders(self, query: OrderQuery) -> List[Order]:
        await asyncio.sleep(0)
        orders = [
            order for order in (self._load(key) for key in list(self.orders))
            if query.matches(order)
        ]
        orders.sort(
            key=lambda o: (o.created_at, int(o.order_id)),
            reverse=query.newest_first
        )
        return orders

    async def update_order(
        self,
        order_id: str,
        expected_status: OrderStatus,
        status: Optional[OrderStatus] = None,
        total: Optional[float] = None
    ) -> Optional[Order]:
        await asyncio.sleep(0)

        async with self._lock:
            row = self.orders.get(str(order_id))
            if row is None:
                raise OrderNotFound(f"Order not found: {order_id}", order_id=order_id)

            if row["estado"] != expected_status.value:
                self.conflict_count += 1
                return None

            if status is not None:
                row["estado"] = status.value
            if total is not None:
                row["total"] = total

            self.update_count += 1
            order = self._load(str(order_id))

        self._emit(schemas.ORDERS_TABLE, "UPDATE", row)
        return order

    def _load(self, order_id: str) -> Order:
        row = dict(self.orders[order_id])
        row[schemas.LINE_ITEMS_TABLE] = [
            item for item in self.line_items.values()
            if str(item["pedido_id"]) == order_id
        ]
        return schemas.parse_order(row)

    # ========================================================================
    # LINE ITEMS
    # ========================================================================

    def _check_unconfirmed(self, order_id: str):
        """Caller holds the lock."""
        row = self.orders.get(str(order_id))
        if row is None:
            raise OrderNotFound(f"Order not found: {order_id}", order_id=str(order_id))

        if row["estado"] != OrderStatus.UNCONFIRMED.value:
            raise OrderLocked(
                f"Order {order_id} is {row['estado']}, items are locked",
                order_id=str(order_id),
                status=row["estado"]
            )

    async def insert_line_item(self, item: LineItem, require_unconfirmed: bool = True) -> LineItem:
        await asyncio.sleep(0)

        async with self._lock:
            if require_unconfirmed:
                self._check_unconfirmed(item.order_id)
            elif str(item.order_id) not in self.orders:
                raise OrderNotFound(f"Order not found: {item.order_id}", order_id=item.order_id)

            if item.line_item_id is None:
                item_id = next(self._ids[schemas.LINE_ITEMS_TABLE])
            else:
                item_id = int(item.line_item_id)
            row = {**schemas.line_item_to_row(item), "id": item_id}
            self.line_items[str(item_id)] = row

        self._emit(schemas.LINE_ITEMS_TABLE, "INSERT", row)
        return schemas.parse_line_item(row)

    async def update_line_item(
        self,
        line_item_id: str,
        quantity: int,
        require_unconfirmed: bool = True
    ) -> LineItem:
        await asyncio.sleep(0)

        async with self._lock:
            row = self.line_items.get(str(line_item_id))
            if row is None:
                raise OrderNotFound(f"Line item not found: {line_item_id}")
            if require_unconfirmed:
                self._check_unconfirmed(row["pedido_id"])

            row["cantidad"] = quantity
            row["subtotal"] = round(quantity * row["precio_unitario"], 2)

        self._emit(schemas.LINE_ITEMS_TABLE, "UPDATE", row)
        return schemas.parse_line_item(row)

    async def delete_line_item(self, line_item_id: str, require_unconfirmed: bool = True) -> LineItem:
        await asyncio.sleep(0)

        async with self._lock:
            row = self.line_items.get(str(line_item_id))
            if row is None:
                raise OrderNotFound(f"Line item not found: {line_item_id}")
            if require_unconfirmed:
                self._check_unconfirmed(row["pedido_id"])

            del self.line_items[str(line_item_id)]

        self._emit(schemas.LINE_ITEMS_TABLE, "DELETE", row)
        return schemas.parse_line_item(row)

    # ========================================================================
    # MENU
    # ========================================================================

    async def list_menu_items(self, include_inactive: bool = False) -> List[MenuItem]:
        items = [schemas.parse_menu_item(row) for row in self.menu_items.values()]
        if not include_inactive:
            items = [item for item in items if item.active]
        return sorted(items, key=lambda item: int(item.menu_item_id))

    async def get_menu_item(self, menu_item_id: str) -> Optional[MenuItem]:
        row = self.menu_items.get(str(menu_item_id))
        return schemas.parse_menu_item(row) if row else None

    async def save_menu_item(self, item: MenuItem) -> MenuItem:
        async with self._lock:
            if item.menu_item_id is None:
                item_id = next(self._ids[schemas.MENU_TABLE])
            else:
                item_id = item.menu_item_id
                if str(item_id) not in self.menu_items:
                    raise OrderNotFound(f"Menu item not found: {item_id}")

            row = {"id": item_id, **schemas.menu_item_to_row(item)}
            self.menu_items[str(item_id)] = row

        return schemas.parse_menu_item(row)

    async def delete_menu_item(self, menu_item_id: str):
        async with self._lock:
            if self.menu_items.pop(str(menu_item_id), None) is None:
                raise OrderNotFound(f"Menu item not found: {menu_item_id}")

    # ========================================================================
    # SALES
    # ========================================================================

    async def insert_sales_records(self, records: Sequence[SalesRecord]) -> int:
        """Insert rows, ignoring duplicates on (pedido_id, detalle_id)."""
        async with self._lock:
            existing = {(str(r["pedido_id"]), str(r["detalle_id"])) for r in self.sales}
            written = 0

            for record in records:
                key = (str(record.order_id), str(record.line_item_id))
                if key in existing:
                    continue
                self.sales.append(schemas.sales_record_to_row(record))
                existing.add(key)
                written += 1

        return written

    async def has_sales_records(self, order_id: str) -> bool:
        return any(str(r["pedido_id"]) == str(order_id) for r in self.sales)

    async def list_sales_records(self, business_date: date) -> List[SalesRecord]:
        records = [
            schemas.parse_sales_record(row) for row in self.sales
            if row["fecha"] == business_date.isoformat()
        ]
        return sorted(records, key=lambda r: int(r.order_id), reverse=True)

    # ========================================================================
    # CHANGE FEED
    # ========================================================================

    async def subscribe_orders(
        self,
        channel_name: str,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[str], None],
        owner_id: Optional[str] = None
    ) -> LocalSubscription:
        subscription = LocalSubscription(self, channel_name, on_change, on_status, owner_id)
        self._subscriptions.add(subscription)

        asyncio.get_running_loop().call_soon(on_status, SUBSCRIBED)
        logger.debug(f"Local subscription opened: {channel_name}")

        return subscription

    def disconnect_all(self):
        """Drop every subscription (simulates a lost realtime connection)."""
        dropped = list(self._subscriptions)
        self._subscriptions.clear()

        for subscription in dropped:
            subscription.connected = False
            subscription.on_status(CLOSED)

        logger.info(f"Dropped {len(dropped)} local subscriptions")

    def redeliver(self, order_id: str, event_type: str = "UPDATE"):
        """Deliver the current row of an order again (at-least-once delivery)."""
        row = self.orders.get(str(order_id))
        if row is not None:
            self._emit(schemas.ORDERS_TABLE, event_type, row)

    def _emit(self, table: str, event_type: str, row: Dict[str, Any]):
        if not self._subscriptions:
            return

        event = schemas.parse_change_event(
            {"data": {"table": table, "type": event_type, "record": dict(row)}},
            table=table
        )
        owner_id = None
        order_row = self.orders.get(event.order_id)
        if order_row is not None:
            owner_id = order_row.get("id_mesero")

        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            if subscription.owner_id is not None and subscription.owner_id != owner_id:
                continue
            loop.call_soon(self._deliver, subscription, event)

    def _deliver(self, subscription: LocalSubscription, event: ChangeEvent):
        if subscription.connected:
            subscription.on_change(event)
