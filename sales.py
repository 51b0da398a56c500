"""
Sales Ledger
============
Append-only sales history derived from collected orders.

Guarantees:
- One SalesRecord per (order, line item), written at most once per order
- Records are never updated or deleted
- Re-delivered change events and retried transitions are harmless
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from prometheus_client import Counter

from order import Order
from order_state import OrderStatus


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

sales_rows_written = Counter(
    'sales_rows_written_total',
    'Sales ledger rows written'
)
sales_projections = Counter(
    'sales_projections_total',
    'Sales projection attempts',
    ['result']
)


PROJECTABLE_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETED})

# Recently projected order ids kept in memory; older ones fall back to the
# store lookup
MAX_PROJECTED_IDS = 1000


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True)
class SalesRecord:
    """Immutable sales row (one per line item of a collected order)."""
    order_id: str
    line_item_id: Optional[str]
    table_number: Optional[int]
    item_name: str
    description: str
    quantity: int
    unit_price: float
    business_date: date

    @property
    def label(self) -> str:
        if self.table_number is not None:
            return f"Mesa {self.table_number}"
        return "Para llevar"

    @property
    def subtotal(self) -> float:
        return round(self.quantity * self.unit_price, 2)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["business_date"] = self.business_date.isoformat()
        data["label"] = self.label
        data["subtotal"] = self.subtotal
        return data


@dataclass(frozen=True)
class SalesReport:
    """Daily sales summary."""
    business_date: date
    records: List[SalesRecord]
    total_sales: float
    order_count: int
    average_ticket: float
    item_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "business_date": self.business_date.isoformat(),
            "total_sales": self.total_sales,
            "order_count": self.order_count,
            "average_ticket": self.average_ticket,
            "item_count": self.item_count,
            "records": [record.to_dict() for record in self.records],
        }


# ============================================================================
# PROJECTOR
# ============================================================================

class SalesLedgerProjector:
    """Snapshots line items of collected orders into the sales ledger."""

    def __init__(self, store, business_timezone: str = "UTC"):
        self.store = store
        self.business_timezone = ZoneInfo(business_timezone)
        self._projected: deque = deque(maxlen=MAX_PROJECTED_IDS)

    def business_date(self, now: Optional[datetime] = None) -> date:
        """Today's date in the business timezone."""
        now = now or datetime.now(timezone.utc)
        return now.astimezone(self.business_timezone).date()

    def build_records(self, order: Order, business_date: Optional[date] = None) -> List[SalesRecord]:
        """Build (but do not write) the sales rows for order."""
        business_date = business_date or self.business_date()

        return [
            SalesRecord(
                order_id=order.order_id,
                line_item_id=item.line_item_id,
                table_number=order.table_number,
                item_name=item.name or "Desconocido",
                description=item.description or "",
                quantity=item.quantity,
                unit_price=item.unit_price,
                business_date=business_date
            )
            for item in order.line_items
        ]

    async def project_sale(self, order: Order) -> List[SalesRecord]:
        """
        Write the sales rows for a collected order, at most once.

        Args:
            order: Order in Delivered (or Completed) status

        Returns:
            Records written by this call (empty if already projected)
        """
        if order.status not in PROJECTABLE_STATUSES:
            logger.warning(
                f"Refusing to project sale for order in {order.status.value}",
                extra={"order_id": order.order_id}
            )
            sales_projections.labels(result='refused').inc()
            return []

        if order.order_id in self._projected:
            sales_projections.labels(result='duplicate').inc()
            return []

        if await self.store.has_sales_records(order.order_id):
            self._projected.append(order.order_id)
            sales_projections.labels(result='duplicate').inc()
            return []

        records = self.build_records(order)

        if not records:
            logger.warning(
                "Collected order has no line items, nothing to project",
                extra={"order_id": order.order_id}
            )
            self._projected.append(order.order_id)
            sales_projections.labels(result='empty').inc()
            return []

        written = await self.store.insert_sales_records(records)
        self._projected.append(order.order_id)

        sales_rows_written.inc(written)
        sales_projections.labels(result='written').inc()

        logger.info(
            f"Sales recorded for order {order.order_id}: "
            f"{len(records)} rows, ${sum(r.subtotal for r in records):.2f}",
            extra={"order_id": order.order_id, "rows": written}
        )

        return records

    async def handle_order(self, order: Order):
        """Change-feed handler: catch up on collected orders not yet projected."""
        if order.status in PROJECTABLE_STATUSES:
            await self.project_sale(order)

    async def daily_report(self, business_date: date) -> SalesReport:
        """Build the sales summary for one business date."""
        records = await self.store.list_sales_records(business_date)

        total_sales = round(sum(r.subtotal for r in records), 2)
        order_count = len({r.order_id for r in records})
        average_ticket = round(total_sales / order_count, 2) if order_count else 0.0

        return SalesReport(
            business_date=business_date,
            records=records,
            total_sales=total_sales,
            order_count=order_count,
            average_ticket=average_ticket,
            item_count=sum(r.quantity for r in records)
        )
