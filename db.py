"""
Database Module (Supabase)
==========================
Hosted store implementation over Supabase (PostgREST + Realtime).

Sync client calls run in the default executor with a timeout and a
circuit breaker. Status writes are conditional on the current estado, so
two actors racing on one order can never both commit. Line-item writes
check that the parent order is still Unconfirmed first; the service's
conditional total update afterwards is what commits an item change.
"""

import asyncio
import logging
import time
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError
from prometheus_client import Counter, Histogram
from supabase import Client, acreate_client, create_client

import schemas
from errors import (
    AuthorizationError,
    ConflictError,
    OrderError,
    OrderLocked,
    OrderNotFound,
    StoreUnavailable,
    ValidationError,
)
from menu import MenuItem
from order import LineItem, Order
from order_state import OrderStatus, ServiceType
from sales import SalesRecord
from store import ChangeEvent, NewOrder, OrderQuery


logger = logging.getLogger(__name__)


# Configuration
DEFAULT_TIMEOUT = 10.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds

ORDER_SELECT = "*, detalle_pedidos(*)"

# PostgREST / Postgres error codes
PERMISSION_DENIED_CODES = {"42501", "PGRST301", "PGRST302"}
UNIQUE_VIOLATION_CODE = "23505"
SCHEMA_VIOLATION_CODES = {"22P02", "23502", "23514", "22003"}


# ============================================================================
# METRICS
# ============================================================================

store_call_seconds = Histogram(
    'store_call_seconds',
    'Store call latency',
    ['operation']
)
store_errors = Counter(
    'store_errors_total',
    'Store call errors',
    ['operation', 'kind']
)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for store operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = datetime.utcnow()

        if self.failure_count >= self.threshold and self.state != CircuitState.OPEN:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            # Check if timeout expired
            if self.last_failure_time:
                elapsed = (datetime.utcnow() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


def translate_api_error(error: APIError, operation: str) -> OrderError:
    """
    Map a PostgREST error to the domain taxonomy.

    Row-level security denials are AuthorizationError, never a validation or
    transition failure.
    """
    code = str(getattr(error, "code", "") or "")
    message = str(getattr(error, "message", "") or error)

    if code in PERMISSION_DENIED_CODES or "row-level security" in message.lower():
        return AuthorizationError(f"Permission denied ({operation}): {message}")

    if code == UNIQUE_VIOLATION_CODE:
        return ConflictError(f"Duplicate row ({operation}): {message}")

    if code in SCHEMA_VIOLATION_CODES:
        return ValidationError(f"Rejected by store ({operation}): {message}")

    return StoreUnavailable(f"Store error ({operation}): {code} {message}".strip())


# ============================================================================
# REALTIME SUBSCRIPTION
# ============================================================================

class SupabaseSubscription:
    """Open realtime channel on the async client."""

    def __init__(self, client, channel, channel_name: str):
        self.client = client
        self.channel = channel
        self.channel_name = channel_name

    async def close(self):
        try:
            await self.client.remove_channel(self.channel)
            logger.info(f"Realtime channel closed: {self.channel_name}")
        except Exception as e:
            logger.warning(f"Error closing channel {self.channel_name}: {str(e)}")


# ============================================================================
# STORE
# ============================================================================

class SupabaseStore:
    """
    Store boundary over Supabase tables.

    The sync client serves queries; a separate async client (created on
    first subscription) serves the realtime change feed.
    """

    def __init__(
        self,
        client: Client,
        url: Optional[str] = None,
        key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.client = client
        self.url = url
        self.key = key
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._async_client = None

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

        logger.info("SupabaseStore initialized")

    @classmethod
    def from_config(cls, supabase_config) -> "SupabaseStore":
        """Build a store from SupabaseConfig."""
        client = create_client(supabase_config.url, supabase_config.key)
        logger.info("Supabase client initialized")
        return cls(
            client,
            url=supabase_config.url,
            key=supabase_config.key,
            timeout=float(supabase_config.connection_timeout)
        )

    async def _execute(self, operation: str, call: Callable[[], Any], write: bool = False):
        """
        Run a blocking client call with timeout, circuit breaker and error mapping.

        Raises:
            StoreUnavailable: Circuit open, timeout, or unclassified failure
            AuthorizationError: Row-level security denial
        """
        if not self.circuit_breaker.can_execute():
            store_errors.labels(operation=operation, kind='circuit_open').inc()
            raise StoreUnavailable(f"Circuit breaker open, skipping {operation}")

        loop = asyncio.get_running_loop()
        started = time.monotonic()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=self.timeout
            )

        except asyncio.TimeoutError:
            logger.error(f"Store timeout: {operation}")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            store_errors.labels(operation=operation, kind='timeout').inc()
            raise StoreUnavailable(f"Store timeout: {operation}")

        except APIError as e:
            error = translate_api_error(e, operation)
            self.error_count += 1
            store_errors.labels(operation=operation, kind=error.code).inc()

            # Denials and constraint violations mean the store is healthy
            if isinstance(error, StoreUnavailable):
                self.circuit_breaker.record_failure()
            else:
                self.circuit_breaker.record_success()

            logger.warning(f"Store rejected {operation}: {error.message}")
            raise error

        except Exception as e:
            logger.error(f"Store error ({operation}): {str(e)}")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            store_errors.labels(operation=operation, kind='unknown').inc()
            raise StoreUnavailable(f"Store error ({operation}): {str(e)}")

        finally:
            store_call_seconds.labels(operation=operation).observe(time.monotonic() - started)

        self.circuit_breaker.record_success()
        if write:
            self.write_count += 1
        else:
            self.read_count += 1

        return result

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def insert_order(self, new_order: NewOrder) -> Order:
        row = schemas.new_order_to_row(new_order)

        result = await self._execute(
            "insert_order",
            lambda: self.client.table(schemas.ORDERS_TABLE).insert(row).execute(),
            write=True
        )

        if not result.data:
            raise StoreUnavailable("Order insert returned no row")

        return schemas.parse_order({**result.data[0], schemas.LINE_ITEMS_TABLE: []})

    async def get_order(self, order_id: str) -> Optional[Order]:
        result = await self._execute(
            "get_order",
            lambda: self.client
                .table(schemas.ORDERS_TABLE)
                .select(ORDER_SELECT)
                .eq("id", order_id)
                .limit(1)
                .execute()
        )

        if not result.data:
            return None

        return schemas.parse_order(result.data[0])

    async def list_orders(self, query: OrderQuery) -> List[Order]:
        def call():
            request = self.client.table(schemas.ORDERS_TABLE).select(ORDER_SELECT)

            if query.statuses is not None:
                request = request.in_("estado", [s.value for s in query.statuses])
            for status in query.exclude_statuses:
                request = request.neq("estado", status.value)
            if query.owner_id is not None:
                request = request.eq("id_mesero", query.owner_id)
            if query.service_type == ServiceType.DINE_IN:
                # Table orders written before tipo_servicio existed have it null
                request = request.or_("tipo_servicio.is.null,tipo_servicio.eq.mesa")
            elif query.service_type is not None:
                request = request.eq("tipo_servicio", query.service_type.value)
            if query.created_after is not None:
                request = request.gte("created_at", query.created_after.isoformat())

            return request.order("created_at", desc=query.newest_first).execute()

        result = await self._execute("list_orders", call)

        orders = []
        for row in result.data or []:
            orders.append(schemas.parse_order(row))
        return orders

    async def update_order(
        self,
        order_id: str,
        expected_status: OrderStatus,
        status: Optional[OrderStatus] = None,
        total: Optional[float] = None
    ) -> Optional[Order]:
        """
        Conditional single-row update.

        Returns:
            Updated order, or None if estado no longer equals expected_status
        """
        fields: Dict[str, Any] = {}
        if status is not None:
            fields["estado"] = status.value
        if total is not None:
            fields["total"] = total

        result = await self._execute(
            "update_order",
            lambda: self.client
                .table(schemas.ORDERS_TABLE)
                .update(fields)
                .eq("id", order_id)
                .eq("estado", expected_status.value)
                .execute(),
            write=True
        )

        if not result.data:
            return None

        return await self.get_order(order_id)

    # ========================================================================
    # LINE ITEMS
    # ========================================================================

    async def _require_unconfirmed(self, order_id: str):
        """Refuse item writes on an order that has left Unconfirmed."""
        result = await self._execute(
            "get_order_status",
            lambda: self.client
                .table(schemas.ORDERS_TABLE)
                .select("estado")
                .eq("id", order_id)
                .limit(1)
                .execute()
        )

        if not result.data:
            raise OrderNotFound(f"Order not found: {order_id}", order_id=str(order_id))

        status = result.data[0]["estado"]
        if status != OrderStatus.UNCONFIRMED.value:
            raise OrderLocked(
                f"Order {order_id} is {status}, items are locked",
                order_id=str(order_id),
                status=status
            )

    async def _get_line_item_row(self, line_item_id: str) -> Dict[str, Any]:
        result = await self._execute(
            "get_line_item",
            lambda: self.client
                .table(schemas.LINE_ITEMS_TABLE)
                .select("*")
                .eq("id", line_item_id)
                .limit(1)
                .execute()
        )

        if not result.data:
            raise OrderNotFound(f"Line item not found: {line_item_id}")

        return result.data[0]

    async def insert_line_item(self, item: LineItem, require_unconfirmed: bool = True) -> LineItem:
        if require_unconfirmed:
            await self._require_unconfirmed(item.order_id)

        row = schemas.line_item_to_row(item)

        result = await self._execute(
            "insert_line_item",
            lambda: self.client.table(schemas.LINE_ITEMS_TABLE).insert(row).execute(),
            write=True
        )

        if not result.data:
            raise StoreUnavailable("Line item insert returned no row")

        return schemas.parse_line_item(result.data[0])

    async def update_line_item(
        self,
        line_item_id: str,
        quantity: int,
        require_unconfirmed: bool = True
    ) -> LineItem:
        current = await self._get_line_item_row(line_item_id)
        if require_unconfirmed:
            await self._require_unconfirmed(current["pedido_id"])

        unit_price = float(current["precio_unitario"])
        fields = {"cantidad": quantity, "subtotal": round(quantity * unit_price, 2)}

        result = await self._execute(
            "update_line_item",
            lambda: self.client
                .table(schemas.LINE_ITEMS_TABLE)
                .update(fields)
                .eq("id", line_item_id)
                .execute(),
            write=True
        )

        if not result.data:
            raise OrderNotFound(f"Line item not found: {line_item_id}")

        return schemas.parse_line_item(result.data[0])

    async def delete_line_item(self, line_item_id: str, require_unconfirmed: bool = True) -> LineItem:
        if require_unconfirmed:
            current = await self._get_line_item_row(line_item_id)
            await self._require_unconfirmed(current["pedido_id"])

        result = await self._execute(
            "delete_line_item",
            lambda: self.client
                .table(schemas.LINE_ITEMS_TABLE)
                .delete()
                .eq("id", line_item_id)
                .execute(),
            write=True
        )

        if not result.data:
            raise OrderNotFound(f"Line item not found: {line_item_id}")

        return schemas.parse_line_item(result.data[0])

    # ========================================================================
    # MENU
    # ========================================================================

    async def list_menu_items(self, include_inactive: bool = False) -> List[MenuItem]:
        def call():
            request = self.client.table(schemas.MENU_TABLE).select("*")
            if not include_inactive:
                request = request.eq("activo", True)
            return request.order("id").execute()

        result = await self._execute("list_menu_items", call)
        return [schemas.parse_menu_item(row) for row in result.data or []]

    async def get_menu_item(self, menu_item_id: str) -> Optional[MenuItem]:
        result = await self._execute(
            "get_menu_item",
            lambda: self.client
                .table(schemas.MENU_TABLE)
                .select("*")
                .eq("id", menu_item_id)
                .limit(1)
                .execute()
        )

        if not result.data:
            return None

        return schemas.parse_menu_item(result.data[0])

    async def save_menu_item(self, item: MenuItem) -> MenuItem:
        row = schemas.menu_item_to_row(item)

        if item.menu_item_id is None:
            call = lambda: self.client.table(schemas.MENU_TABLE).insert(row).execute()
        else:
            call = lambda: self.client \
                .table(schemas.MENU_TABLE) \
                .update(row) \
                .eq("id", item.menu_item_id) \
                .execute()

        result = await self._execute("save_menu_item", call, write=True)

        if not result.data:
            raise OrderNotFound(f"Menu item not found: {item.menu_item_id}")

        return schemas.parse_menu_item(result.data[0])

    async def delete_menu_item(self, menu_item_id: str):
        result = await self._execute(
            "delete_menu_item",
            lambda: self.client
                .table(schemas.MENU_TABLE)
                .delete()
                .eq("id", menu_item_id)
                .execute(),
            write=True
        )

        if not result.data:
            raise OrderNotFound(f"Menu item not found: {menu_item_id}")

    # ========================================================================
    # SALES
    # ========================================================================

    async def insert_sales_records(self, records: Sequence[SalesRecord]) -> int:
        """Upsert sales rows, ignoring duplicates on (pedido_id, detalle_id)."""
        rows = [schemas.sales_record_to_row(record) for record in records]
        if not rows:
            return 0

        result = await self._execute(
            "insert_sales_records",
            lambda: self.client
                .table(schemas.SALES_TABLE)
                .upsert(rows, on_conflict="pedido_id,detalle_id", ignore_duplicates=True)
                .execute(),
            write=True
        )

        return len(result.data or [])

    async def has_sales_records(self, order_id: str) -> bool:
        result = await self._execute(
            "has_sales_records",
            lambda: self.client
                .table(schemas.SALES_TABLE)
                .select("pedido_id")
                .eq("pedido_id", order_id)
                .limit(1)
                .execute()
        )
        return bool(result.data)

    async def list_sales_records(self, business_date: date) -> List[SalesRecord]:
        day = business_date.isoformat()

        result = await self._execute(
            "list_sales_records",
            lambda: self.client
                .table(schemas.SALES_TABLE)
                .select("*")
                .gte("fecha", f"{day}T00:00:00")
                .lte("fecha", f"{day}T23:59:59")
                .order("pedido_id", desc=True)
                .execute()
        )

        return [schemas.parse_sales_record(row) for row in result.data or []]

    # ========================================================================
    # CHANGE FEED
    # ========================================================================

    async def _realtime_client(self):
        if self._async_client is None:
            if not self.url or not self.key:
                raise StoreUnavailable("Realtime requires SUPABASE_URL and SUPABASE_KEY")
            self._async_client = await acreate_client(self.url, self.key)
            logger.info("Supabase realtime client initialized")
        return self._async_client

    async def subscribe_orders(
        self,
        channel_name: str,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[str], None],
        owner_id: Optional[str] = None
    ) -> SupabaseSubscription:
        """
        Subscribe to pedidos and detalle_pedidos changes.

        Only the owner filter is applied server-side: a status filter would
        hide the update that moves an order out of a role's view.
        """
        client = await self._realtime_client()
        channel = client.channel(channel_name)

        def dispatch(table: str):
            def handler(payload: Dict[str, Any]):
                try:
                    event = schemas.parse_change_event(payload, table=table)
                except ValidationError as e:
                    logger.warning(f"Dropping malformed change event on {table}: {e.message}")
                    return
                on_change(event)
            return handler

        order_filter = {"filter": f"id_mesero=eq.{owner_id}"} if owner_id else {}

        channel.on_postgres_changes(
            "*",
            schema="public",
            table=schemas.ORDERS_TABLE,
            callback=dispatch(schemas.ORDERS_TABLE),
            **order_filter
        )
        channel.on_postgres_changes(
            "*",
            schema="public",
            table=schemas.LINE_ITEMS_TABLE,
            callback=dispatch(schemas.LINE_ITEMS_TABLE)
        )

        def status_callback(status, error=None):
            state = getattr(status, "value", str(status))
            if error:
                logger.warning(f"Realtime channel {channel_name}: {state} ({error})")
            on_status(state)

        await channel.subscribe(status_callback)
        logger.info(f"Realtime channel subscribing: {channel_name}")

        return SupabaseSubscription(client, channel, channel_name)

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if store is healthy."""
        return self.client is not None and self.circuit_breaker.state != CircuitState.OPEN
