"""
Change Feed Consumer
====================
Keeps a role's view of orders current from the store's realtime feed.

Delivery is at-least-once and unordered, and the channel can drop at any
time. The consumer therefore:
- treats an event as "order X changed" and refetches X
- never moves an order backwards in status rank
- runs a full resync every time the channel (re)subscribes, and periodically
- reconnects with exponential backoff after CHANNEL_ERROR/TIMED_OUT/CLOSED
"""

import asyncio
import logging
from collections import Counter as Tally
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from prometheus_client import Counter

from errors import InvalidTransition, describe
from order import Order
from order_state import OrderStatus, ServiceType
from store import CHANNEL_ERROR, CLOSED, SUBSCRIBED, TIMED_OUT, ChangeEvent, OrderQuery


logger = logging.getLogger(__name__)


# Configuration
DEFAULT_RESYNC_INTERVAL = 60.0  # seconds
DEFAULT_RECONNECT_DELAY = 1.0  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30.0  # seconds
DEFAULT_LEDGER_WINDOW = timedelta(hours=48)

RESYNC = "RESYNC"
DISCONNECTED_STATES = frozenset({CHANNEL_ERROR, TIMED_OUT, CLOSED})


# ============================================================================
# METRICS
# ============================================================================

feed_events = Counter(
    'change_feed_events_total',
    'Change feed events received',
    ['view', 'event_type']
)
feed_resyncs = Counter(
    'change_feed_resyncs_total',
    'Full resyncs',
    ['view']
)
feed_reconnects = Counter(
    'change_feed_reconnects_total',
    'Reconnect attempts',
    ['view']
)
feed_errors = Counter(
    'change_feed_errors_total',
    'Refetch or handler failures (loop continued)',
    ['view']
)
feed_stale_drops = Counter(
    'change_feed_stale_drops_total',
    'Refetched orders older than the view',
    ['view']
)


# ============================================================================
# ROLE FILTERS
# ============================================================================

@dataclass(frozen=True)
class RoleFilter:
    """
    Which orders a role's screen shows.

    window limits the view to orders created within that span of now.
    """
    name: str
    statuses: Optional[FrozenSet[OrderStatus]] = None
    exclude_statuses: FrozenSet[OrderStatus] = frozenset()
    owner_id: Optional[str] = None
    service_type: Optional[ServiceType] = None
    window: Optional[timedelta] = None

    @classmethod
    def kitchen(cls) -> "RoleFilter":
        return cls("kitchen", statuses=frozenset({OrderStatus.SUBMITTED, OrderStatus.READY}))

    @classmethod
    def cashier(cls) -> "RoleFilter":
        return cls("cashier", statuses=frozenset({
            OrderStatus.READY,
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.DELIVERED,
        }))

    @classmethod
    def waiter(cls, owner_id: str) -> "RoleFilter":
        return cls(
            "waiter",
            exclude_statuses=frozenset({OrderStatus.COMPLETED}),
            owner_id=owner_id
        )

    @classmethod
    def takeout(cls) -> "RoleFilter":
        return cls(
            "takeout",
            statuses=frozenset({OrderStatus.SUBMITTED, OrderStatus.READY}),
            service_type=ServiceType.TAKEOUT
        )

    @classmethod
    def sales_ledger(cls, window: Optional[timedelta] = DEFAULT_LEDGER_WINDOW) -> "RoleFilter":
        """Paid orders still worth checking for a missing sales projection."""
        return cls(
            "sales_ledger",
            statuses=frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETED}),
            window=window
        )

    @classmethod
    def named(cls, name: str, owner_id: Optional[str] = None) -> "RoleFilter":
        """
        Build a preset by name.

        Raises:
            ValueError: Unknown view, or waiter view without owner_id
        """
        if name == "waiter":
            if not owner_id:
                raise ValueError("Waiter view requires an owner id")
            return cls.waiter(owner_id)

        presets = {
            "kitchen": cls.kitchen,
            "cashier": cls.cashier,
            "takeout": cls.takeout,
            "sales_ledger": cls.sales_ledger,
        }
        if name not in presets:
            raise ValueError(f"Unknown view: {name}")
        return presets[name]()

    def to_query(self) -> OrderQuery:
        created_after = None
        if self.window is not None:
            created_after = datetime.now(timezone.utc) - self.window

        return OrderQuery(
            statuses=self.statuses,
            exclude_statuses=self.exclude_statuses,
            owner_id=self.owner_id,
            service_type=self.service_type,
            created_after=created_after
        )

    def matches(self, order: Order) -> bool:
        return self.to_query().matches(order)


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class OrderChanged:
    """Queue item: an order changed (or, with event_type RESYNC, resync everything)."""
    order_id: Optional[str]
    event_type: str
    status: Optional[OrderStatus] = None
    received_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "OrderChanged":
        return cls(order_id=event.order_id, event_type=event.event_type, status=event.status)

    @classmethod
    def resync(cls) -> "OrderChanged":
        return cls(order_id=None, event_type=RESYNC)

    @property
    def is_resync(self) -> bool:
        return self.event_type == RESYNC


# ============================================================================
# VIEW
# ============================================================================

class OrderView:
    """
    Authoritative per-order state for one role, plus a pending overlay.

    The pending overlay holds statuses the local user has requested but the
    store has not confirmed yet; visible_orders() shows them, orders does not.
    """

    def __init__(self, role_filter: RoleFilter):
        self.role_filter = role_filter
        self.orders: Dict[str, Order] = {}
        self.pending: Dict[str, OrderStatus] = {}
        self._ranks: Dict[str, int] = {}
        self._unseen: Set[str] = set()
        self.last_synced_at: Optional[datetime] = None

    def get(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    def apply(self, order: Order) -> bool:
        """
        Apply a freshly fetched order.

        Returns:
            True if the view changed, False for a stale snapshot
        """
        seen_rank = self._ranks.get(order.order_id)
        if seen_rank is not None and order.status.rank < seen_rank:
            feed_stale_drops.labels(view=self.role_filter.name).inc()
            logger.debug(
                f"Dropping stale snapshot of order {order.order_id} ({order.status.value})"
            )
            return False

        self._ranks[order.order_id] = order.status.rank

        target = self.pending.get(order.order_id)
        if target is not None and order.status.rank >= target.rank:
            del self.pending[order.order_id]

        if not self.role_filter.matches(order):
            return self.orders.pop(order.order_id, None) is not None

        self.orders[order.order_id] = order
        return True

    def remove(self, order_id: str) -> bool:
        self.pending.pop(order_id, None)
        return self.orders.pop(order_id, None) is not None

    def replace_all(self, orders: Iterable[Order]):
        """Resync: apply every fetched order, drop the ones no longer matching."""
        fetched = set()
        for order in orders:
            fetched.add(order.order_id)
            self.apply(order)

        for order_id in list(self.orders):
            if order_id not in fetched:
                del self.orders[order_id]

        # Rank memory for orders outside the view is kept for one resync
        # interval (late refetches), then dropped
        unseen = set(self._ranks) - fetched
        for order_id in unseen & self._unseen:
            del self._ranks[order_id]
            self.pending.pop(order_id, None)
        self._unseen = unseen - self._unseen

        self.last_synced_at = datetime.utcnow()

    # Pending overlay

    def begin_pending(self, order_id: str, target_status: OrderStatus):
        self.pending[order_id] = target_status

    def confirm(self, order_id: str, order: Optional[Order] = None):
        self.pending.pop(order_id, None)
        if order is not None:
            self.apply(order)

    def rollback(self, order_id: str):
        self.pending.pop(order_id, None)

    # Summaries

    def visible_orders(self) -> List[Order]:
        """Orders as the screen shows them (pending statuses overlaid), newest first."""
        visible = []
        for order in self.orders.values():
            target = self.pending.get(order.order_id)
            if target is not None and target.rank > order.status.rank:
                order = replace(order, status=target)
            visible.append(order)

        return sorted(visible, key=lambda o: o.created_at, reverse=True)

    def status_counts(self) -> Dict[str, int]:
        return dict(Tally(order.status.value for order in self.orders.values()))

    def outstanding_total(self) -> float:
        """Sum of totals awaiting payment (cashier dashboard)."""
        return round(sum(
            order.total for order in self.orders.values()
            if order.status == OrderStatus.PENDING_PAYMENT
        ), 2)

    def latest_by_table(self) -> Dict[int, Order]:
        """Newest dine-in order per table (waiter table grid)."""
        latest: Dict[int, Order] = {}
        for order in self.orders.values():
            if order.table_number is None:
                continue
            current = latest.get(order.table_number)
            if current is None or order.created_at > current.created_at:
                latest[order.table_number] = order
        return latest

    def __len__(self) -> int:
        return len(self.orders)


# ============================================================================
# CONSUMER
# ============================================================================

OrderHandler = Callable[[Order], Any]


class ChangeFeedConsumer:
    """
    Subscribes to the store's change feed and keeps an OrderView current.

    Args:
        store: OrderStore implementation
        role_filter: Orders of interest
        view: View to maintain (a new one by default)
        handlers: Callables (sync or async) invoked with each matching order
        resync_interval: Seconds between periodic resyncs (0 disables)
        reconnect_delay: First reconnect delay, doubled per failed attempt
        max_reconnect_delay: Reconnect delay cap
        auto_apply: Process events in a background task; when False the
            caller drains the queue with process_pending()
        on_update: Callable (sync or async) invoked with the view after
            each processed event or resync
    """

    def __init__(
        self,
        store,
        role_filter: RoleFilter,
        view: Optional[OrderView] = None,
        handlers: Iterable[OrderHandler] = (),
        resync_interval: float = DEFAULT_RESYNC_INTERVAL,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        auto_apply: bool = True,
        on_update: Optional[Callable[["OrderView"], Any]] = None,
        channel_name: Optional[str] = None
    ):
        self.store = store
        self.role_filter = role_filter
        self.view = view or OrderView(role_filter)
        self.handlers = list(handlers)
        self.resync_interval = resync_interval
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.auto_apply = auto_apply
        self.on_update = on_update
        self.channel_name = channel_name or f"orders-{role_filter.name}"

        self.events: Optional[asyncio.Queue] = None
        self.subscription = None
        self.connected = False
        self.is_running = False

        self._generation = 0
        self._reconnect_attempts = 0
        self._retry_requested = False
        self._worker_task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        # Stats
        self.event_count = 0
        self.resync_count = 0
        self.reconnect_count = 0
        self.error_count = 0

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Subscribe and start background processing."""
        if self.is_running:
            return

        self.is_running = True
        self.events = asyncio.Queue()

        if self.auto_apply:
            self._worker_task = asyncio.create_task(self._event_loop())
        if self.resync_interval:
            self._resync_task = asyncio.create_task(self._periodic_resync())

        if not await self._subscribe():
            self._schedule_reconnect()

        logger.info(f"Change feed consumer started: {self.channel_name}")

    async def stop(self):
        """Close the subscription and cancel background tasks."""
        if not self.is_running:
            return

        self.is_running = False
        self._generation += 1

        for task in (self._worker_task, self._resync_task, self._reconnect_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self._close_subscription()
        self.connected = False

        logger.info(f"Change feed consumer stopped: {self.channel_name}")

    async def _subscribe(self) -> bool:
        """
        Open a new channel.

        Returns:
            False if the store refused the subscription
        """
        self._generation += 1
        generation = self._generation

        try:
            self.subscription = await self.store.subscribe_orders(
                self.channel_name,
                self._on_change,
                lambda status: self._on_status(status, generation),
                owner_id=self.role_filter.owner_id
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Subscribe failed ({self.channel_name}): {describe(e)}")
            return False

        return True

    async def _close_subscription(self):
        subscription, self.subscription = self.subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except Exception as e:
            logger.warning(f"Error closing subscription {self.channel_name}: {describe(e)}")

    # ========================================================================
    # FEED CALLBACKS
    # ========================================================================

    def _on_change(self, event: ChangeEvent):
        if not self.is_running:
            return
        feed_events.labels(view=self.role_filter.name, event_type=event.event_type).inc()
        self.event_count += 1
        self.events.put_nowait(OrderChanged.from_event(event))

    def _on_status(self, status: str, generation: int):
        if not self.is_running or generation != self._generation:
            return

        if status == SUBSCRIBED:
            self.connected = True
            self._reconnect_attempts = 0
            logger.info(f"Channel subscribed: {self.channel_name}, resyncing")
            self.events.put_nowait(OrderChanged.resync())

        elif status in DISCONNECTED_STATES:
            self.connected = False
            logger.warning(f"Channel {self.channel_name} lost: {status}")
            self._schedule_reconnect()

    def _schedule_reconnect(self):
        if not self.is_running:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            # A channel opened by the running attempt failed straight away
            self._retry_requested = True
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self):
        """Resubscribe with exponential backoff until a channel opens or stop()."""
        while self.is_running:
            delay = min(
                self.reconnect_delay * (2 ** self._reconnect_attempts),
                self.max_reconnect_delay
            )
            self._reconnect_attempts += 1
            self.reconnect_count += 1
            feed_reconnects.labels(view=self.role_filter.name).inc()

            logger.info(
                f"Reconnecting {self.channel_name} in {delay:.1f}s "
                f"(attempt {self._reconnect_attempts})"
            )
            await asyncio.sleep(delay)

            if not self.is_running:
                return

            # Invalidate callbacks of the old channel before closing it
            self._generation += 1
            await self._close_subscription()

            self._retry_requested = False
            if await self._subscribe() and not self._retry_requested:
                return

    # ========================================================================
    # PROCESSING
    # ========================================================================

    async def _event_loop(self):
        while self.is_running:
            change = await self.events.get()
            try:
                await self._process(change)
            finally:
                self.events.task_done()

    async def _periodic_resync(self):
        while self.is_running:
            await asyncio.sleep(self.resync_interval)
            if self.connected:
                self.events.put_nowait(OrderChanged.resync())

    async def process_pending(self) -> int:
        """Drain queued events in the caller's task (auto_apply=False)."""
        processed = 0
        while self.events is not None and not self.events.empty():
            change = self.events.get_nowait()
            try:
                await self._process(change)
            finally:
                self.events.task_done()
            processed += 1
        return processed

    async def _process(self, change: OrderChanged):
        try:
            if change.is_resync:
                await self.resync()
            else:
                await self.refresh(change.order_id)
            await self._notify_update()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error_count += 1
            feed_errors.labels(view=self.role_filter.name).inc()
            logger.error(
                f"Change feed processing failed: {describe(e, change.order_id)}",
                extra={"order_id": change.order_id, "event_type": change.event_type}
            )

    async def _notify_update(self):
        if self.on_update is None:
            return
        result = self.on_update(self.view)
        if asyncio.iscoroutine(result):
            await result

    async def refresh(self, order_id: str) -> Optional[Order]:
        """Refetch one order, apply it to the view and run handlers."""
        order = await self.store.get_order(order_id)

        if order is None:
            self.view.remove(order_id)
            return None

        self.view.apply(order)

        if self.role_filter.matches(order):
            await self._run_handlers(order)

        return order

    async def resync(self) -> int:
        """
        Fetch every matching order and replace the view.

        Returns:
            Number of orders fetched
        """
        orders = await self.store.list_orders(self.role_filter.to_query())
        self.view.replace_all(orders)

        self.resync_count += 1
        feed_resyncs.labels(view=self.role_filter.name).inc()
        logger.info(f"Resynced {self.channel_name}: {len(orders)} orders")

        for order in orders:
            await self._run_handlers(order)

        return len(orders)

    async def _run_handlers(self, order: Order):
        for handler in self.handlers:
            try:
                result = handler(order)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.error_count += 1
                feed_errors.labels(view=self.role_filter.name).inc()
                logger.error(
                    f"Change feed handler failed: {describe(e, order.order_id)}",
                    extra={"order_id": order.order_id}
                )

    # ========================================================================
    # LOCAL ACTIONS
    # ========================================================================

    async def perform(
        self,
        order_id: str,
        target_status: OrderStatus,
        action: Callable[[], Awaitable[Order]]
    ) -> Order:
        """
        Run a service call under the pending overlay.

        The view shows target_status until the call returns. Success
        confirms with the committed order; failure rolls back. An
        InvalidTransition (someone else got there first) also refetches
        the order before re-raising.
        """
        self.view.begin_pending(order_id, target_status)

        try:
            order = await action()
        except InvalidTransition:
            self.view.rollback(order_id)
            await self.refresh(order_id)
            raise
        except Exception:
            self.view.rollback(order_id)
            raise

        self.view.confirm(order_id, order)
        return order

    def get_stats(self) -> Dict[str, Any]:
        return {
            "view": self.role_filter.name,
            "connected": self.connected,
            "orders": len(self.view),
            "pending": len(self.view.pending),
            "events": self.event_count,
            "resyncs": self.resync_count,
            "reconnects": self.reconnect_count,
            "errors": self.error_count,
            "last_synced_at": (
                self.view.last_synced_at.isoformat() if self.view.last_synced_at else None
            )
        }
