"""
Order Service
=============
Order lifecycle operations: create, edit line items, transition.

Every status change is planned by the state machine against a fresh read
and committed as a conditional update on the planned predecessor status.
A lost race is a ConflictError, retried (bounded) from a fresh read.

Side effects run after the commit and never fail the transition:
- into Delivered: the sale is projected into the sales ledger
- takeout into Submitted / Ready: the customer is notified
"""

import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Union

from prometheus_client import Counter, Histogram

from auth import Actor, Role
from errors import (
    AuthorizationError,
    ConflictError,
    OrderLocked,
    OrderNotFound,
    ValidationError,
    describe,
)
from menu import MenuCatalog
from order import (
    DEFAULT_COUNTRY_CODE,
    LineItem,
    Order,
    clean_note,
    normalize_phone,
    validate_quantity,
)
from order_state import (
    OrderAction,
    OrderStateMachine,
    OrderStatus,
    ServiceType,
    TransitionPlan,
)
from store import NewOrder, OrderQuery


logger = logging.getLogger(__name__)


DEFAULT_MAX_CONFLICT_RETRIES = 3
MAX_CUSTOMER_NAME_LENGTH = 100


# ============================================================================
# METRICS
# ============================================================================

orders_created = Counter(
    'orders_created_total',
    'Orders created',
    ['service_type']
)
order_transitions = Counter(
    'order_transitions_total',
    'Committed or failed status transitions',
    ['action', 'result']
)
transition_conflicts = Counter(
    'order_transition_conflicts_total',
    'Conditional updates that lost a race'
)
line_item_mutations = Counter(
    'line_item_mutations_total',
    'Line item changes',
    ['operation']
)
transition_latency = Histogram(
    'order_transition_seconds',
    'Transition latency including retries'
)
side_effect_failures = Counter(
    'order_side_effect_failures_total',
    'Post-commit side effects that failed',
    ['effect']
)


def parse_service_type(value: Union[str, ServiceType]) -> ServiceType:
    """
    Parse "mesa"/"llevar" (or "dine_in"/"takeout").

    Raises:
        ValidationError: Unknown service type
    """
    if isinstance(value, ServiceType):
        return value
    try:
        return ServiceType(value)
    except ValueError:
        pass
    try:
        return ServiceType[str(value).strip().upper()]
    except KeyError:
        raise ValidationError(f"Unknown service type: {value}", field="service_type")


def parse_target_status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus.parse(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}", field="target_status")


class OrderService:
    """
    Order lifecycle operations over an OrderStore.

    Args:
        store: OrderStore implementation
        menu: Catalog used to snapshot line items
        state_machine: Transition validator
        notifier: OrderNotifier for takeout customers (optional)
        projector: SalesLedgerProjector (optional)
        max_conflict_retries: Retries after a lost conditional update
        country_code: Phone country code for takeout customers
    """

    def __init__(
        self,
        store,
        menu: MenuCatalog,
        state_machine: Optional[OrderStateMachine] = None,
        notifier=None,
        projector=None,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        country_code: str = DEFAULT_COUNTRY_CODE
    ):
        self.store = store
        self.menu = menu
        self.state_machine = state_machine or OrderStateMachine()
        self.notifier = notifier
        self.projector = projector
        self.max_conflict_retries = max_conflict_retries
        self.country_code = country_code

    # ========================================================================
    # READS
    # ========================================================================

    async def get_order(self, order_id: str) -> Order:
        """
        Fetch an order with its line items.

        Raises:
            OrderNotFound: If no order has that id
        """
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order not found: {order_id}", order_id=order_id)
        return order

    async def list_orders(self, query: Optional[OrderQuery] = None) -> List[Order]:
        return await self.store.list_orders(query or OrderQuery())

    # ========================================================================
    # CREATE
    # ========================================================================

    async def create(
        self,
        service_type: Union[str, ServiceType],
        actor: Actor,
        table_number: Optional[int] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        occupants: Optional[int] = None,
        note: Optional[str] = None
    ) -> Order:
        """
        Create an order in Unconfirmed with no line items.

        Dine-in orders need a table and are opened by waiters (or admin).
        Takeout orders need a customer name and phone; any staff role may
        create them.

        Raises:
            ValidationError: Missing or malformed fields (nothing stored)
            AuthorizationError: Role may not open a table
        """
        service_type = parse_service_type(service_type)

        if service_type == ServiceType.DINE_IN:
            new_order = self._validate_dine_in(actor, table_number, customer_name, customer_phone, occupants, note)
        else:
            new_order = self._validate_takeout(actor, table_number, customer_name, customer_phone, note)

        order = await self.store.insert_order(new_order)
        orders_created.labels(service_type=service_type.value).inc()

        logger.info(
            f"Order created: {order.order_id} ({order.label})",
            extra={
                "order_id": order.order_id,
                "service_type": service_type.value,
                "actor_role": actor.role.value
            }
        )

        return order

    def _owner_for(self, actor: Actor) -> Optional[str]:
        # Admin-created orders have no owner
        return None if actor.is_admin() else actor.user_id

    def _validate_dine_in(self, actor, table_number, customer_name, customer_phone, occupants, note) -> NewOrder:
        if actor.role not in (Role.WAITER, Role.ADMIN):
            raise AuthorizationError(f"Role {actor.role.value} may not open a table")

        if not _is_positive_int(table_number):
            raise ValidationError(f"Invalid table number: {table_number!r}", field="table_number")

        if occupants is not None and not _is_positive_int(occupants):
            raise ValidationError(f"Invalid occupants: {occupants!r}", field="occupants")

        if customer_name or customer_phone:
            raise ValidationError("Dine-in orders do not carry customer contact", field="customer_phone")

        return NewOrder(
            service_type=ServiceType.DINE_IN,
            owner_id=self._owner_for(actor),
            table_number=table_number,
            occupants=occupants,
            note=clean_note(note)
        )

    def _validate_takeout(self, actor, table_number, customer_name, customer_phone, note) -> NewOrder:
        if table_number is not None:
            raise ValidationError("Takeout orders do not have a table", field="table_number")

        name = str(customer_name or "").strip()
        if not name:
            raise ValidationError("Customer name required", field="customer_name")
        if len(name) > MAX_CUSTOMER_NAME_LENGTH:
            raise ValidationError("Customer name too long", field="customer_name")

        return NewOrder(
            service_type=ServiceType.TAKEOUT,
            owner_id=self._owner_for(actor),
            customer_name=name,
            customer_phone=normalize_phone(customer_phone, self.country_code),
            note=clean_note(note)
        )

    # ========================================================================
    # LINE ITEMS
    # ========================================================================

    def _check_mutable(self, order: Order, actor: Actor):
        """
        Raises:
            OrderLocked: Order left Unconfirmed
            AuthorizationError: Actor is not the order's creator
        """
        if not order.is_mutable():
            raise OrderLocked(
                f"Order {order.order_id} is {order.status.value}, items are locked",
                order_id=order.order_id,
                status=order.status
            )

        if order.owner_id is None:
            allowed = actor.is_admin()
        else:
            allowed = actor.user_id == order.owner_id

        if not allowed:
            raise AuthorizationError(
                "Only the order's creator may change its items",
                order_id=order.order_id
            )

    async def add_line_item(
        self,
        order_id: str,
        menu_item_id: str,
        quantity: int,
        actor: Actor,
        note: Optional[str] = None
    ) -> Order:
        """
        Add a menu item to an unsubmitted order.

        Re-adding a menu item with the same note merges into the existing
        row (keeping its unit price); a different note appends a new row.

        Returns:
            Order with updated line items and total
        """
        validate_quantity(quantity)
        note = clean_note(note)

        order = await self.get_order(order_id)
        self._check_mutable(order, actor)

        item = await self.menu.get_orderable_item(menu_item_id)

        existing = next(
            (
                line for line in order.line_items
                if line.menu_item_id == item.menu_item_id and line.note == note
            ),
            None
        )

        if existing is not None:
            await self.store.update_line_item(existing.line_item_id, existing.quantity + quantity)
            line_item_mutations.labels(operation='merge').inc()

            async def undo():
                await self.store.update_line_item(
                    existing.line_item_id, existing.quantity, require_unconfirmed=False
                )
        else:
            inserted = await self.store.insert_line_item(LineItem(
                line_item_id=None,
                order_id=order.order_id,
                menu_item_id=item.menu_item_id,
                name=item.name,
                description=item.description,
                quantity=quantity,
                unit_price=item.price,
                note=note
            ))
            line_item_mutations.labels(operation='add').inc()

            async def undo():
                await self.store.delete_line_item(inserted.line_item_id, require_unconfirmed=False)

        logger.info(
            f"Added {quantity} x {item.name} to order {order_id}",
            extra={"order_id": order_id, "menu_item_id": item.menu_item_id}
        )

        return await self._commit_item_change(order_id, undo)

    async def update_line_item_quantity(
        self,
        order_id: str,
        line_item_id: str,
        quantity: int,
        actor: Actor
    ) -> Order:
        """Set a line item's quantity (>= 1; use remove_line_item to drop it)."""
        validate_quantity(quantity)

        order = await self.get_order(order_id)
        self._check_mutable(order, actor)
        previous = self._require_line_item(order, line_item_id)

        await self.store.update_line_item(line_item_id, quantity)
        line_item_mutations.labels(operation='update').inc()

        async def undo():
            await self.store.update_line_item(
                line_item_id, previous.quantity, require_unconfirmed=False
            )

        return await self._commit_item_change(order_id, undo)

    async def remove_line_item(self, order_id: str, line_item_id: str, actor: Actor) -> Order:
        order = await self.get_order(order_id)
        self._check_mutable(order, actor)
        self._require_line_item(order, line_item_id)

        removed = await self.store.delete_line_item(line_item_id)
        line_item_mutations.labels(operation='remove').inc()

        async def undo():
            await self.store.insert_line_item(removed, require_unconfirmed=False)

        return await self._commit_item_change(order_id, undo)

    def _require_line_item(self, order: Order, line_item_id: str) -> LineItem:
        line = order.find_line_item(str(line_item_id))
        if line is None:
            raise OrderNotFound(
                f"Line item {line_item_id} not in order {order.order_id}",
                order_id=order.order_id
            )
        return line

    async def _commit_item_change(self, order_id: str, undo) -> Order:
        """
        Commit an item write by updating the total while still Unconfirmed.

        If the order was submitted between the item write and the total
        update, the item write is undone so a submitted order never carries
        an item (or a total) the kitchen did not receive.

        Raises:
            OrderLocked: Order left Unconfirmed during the change
        """
        order = await self.get_order(order_id)

        if order.status == OrderStatus.UNCONFIRMED:
            total = order.computed_total()
            if total == order.total:
                return order

            updated = await self.store.update_order(
                order_id,
                expected_status=OrderStatus.UNCONFIRMED,
                total=total
            )
            if updated is not None:
                return updated

        await undo()
        line_item_mutations.labels(operation='rollback').inc()

        logger.warning(
            f"Order {order_id} left Unconfirmed during item edit, change undone",
            extra={"order_id": order_id}
        )

        raise OrderLocked(
            f"Order {order_id} was submitted during the item change",
            order_id=order_id
        )

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    async def transition(
        self,
        order_id: str,
        target_status: Union[str, OrderStatus],
        actor: Actor
    ) -> Order:
        """
        Move an order to target_status.

        Args:
            order_id: Order to transition
            target_status: Desired next status
            actor: Caller

        Returns:
            The committed order

        Raises:
            AuthorizationError: Role may not perform the transition
            InvalidTransition: Order not in the predecessor status (also when
                a concurrent actor already applied the same transition)
            ConflictError: Lost every conditional update race
            OrderNotFound: No such order
        """
        target_status = parse_target_status(target_status)
        started = time.monotonic()
        attempt = 0

        try:
            while True:
                order = await self.get_order(order_id)
                plan = self.state_machine.plan(order, target_status, actor)

                total = order.computed_total() if plan.recompute_total else None

                updated = await self.store.update_order(
                    order_id,
                    expected_status=plan.source,
                    status=plan.target,
                    total=total
                )

                if updated is not None:
                    break

                transition_conflicts.inc()
                attempt += 1

                if attempt > self.max_conflict_retries:
                    raise ConflictError(
                        f"Order {order_id} changed concurrently, gave up after {attempt} attempts",
                        order_id=order_id,
                        to_status=target_status
                    )

                logger.info(
                    f"Conditional update lost race, retrying (attempt {attempt})",
                    extra={"order_id": order_id, "to_state": target_status.value}
                )

        except Exception as e:
            action = self.state_machine.ACTION_FOR_TARGET.get(target_status)
            order_transitions.labels(
                action=action.value if action else 'none',
                result=getattr(e, "code", "error")
            ).inc()
            raise

        finally:
            transition_latency.observe(time.monotonic() - started)

        order_transitions.labels(action=plan.action.value, result='committed').inc()

        logger.info(
            f"Order {order_id}: {plan.source.value} -> {plan.target.value}",
            extra={
                "order_id": order_id,
                "from_state": plan.source.value,
                "to_state": plan.target.value,
                "actor_role": actor.role.value,
                "total": updated.total
            }
        )

        await self._after_commit(updated, plan)

        return updated

    async def _after_commit(self, order: Order, plan: TransitionPlan):
        """Best-effort side effects; failures are logged, never raised."""
        if plan.target == OrderStatus.DELIVERED and self.projector is not None:
            try:
                await self.projector.project_sale(order)
            except Exception as e:
                side_effect_failures.labels(effect='sales_projection').inc()
                logger.error(
                    f"Sales projection failed, left to change feed catch-up: "
                    f"{describe(e, order.order_id)}",
                    extra={"order_id": order.order_id}
                )

        if not order.is_takeout() or self.notifier is None:
            return

        try:
            if plan.target == OrderStatus.SUBMITTED:
                self.notifier.order_received(order)
            elif plan.target == OrderStatus.READY:
                self.notifier.order_ready(order)
        except Exception as e:
            side_effect_failures.labels(effect='notification').inc()
            logger.error(
                f"Customer notification failed: {describe(e, order.order_id)}",
                extra={"order_id": order.order_id}
            )

    async def perform_action(
        self,
        order_id: str,
        action: Union[str, OrderAction],
        actor: Actor
    ) -> Order:
        """Run a named action (submit, mark_ready, ...)."""
        try:
            action = OrderAction(action)
        except ValueError:
            raise ValidationError(f"Unknown action: {action}", field="action")

        for status, candidate in self.state_machine.ACTION_FOR_TARGET.items():
            if candidate == action:
                return await self.transition(order_id, status, actor)

        raise ValidationError(f"Action has no target status: {action.value}", field="action")

    async def submit(self, order_id: str, actor: Actor) -> Order:
        return await self.transition(order_id, OrderStatus.SUBMITTED, actor)

    async def mark_ready(self, order_id: str, actor: Actor) -> Order:
        return await self.transition(order_id, OrderStatus.READY, actor)

    async def request_payment(self, order_id: str, actor: Actor) -> Order:
        return await self.transition(order_id, OrderStatus.PENDING_PAYMENT, actor)

    async def confirm_payment(self, order_id: str, actor: Actor) -> Order:
        return await self.transition(order_id, OrderStatus.DELIVERED, actor)

    async def close(self, order_id: str, actor: Actor) -> Order:
        return await self.transition(order_id, OrderStatus.COMPLETED, actor)

    # ========================================================================
    # COUNTER FLOW
    # ========================================================================

    async def place_takeout_order(
        self,
        actor: Actor,
        customer_name: str,
        customer_phone: str,
        items: Iterable[Dict[str, Any]],
        note: Optional[str] = None
    ) -> Order:
        """
        Create, fill and submit a takeout order in one call.

        Args:
            actor: Staff member at the counter
            customer_name: Name called at pickup
            customer_phone: Customer phone (10 digits, or with country code)
            items: Dicts with menu_item_id, quantity and optional note
            note: Order-level note

        Returns:
            The submitted order

        Raises:
            ValidationError: Empty cart, bad quantity, unknown or inactive item
        """
        items = list(items)
        if not items:
            raise ValidationError("Takeout order needs at least one item", field="items")

        # Validate the whole cart before anything is stored
        for entry in items:
            validate_quantity(entry.get("quantity"))
            await self.menu.get_orderable_item(entry.get("menu_item_id"))

        order = await self.create(
            ServiceType.TAKEOUT,
            actor,
            customer_name=customer_name,
            customer_phone=customer_phone,
            note=note
        )

        for entry in items:
            await self.add_line_item(
                order.order_id,
                entry["menu_item_id"],
                entry["quantity"],
                actor,
                note=entry.get("note")
            )

        return await self.submit(order.order_id, actor)


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0
