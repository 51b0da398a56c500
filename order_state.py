"""
Order State Machine
===================
Formal status transitions for the order lifecycle.

State invariants:
- Transitions are forward-only, no cycles
- Every transition names the role(s) allowed to trigger it
- Validation never mutates; the store commits the planned change
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set, Tuple

from prometheus_client import Counter

from auth import Actor, Role
from errors import AuthorizationError, InvalidTransition


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_transition_checks = Counter(
    'order_transition_checks_total',
    'Transition validation outcomes',
    ['action', 'result']
)


# ============================================================================
# STATES
# ============================================================================

class ServiceType(Enum):
    """How the order is served."""
    DINE_IN = "mesa"
    TAKEOUT = "llevar"


class OrderStatus(Enum):
    """
    Order lifecycle states (values are the store's wire format).

    State flow:
        UNCONFIRMED -> SUBMITTED -> READY -> PENDING_PAYMENT -> DELIVERED -> COMPLETED
                                         \\-----(takeout)----/
    """
    UNCONFIRMED = "Inconclusa"
    SUBMITTED = "Enviado"
    READY = "Listo"
    PENDING_PAYMENT = "Pendiente de cobro"
    DELIVERED = "Entregado"
    COMPLETED = "Completada"

    @property
    def rank(self) -> int:
        """Position in the lifecycle; never decreases for a given order."""
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value) -> "OrderStatus":
        """Parse wire value or enum name ("Listo", "READY", "ready")."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            pass
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown order status: {value}")


_STATUS_RANK = {status: index for index, status in enumerate(OrderStatus)}


class OrderAction(Enum):
    """Named transitions."""
    SUBMIT = "submit"
    MARK_READY = "mark_ready"
    REQUEST_PAYMENT = "request_payment"
    CONFIRM_PAYMENT = "confirm_payment"
    CLOSE = "close"


@dataclass(frozen=True)
class TransitionPlan:
    """Validated transition, ready to be committed as a conditional update."""
    action: OrderAction
    source: OrderStatus
    target: OrderStatus
    recompute_total: bool


# ============================================================================
# STATE MACHINE
# ============================================================================

class OrderStateMachine:
    """
    Validates order status transitions.

    Enforces:
    - Predecessor status per action and service type
    - Role permissions per action
    - Waiters only act on their own dine-in orders
    """

    # action -> service type -> (predecessor, successor)
    TRANSITIONS: Dict[OrderAction, Dict[ServiceType, Tuple[OrderStatus, OrderStatus]]] = {
        OrderAction.SUBMIT: {
            ServiceType.DINE_IN: (OrderStatus.UNCONFIRMED, OrderStatus.SUBMITTED),
            ServiceType.TAKEOUT: (OrderStatus.UNCONFIRMED, OrderStatus.SUBMITTED),
        },
        OrderAction.MARK_READY: {
            ServiceType.DINE_IN: (OrderStatus.SUBMITTED, OrderStatus.READY),
            ServiceType.TAKEOUT: (OrderStatus.SUBMITTED, OrderStatus.READY),
        },
        OrderAction.REQUEST_PAYMENT: {
            ServiceType.DINE_IN: (OrderStatus.READY, OrderStatus.PENDING_PAYMENT),
        },
        OrderAction.CONFIRM_PAYMENT: {
            ServiceType.DINE_IN: (OrderStatus.PENDING_PAYMENT, OrderStatus.DELIVERED),
            ServiceType.TAKEOUT: (OrderStatus.READY, OrderStatus.DELIVERED),
        },
        OrderAction.CLOSE: {
            ServiceType.DINE_IN: (OrderStatus.DELIVERED, OrderStatus.COMPLETED),
            ServiceType.TAKEOUT: (OrderStatus.DELIVERED, OrderStatus.COMPLETED),
        },
    }

    ACTION_FOR_TARGET: Dict[OrderStatus, OrderAction] = {
        OrderStatus.SUBMITTED: OrderAction.SUBMIT,
        OrderStatus.READY: OrderAction.MARK_READY,
        OrderStatus.PENDING_PAYMENT: OrderAction.REQUEST_PAYMENT,
        OrderStatus.DELIVERED: OrderAction.CONFIRM_PAYMENT,
        OrderStatus.COMPLETED: OrderAction.CLOSE,
    }

    ALLOWED_ROLES: Dict[OrderAction, FrozenSet[Role]] = {
        OrderAction.SUBMIT: frozenset({Role.WAITER, Role.ADMIN}),
        OrderAction.MARK_READY: frozenset({Role.KITCHEN, Role.ADMIN}),
        OrderAction.REQUEST_PAYMENT: frozenset({Role.WAITER, Role.ADMIN}),
        OrderAction.CONFIRM_PAYMENT: frozenset({Role.CASHIER, Role.ADMIN}),
        OrderAction.CLOSE: frozenset({Role.WAITER, Role.ADMIN}),
    }

    # The order's creator may also trigger these, whatever their role
    CREATOR_ACTIONS: FrozenSet[OrderAction] = frozenset({
        OrderAction.SUBMIT,
        OrderAction.CLOSE,
    })

    RECOMPUTE_TOTAL_ON: FrozenSet[OrderStatus] = frozenset({
        OrderStatus.READY,
        OrderStatus.DELIVERED,
    })

    def action_for(self, target_status: OrderStatus) -> OrderAction:
        """
        Get the action that leads into target status.

        Raises:
            InvalidTransition: Nothing transitions into target (Unconfirmed)
        """
        action = self.ACTION_FOR_TARGET.get(target_status)
        if action is None:
            raise InvalidTransition(
                f"No transition leads into {target_status.value}",
                to_status=target_status
            )
        return action

    def predecessor(
        self,
        action: OrderAction,
        service_type: ServiceType
    ) -> Optional[OrderStatus]:
        """Get the required current status for action (None if not offered)."""
        edge = self.TRANSITIONS[action].get(service_type)
        return edge[0] if edge else None

    def authorize(self, order, action: OrderAction, actor: Actor):
        """
        Check that actor may trigger action on order.

        Raises:
            AuthorizationError: If the role lacks permission
        """
        is_creator = (
            order.owner_id is not None and actor.user_id == order.owner_id
        )

        if actor.role not in self.ALLOWED_ROLES[action]:
            if not (action in self.CREATOR_ACTIONS and is_creator):
                raise AuthorizationError(
                    f"Role {actor.role.value} may not {action.value}",
                    order_id=order.order_id,
                    action=action
                )

        if (
            actor.role == Role.WAITER
            and order.service_type == ServiceType.DINE_IN
            and order.owner_id is not None
            and not is_creator
        ):
            raise AuthorizationError(
                "Waiters may only act on their own tables",
                order_id=order.order_id,
                action=action
            )

    def plan(self, order, target_status: OrderStatus, actor: Actor) -> TransitionPlan:
        """
        Validate a transition without mutating anything.

        Args:
            order: Current authoritative order
            target_status: Desired next status
            actor: Caller requesting the transition

        Returns:
            TransitionPlan describing the conditional update to commit

        Raises:
            AuthorizationError: If actor may not perform the action
            InvalidTransition: If order is not in the predecessor status
        """
        action = self.action_for(target_status)

        try:
            self.authorize(order, action, actor)
        except AuthorizationError:
            order_transition_checks.labels(action=action.value, result='unauthorized').inc()
            raise

        required = self.predecessor(action, order.service_type)

        if required is None or order.status != required:
            order_transition_checks.labels(action=action.value, result='invalid').inc()
            logger.info(
                f"Invalid transition: {order.status.value} -> {target_status.value}",
                extra={
                    "order_id": order.order_id,
                    "from_state": order.status.value,
                    "to_state": target_status.value,
                    "service_type": order.service_type.value,
                    "actor_role": actor.role.value
                }
            )
            raise InvalidTransition(
                f"Cannot {action.value} from {order.status.value}",
                order_id=order.order_id,
                from_status=order.status,
                to_status=target_status
            )

        order_transition_checks.labels(action=action.value, result='ok').inc()

        return TransitionPlan(
            action=action,
            source=required,
            target=target_status,
            recompute_total=target_status in self.RECOMPUTE_TOTAL_ON
        )

    def reachable_statuses(self, service_type: ServiceType) -> Set[OrderStatus]:
        """Statuses reachable from Unconfirmed for service type."""
        reachable = {OrderStatus.UNCONFIRMED}
        frontier = [OrderStatus.UNCONFIRMED]

        while frontier:
            current = frontier.pop()
            for edges in self.TRANSITIONS.values():
                edge = edges.get(service_type)
                if edge and edge[0] == current and edge[1] not in reachable:
                    reachable.add(edge[1])
                    frontier.append(edge[1])

        return reachable

    def is_terminal(self, status: OrderStatus) -> bool:
        """Check if status is terminal."""
        return status == OrderStatus.COMPLETED
