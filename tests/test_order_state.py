from datetime import datetime, timezone

import pytest

from errors import AuthorizationError, InvalidTransition
from helpers import ADMIN, CASHIER, KITCHEN, OTHER_WAITER, WAITER
from order import Order
from order_state import OrderAction, OrderStateMachine, OrderStatus, ServiceType


def make_order(status, service_type=ServiceType.DINE_IN, owner_id="waiter-1"):
    return Order(
        order_id="7",
        service_type=service_type,
        status=status,
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        owner_id=owner_id,
        table_number=3 if service_type == ServiceType.DINE_IN else None,
        customer_phone="525512345678" if service_type == ServiceType.TAKEOUT else None,
    )


@pytest.fixture
def machine():
    return OrderStateMachine()


@pytest.mark.parametrize("source, target, actor", [
    (OrderStatus.UNCONFIRMED, OrderStatus.SUBMITTED, WAITER),
    (OrderStatus.SUBMITTED, OrderStatus.READY, KITCHEN),
    (OrderStatus.READY, OrderStatus.PENDING_PAYMENT, WAITER),
    (OrderStatus.PENDING_PAYMENT, OrderStatus.DELIVERED, CASHIER),
    (OrderStatus.DELIVERED, OrderStatus.COMPLETED, WAITER),
])
def test_dine_in_lifecycle_edges(machine, source, target, actor):
    plan = machine.plan(make_order(source), target, actor)
    assert plan.source == source
    assert plan.target == target


def test_takeout_goes_from_ready_straight_to_delivered(machine):
    order = make_order(OrderStatus.READY, ServiceType.TAKEOUT, owner_id="cashier-1")

    plan = machine.plan(order, OrderStatus.DELIVERED, CASHIER)
    assert plan.action == OrderAction.CONFIRM_PAYMENT

    with pytest.raises(InvalidTransition):
        machine.plan(order, OrderStatus.PENDING_PAYMENT, ADMIN)


def test_skipping_a_status_is_invalid(machine):
    with pytest.raises(InvalidTransition):
        machine.plan(make_order(OrderStatus.SUBMITTED), OrderStatus.PENDING_PAYMENT, WAITER)


def test_nothing_transitions_back_to_unconfirmed(machine):
    with pytest.raises(InvalidTransition):
        machine.plan(make_order(OrderStatus.SUBMITTED), OrderStatus.UNCONFIRMED, ADMIN)


def test_repeating_a_transition_is_invalid(machine):
    with pytest.raises(InvalidTransition):
        machine.plan(make_order(OrderStatus.READY), OrderStatus.READY, KITCHEN)


@pytest.mark.parametrize("source, target, actor", [
    (OrderStatus.UNCONFIRMED, OrderStatus.SUBMITTED, KITCHEN),
    (OrderStatus.SUBMITTED, OrderStatus.READY, WAITER),
    (OrderStatus.SUBMITTED, OrderStatus.READY, CASHIER),
    (OrderStatus.PENDING_PAYMENT, OrderStatus.DELIVERED, WAITER),
    (OrderStatus.READY, OrderStatus.PENDING_PAYMENT, KITCHEN),
])
def test_role_permissions(machine, source, target, actor):
    with pytest.raises(AuthorizationError):
        machine.plan(make_order(source), target, actor)


def test_authorization_is_checked_before_predecessor(machine):
    # Wrong role AND wrong status: the role error wins
    with pytest.raises(AuthorizationError):
        machine.plan(make_order(OrderStatus.UNCONFIRMED), OrderStatus.READY, WAITER)


def test_waiter_cannot_act_on_another_waiters_table(machine):
    order = make_order(OrderStatus.READY, owner_id="waiter-1")
    with pytest.raises(AuthorizationError):
        machine.plan(order, OrderStatus.PENDING_PAYMENT, OTHER_WAITER)


def test_creator_may_submit_and_close_whatever_their_role(machine):
    order = make_order(OrderStatus.UNCONFIRMED, ServiceType.TAKEOUT, owner_id="kitchen-1")
    assert machine.plan(order, OrderStatus.SUBMITTED, KITCHEN).target == OrderStatus.SUBMITTED

    delivered = make_order(OrderStatus.DELIVERED, ServiceType.TAKEOUT, owner_id="cashier-1")
    assert machine.plan(delivered, OrderStatus.COMPLETED, CASHIER).target == OrderStatus.COMPLETED


def test_admin_may_perform_every_transition(machine):
    order = make_order(OrderStatus.UNCONFIRMED, owner_id="waiter-1")
    for target in list(OrderStatus)[1:]:
        plan = machine.plan(order, target, ADMIN)
        order = make_order(plan.target, owner_id="waiter-1")
    assert order.status == OrderStatus.COMPLETED


def test_total_is_recomputed_into_ready_and_delivered(machine):
    assert machine.plan(make_order(OrderStatus.SUBMITTED), OrderStatus.READY, KITCHEN).recompute_total
    assert machine.plan(make_order(OrderStatus.PENDING_PAYMENT), OrderStatus.DELIVERED, CASHIER).recompute_total
    assert not machine.plan(make_order(OrderStatus.UNCONFIRMED), OrderStatus.SUBMITTED, WAITER).recompute_total


def test_reachable_statuses(machine):
    assert machine.reachable_statuses(ServiceType.DINE_IN) == set(OrderStatus)
    assert machine.reachable_statuses(ServiceType.TAKEOUT) == set(OrderStatus) - {OrderStatus.PENDING_PAYMENT}


def test_every_edge_moves_forward_in_rank(machine):
    for edges in machine.TRANSITIONS.values():
        for source, target in edges.values():
            assert target.rank > source.rank


def test_status_parse_accepts_wire_value_and_name():
    assert OrderStatus.parse("Pendiente de cobro") == OrderStatus.PENDING_PAYMENT
    assert OrderStatus.parse("ready") == OrderStatus.READY
    assert OrderStatus.parse(OrderStatus.COMPLETED) == OrderStatus.COMPLETED
    with pytest.raises(ValueError):
        OrderStatus.parse("Cancelado")


def test_only_completed_is_terminal(machine):
    assert machine.is_terminal(OrderStatus.COMPLETED)
    assert not any(machine.is_terminal(s) for s in OrderStatus if s != OrderStatus.COMPLETED)
