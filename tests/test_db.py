import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from db import CircuitBreaker, CircuitState, SupabaseStore, translate_api_error
from errors import AuthorizationError, ConflictError, OrderLocked, StoreUnavailable, ValidationError
from order import LineItem
from order_state import OrderStatus


def api_error(code, message="boom"):
    return APIError({"code": code, "message": message, "hint": None, "details": None})


@pytest.mark.parametrize("code, message, expected", [
    ("42501", "permission denied for table pedidos", AuthorizationError),
    ("PGRST301", "JWT expired", AuthorizationError),
    ("", "new row violates row-level security policy", AuthorizationError),
    ("23505", "duplicate key value", ConflictError),
    ("23514", "check constraint", ValidationError),
    ("22P02", "invalid input syntax", ValidationError),
    ("08006", "connection failure", StoreUnavailable),
])
def test_translate_api_error(code, message, expected):
    assert type(translate_api_error(api_error(code, message), "op")) is expected


def test_circuit_breaker_opens_and_recovers():
    breaker = CircuitBreaker(threshold=2, timeout=30)

    breaker.record_failure()
    assert breaker.can_execute()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert not breaker.can_execute()

    breaker.last_failure_time = datetime.utcnow() - timedelta(seconds=31)
    assert breaker.can_execute()
    assert breaker.state == CircuitState.HALF_OPEN

    breaker.record_success()
    breaker.record_success()
    assert breaker.get_state() == "closed"


def chain(client):
    """The query builder returned by every filter in client.table(...).update(...)."""
    return client.table.return_value.update.return_value.eq.return_value.eq.return_value


def test_conditional_update_reports_lost_race_as_none():
    client = MagicMock()
    chain(client).execute.return_value = MagicMock(data=[])
    store = SupabaseStore(client)

    result = asyncio.run(store.update_order("7", OrderStatus.SUBMITTED, status=OrderStatus.READY))

    assert result is None
    client.table.return_value.update.assert_called_once_with({"estado": "Listo"})
    assert store.write_count == 1


def test_row_level_security_denial_is_authorization_error():
    client = MagicMock()
    chain(client).execute.side_effect = api_error("42501", "permission denied")
    store = SupabaseStore(client)

    with pytest.raises(AuthorizationError):
        asyncio.run(store.update_order("7", OrderStatus.SUBMITTED, status=OrderStatus.READY))

    assert store.circuit_breaker.state == CircuitState.CLOSED


def test_open_circuit_skips_the_call():
    client = MagicMock()
    chain(client).execute.side_effect = RuntimeError("connection reset")
    store = SupabaseStore(client, circuit_breaker=CircuitBreaker(threshold=1))

    with pytest.raises(StoreUnavailable):
        asyncio.run(store.update_order("7", OrderStatus.SUBMITTED, status=OrderStatus.READY))
    with pytest.raises(StoreUnavailable, match="Circuit breaker open"):
        asyncio.run(store.update_order("7", OrderStatus.SUBMITTED, status=OrderStatus.READY))

    assert chain(client).execute.call_count == 1
    assert not store.is_healthy()


def test_line_item_insert_refused_once_order_left_unconfirmed():
    client = MagicMock()
    status_read = client.table.return_value.select.return_value.eq.return_value.limit.return_value
    status_read.execute.return_value = MagicMock(data=[{"estado": "Enviado"}])
    store = SupabaseStore(client)
    item = LineItem(
        line_item_id=None, order_id="7", menu_item_id="1", name="Tacos", quantity=1, unit_price=50.0
    )

    with pytest.raises(OrderLocked):
        asyncio.run(store.insert_line_item(item))

    client.table.return_value.insert.assert_not_called()
    assert store.write_count == 0


def test_undo_insert_skips_the_status_check():
    client = MagicMock()
    client.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[{
        "id": 3, "pedido_id": 7, "platillo_id": 1, "nombre": "Tacos", "descripcion": "",
        "cantidad": 1, "precio_unitario": 50.0, "subtotal": 50.0, "nota": None,
    }])
    store = SupabaseStore(client)
    item = LineItem(
        line_item_id="3", order_id="7", menu_item_id="1", name="Tacos", quantity=1, unit_price=50.0
    )

    restored = asyncio.run(store.insert_line_item(item, require_unconfirmed=False))

    assert restored.line_item_id == "3"
    client.table.return_value.select.assert_not_called()
    assert client.table.return_value.insert.call_args.args[0]["id"] == "3"
