from datetime import date

import pytest

import schemas
from errors import ValidationError
from order_state import OrderStatus, ServiceType


def order_row(**overrides):
    row = {
        "id": 12,
        "tipo_servicio": "mesa",
        "estado": "Enviado",
        "created_at": "2024-05-01T18:30:00+00:00",
        "id_mesero": "waiter-1",
        "numero_mesa": 3,
        "total": 80,
        "detalle_pedidos": [
            {"id": 1, "pedido_id": 12, "platillo_id": 4, "nombre": "Tacos", "cantidad": 1, "precio_unitario": 50},
            {
                "id": 2,
                "pedido_id": 12,
                "platillo_id": 5,
                "cantidad": 1,
                "precio_unitario": 30,
                "platillos": {"nombre": "Agua", "descripcion": "Jamaica"},
            },
        ],
    }
    row.update(overrides)
    return row


def test_parse_order_with_embedded_line_items():
    order = schemas.parse_order(order_row())

    assert order.order_id == "12"
    assert order.status == OrderStatus.SUBMITTED
    assert order.table_number == 3
    assert order.total == 80.0
    assert [item.name for item in order.line_items] == ["Tacos", "Agua"]
    assert order.line_items[1].description == "Jamaica"
    assert order.computed_total() == 80.0


def test_missing_service_type_means_dine_in():
    order = schemas.parse_order(order_row(tipo_servicio=None))
    assert order.service_type == ServiceType.DINE_IN


@pytest.mark.parametrize("overrides", [
    {"numero_mesa": None},
    {"estado": "Cancelado"},
    {"tipo_servicio": "llevar", "numero_mesa": None, "telefono": None},
    {"created_at": "ayer"},
])
def test_malformed_order_rows(overrides):
    with pytest.raises(ValidationError):
        schemas.parse_order(order_row(**overrides))


def test_line_item_quantity_must_be_positive():
    with pytest.raises(ValidationError):
        schemas.parse_line_item({"id": 1, "pedido_id": 2, "cantidad": 0, "precio_unitario": 10})


def test_change_event_for_orders():
    event = schemas.parse_change_event(
        {"data": {"table": "pedidos", "type": "update", "record": {"id": 7, "estado": "Listo"}}}
    )
    assert event.order_id == "7"
    assert event.event_type == "UPDATE"
    assert event.status == OrderStatus.READY


def test_line_item_change_event_is_keyed_by_order():
    event = schemas.parse_change_event(
        {"data": {"type": "INSERT", "record": {"id": 99, "pedido_id": 7}}},
        table=schemas.LINE_ITEMS_TABLE
    )
    assert event.order_id == "7"
    assert event.table == schemas.LINE_ITEMS_TABLE
    assert event.status is None


def test_delete_event_reads_old_record():
    event = schemas.parse_change_event(
        {"data": {"table": "detalle_pedidos", "type": "DELETE", "record": None, "old_record": {"pedido_id": 7}}}
    )
    assert event.order_id == "7"
    assert event.event_type == "DELETE"


def test_change_event_without_id():
    with pytest.raises(ValidationError):
        schemas.parse_change_event({"data": {"table": "pedidos", "type": "UPDATE", "record": {}}})


def test_sales_record_accepts_timestamp_dates():
    record = schemas.parse_sales_record({
        "pedido_id": 12,
        "detalle_id": 1,
        "numero_mesa": 3,
        "platillo": "Tacos",
        "cantidad": 2,
        "precio_unitario": 50,
        "fecha": "2024-05-01T00:00:00",
    })
    assert record.business_date == date(2024, 5, 1)
    assert record.line_item_id == "1"


def test_menu_item_defaults_to_active():
    item = schemas.parse_menu_item({"id": 4, "nombre": "Tacos", "precio": 50, "activo": None})
    assert item.active
    assert item.price == 50.0


@pytest.mark.parametrize("module_name, title", [
    ("schemas", "Row Schemas"),
    ("store", "Store Boundary"),
])
def test_boundary_modules_are_documented(module_name, title):
    module = __import__(module_name)
    assert module.__doc__.strip().splitlines()[0] == title
