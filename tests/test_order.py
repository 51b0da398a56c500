from datetime import datetime, timezone

import pytest

from errors import ValidationError
from order import LineItem, Order, clean_note, normalize_phone, notification_target, validate_quantity
from order_state import OrderStatus, ServiceType


def test_local_and_prefixed_phone_reach_the_same_target():
    local = normalize_phone("55 1234 5678")
    prefixed = normalize_phone("+52 55-1234-5678")

    assert local == "525512345678"
    assert prefixed == local
    assert notification_target(local) == "+525512345678"


@pytest.mark.parametrize("raw", ["", None, "123", "55123456789", "1 555 123 4567 8", "445512345678"])
def test_invalid_phone_lengths_are_rejected(raw):
    with pytest.raises(ValidationError):
        normalize_phone(raw)


def test_phone_with_other_country_code():
    assert normalize_phone("2025550123", country_code="1") == "12025550123"


@pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True, None])
def test_invalid_quantities(quantity):
    with pytest.raises(ValidationError):
        validate_quantity(quantity)


def test_valid_quantity():
    assert validate_quantity(3) == 3


def test_clean_note():
    assert clean_note("  sin cebolla ") == "sin cebolla"
    assert clean_note("   ") is None
    assert clean_note(None) is None


def test_total_is_derived_from_line_items():
    items = (
        LineItem("1", "9", "1", "Tacos", 2, 50.0),
        LineItem("2", "9", "2", "Agua", 1, 30.0),
        LineItem("3", "9", "3", "Flan", 3, 25.5),
    )
    order = Order(
        order_id="9",
        service_type=ServiceType.DINE_IN,
        status=OrderStatus.UNCONFIRMED,
        created_at=datetime.now(timezone.utc),
        table_number=2,
        line_items=items,
    )

    assert order.computed_total() == 206.5
    assert order.item_count() == 6
    assert order.label == "Mesa 2"
    assert order.is_mutable()
    assert order.find_line_item("2").name == "Agua"


def test_takeout_label_and_lock():
    order = Order(
        order_id="3",
        service_type=ServiceType.TAKEOUT,
        status=OrderStatus.SUBMITTED,
        created_at=datetime.now(timezone.utc),
        customer_phone="525512345678",
    )
    assert order.label == "Para llevar"
    assert order.is_takeout()
    assert not order.is_mutable()
