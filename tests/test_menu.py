import asyncio

import pytest

from errors import AuthorizationError, OrderNotFound, ValidationError
from helpers import ADMIN, CASHIER, WAITER, build_restaurant, seed_menu


def run(coro):
    return asyncio.run(coro)


def test_only_admin_writes_the_catalog():
    async def scenario():
        restaurant = build_restaurant()
        menu = await seed_menu(restaurant.menu)

        with pytest.raises(AuthorizationError):
            await restaurant.menu.create_item(WAITER, "Pozole", 90)
        with pytest.raises(AuthorizationError):
            await restaurant.menu.update_item(CASHIER, menu.tacos.menu_item_id, price=1)
        with pytest.raises(AuthorizationError):
            await restaurant.menu.delete_item(WAITER, menu.tacos.menu_item_id)

        return await restaurant.menu.list_items(include_inactive=True)

    items = run(scenario())
    assert [item.name for item in items] == ["Tacos", "Agua", "Flan"]
    assert items[0].price == 50.0


@pytest.mark.parametrize("name, price", [
    ("", 10),
    ("   ", 10),
    ("x" * 201, 10),
    ("Pozole", 0),
    ("Pozole", -5),
    ("Pozole", "gratis"),
    ("Pozole", None),
    ("Pozole", True),
    ("Pozole", 100000.01),
])
def test_invalid_menu_items(name, price):
    async def scenario():
        restaurant = build_restaurant()
        with pytest.raises(ValidationError):
            await restaurant.menu.create_item(ADMIN, name, price)
        return restaurant.store.menu_items

    assert run(scenario()) == {}


def test_prices_are_rounded_to_cents():
    async def scenario():
        restaurant = build_restaurant()
        return await restaurant.menu.create_item(ADMIN, " Pozole ", "89.999")

    item = run(scenario())
    assert item.name == "Pozole"
    assert item.price == 90.0


def test_inactive_items_are_listed_only_on_request_and_cannot_be_ordered():
    async def scenario():
        restaurant = build_restaurant()
        menu = await seed_menu(restaurant.menu)

        active = await restaurant.menu.list_items()
        await restaurant.menu.set_active(ADMIN, menu.tacos.menu_item_id, False)
        after = await restaurant.menu.list_items()

        with pytest.raises(ValidationError):
            await restaurant.menu.get_orderable_item(menu.tacos.menu_item_id)
        with pytest.raises(ValidationError):
            await restaurant.menu.get_orderable_item("404")

        return active, after

    active, after = run(scenario())
    assert [item.name for item in active] == ["Tacos", "Agua"]
    assert [item.name for item in after] == ["Agua"]


def test_update_and_delete():
    async def scenario():
        restaurant = build_restaurant()
        menu = await seed_menu(restaurant.menu)

        updated = await restaurant.menu.update_item(
            ADMIN, menu.agua.menu_item_id, price=35, description="Horchata"
        )
        with pytest.raises(ValidationError):
            await restaurant.menu.update_item(ADMIN, menu.agua.menu_item_id, color="red")

        await restaurant.menu.delete_item(ADMIN, menu.flan.menu_item_id)
        with pytest.raises(OrderNotFound):
            await restaurant.menu.get_item(menu.flan.menu_item_id)
        with pytest.raises(OrderNotFound):
            await restaurant.menu.delete_item(ADMIN, menu.flan.menu_item_id)

        return updated

    updated = run(scenario())
    assert updated.price == 35.0
    assert updated.description == "Horchata"


def test_search():
    async def scenario():
        restaurant = build_restaurant()
        await seed_menu(restaurant.menu)
        return (
            await restaurant.menu.list_items(query="pastor"),
            await restaurant.menu.list_items(query="AGUA"),
            await restaurant.menu.list_items(query="pizza"),
        )

    by_description, by_name, nothing = run(scenario())
    assert [item.name for item in by_description] == ["Tacos"]
    assert [item.name for item in by_name] == ["Agua"]
    assert nothing == []
