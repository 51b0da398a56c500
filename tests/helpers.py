import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

from auth import Actor, Role
from local_store import InMemoryStore
from menu import MenuCatalog
from order_service import OrderService
from sales import SalesLedgerProjector
from sms import NotificationClient, OrderNotifier


ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)
WAITER = Actor(user_id="waiter-1", role=Role.WAITER)
OTHER_WAITER = Actor(user_id="waiter-2", role=Role.WAITER)
KITCHEN = Actor(user_id="kitchen-1", role=Role.KITCHEN)
CASHIER = Actor(user_id="cashier-1", role=Role.CASHIER)


def make_twilio():
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM0001")
    return client


def build_restaurant(twilio_client=None, store=None, with_projector=True, max_conflict_retries=3):
    store = store or InMemoryStore()
    menu = MenuCatalog(store)
    projector = SalesLedgerProjector(store)
    twilio_client = twilio_client or make_twilio()
    client = NotificationClient(from_number="+15550001111", twilio_client=twilio_client)
    notifier = OrderNotifier(client)
    service = OrderService(
        store,
        menu,
        notifier=notifier,
        projector=projector if with_projector else None,
        max_conflict_retries=max_conflict_retries
    )
    return SimpleNamespace(
        store=store,
        menu=menu,
        projector=projector,
        twilio=twilio_client,
        notifications=client,
        notifier=notifier,
        service=service
    )


async def seed_menu(menu):
    """Tacos 50.00, Agua 30.00, Flan 25.50 (inactive)."""
    tacos = await menu.create_item(ADMIN, "Tacos", 50, description="Al pastor")
    agua = await menu.create_item(ADMIN, "Agua", 30)
    flan = await menu.create_item(ADMIN, "Flan", 25.5, active=False)
    return SimpleNamespace(tacos=tacos, agua=agua, flan=flan)


async def open_table(restaurant, items, actor=WAITER, table_number=4):
    """Create a dine-in order and add (menu_item, quantity) pairs."""
    order = await restaurant.service.create("mesa", actor, table_number=table_number)
    for menu_item, quantity in items:
        order = await restaurant.service.add_line_item(
            order.order_id, menu_item.menu_item_id, quantity, actor
        )
    return order


async def wait_until(predicate, timeout=2.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
