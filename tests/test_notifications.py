import asyncio
from unittest.mock import MagicMock

from twilio.base.exceptions import TwilioRestException

from helpers import CASHIER, KITCHEN, WAITER, build_restaurant, make_twilio, open_table, seed_menu
from order_state import OrderStatus
from sms import NotificationClient, NotificationMessage, NotificationQueue, OrderNotifier


def sent_messages(twilio):
    return [call.kwargs for call in twilio.messages.create.call_args_list]


def test_takeout_customer_is_notified_once_per_milestone():
    async def scenario():
        restaurant = build_restaurant()
        menu = await seed_menu(restaurant.menu)

        order = await restaurant.service.place_takeout_order(
            CASHIER, "Ana", "5512345678", [{"menu_item_id": menu.tacos.menu_item_id, "quantity": 1}]
        )
        ready = await restaurant.service.mark_ready(order.order_id, KITCHEN)

        # Re-delivered side effects must not produce a second text
        restaurant.notifier.order_received(ready)
        restaurant.notifier.order_ready(ready)

        await restaurant.notifications.flush()
        return order, restaurant.twilio

    order, twilio = asyncio.run(scenario())
    messages = sent_messages(twilio)

    assert messages == [
        {
            "body": f"Tu orden #{order.order_id} ha sido recibida y está en preparación.",
            "from_": "+15550001111",
            "to": "+525512345678",
        },
        {
            "body": f"Tu orden #{order.order_id} ya está terminada. Disponible en mostrador.",
            "from_": "+15550001111",
            "to": "+525512345678",
        },
    ]


def test_dine_in_orders_send_nothing():
    async def scenario():
        restaurant = build_restaurant()
        menu = await seed_menu(restaurant.menu)
        order = await open_table(restaurant, [(menu.tacos, 1)])
        await restaurant.service.submit(order.order_id, WAITER)
        await restaurant.service.mark_ready(order.order_id, KITCHEN)
        await restaurant.notifications.flush()
        return restaurant.twilio

    assert asyncio.run(scenario()).messages.create.call_count == 0


def test_failed_send_is_not_retried_and_does_not_fail_transition():
    async def scenario():
        twilio = make_twilio()
        twilio.messages.create.side_effect = TwilioRestException(500, "https://api.twilio.com", "boom", code=20500)
        restaurant = build_restaurant(twilio_client=twilio)
        menu = await seed_menu(restaurant.menu)

        order = await restaurant.service.place_takeout_order(
            CASHIER, "Ana", "5512345678", [{"menu_item_id": menu.agua.menu_item_id, "quantity": 2}]
        )
        await restaurant.notifications.flush()

        resent = restaurant.notifier.order_received(order)
        await restaurant.notifications.flush()
        return order, twilio, restaurant.notifications, resent

    order, twilio, client, resent = asyncio.run(scenario())

    assert order.status == OrderStatus.SUBMITTED
    assert twilio.messages.create.call_count == 1
    assert client.queue.failed_count == 1
    assert resent is False


def test_whatsapp_channel_prefixes_addresses():
    async def scenario():
        twilio = make_twilio()
        client = NotificationClient(from_number="+15550001111", channel="whatsapp", twilio_client=twilio)
        client.send_message("+525512345678", "hola", "m1")
        await client.flush()
        return twilio

    twilio = asyncio.run(scenario())
    twilio.messages.create.assert_called_once_with(
        body="hola", from_="whatsapp:+15550001111", to="whatsapp:+525512345678"
    )


def test_background_processor_sends_and_stop_flushes():
    async def scenario():
        twilio = make_twilio()
        client = NotificationClient(from_number="+15550001111", twilio_client=twilio, processing_interval=0.01)
        await client.start()
        client.send_message("+525512345678", "uno", "m1")
        await asyncio.sleep(0.1)
        client.send_message("+525512345678", "dos", "m2")
        await client.stop()
        return twilio, client

    twilio, client = asyncio.run(scenario())
    assert twilio.messages.create.call_count == 2
    assert client.queue.sent_count == 2
    assert not client.is_running


def test_queue_dedupes_queued_and_sent_ids():
    queue = NotificationQueue(max_size=2)

    assert queue.enqueue(NotificationMessage("+525512345678", "a", "x"))
    assert not queue.enqueue(NotificationMessage("+525512345678", "a", "x"))

    message = queue.dequeue()
    queue.mark_sent(message)
    assert not queue.enqueue(NotificationMessage("+525512345678", "a", "x"))

    assert queue.enqueue(NotificationMessage("+525512345678", "b", "y"))
    assert queue.enqueue(NotificationMessage("+525512345678", "c", "z"))
    assert not queue.enqueue(NotificationMessage("+525512345678", "d", "w"))
    assert queue.dropped_count == 1


def test_disabled_notifier_drops():
    order = MagicMock()
    order.is_takeout.return_value = True
    order.customer_phone = "525512345678"
    order.order_id = "5"

    notifier = OrderNotifier(None, enabled=False)
    assert notifier.order_ready(order) is False
    assert notifier.order_received(order) is False
