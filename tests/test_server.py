import logging
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from config import Config
from server import build_services, create_app


ADMIN = {"Authorization": "Bearer admin:admin-1"}
WAITER = {"Authorization": "Bearer waiter:waiter-1"}
KITCHEN = {"Authorization": "Bearer kitchen:kitchen-1"}
CASHIER = {"Authorization": "Bearer cashier:cashier-1"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("ENABLE_NOTIFICATIONS", "false")
    monkeypatch.setenv("ENABLE_METRICS_ENDPOINT", "true")
    monkeypatch.setenv("ENABLE_SALES_LEDGER_CONSUMER", "true")
    monkeypatch.setenv("FEED_RESYNC_INTERVAL", "0")

    app = create_app(build_services(Config()))
    with TestClient(app) as test_client:
        yield test_client


def create_menu(client):
    tacos = client.post("/menu", json={"name": "Tacos", "price": 50}, headers=ADMIN)
    agua = client.post("/menu", json={"name": "Agua", "price": 30}, headers=ADMIN)
    assert tacos.status_code == 201
    return tacos.json()["menu_item_id"], agua.json()["menu_item_id"]


def open_table(client, items):
    response = client.post("/orders", json={"service_type": "mesa", "table_number": 2}, headers=WAITER)
    assert response.status_code == 201
    order_id = response.json()["order_id"]

    for menu_item_id, quantity in items:
        response = client.post(
            f"/orders/{order_id}/items",
            json={"menu_item_id": menu_item_id, "quantity": quantity},
            headers=WAITER
        )
        assert response.status_code == 200
    return order_id


def test_dine_in_flow_and_sales_report(client):
    tacos, agua = create_menu(client)
    order_id = open_table(client, [(tacos, 2), (agua, 1)])

    assert client.post(f"/orders/{order_id}/actions/submit", headers=WAITER).status_code == 200
    assert client.post(f"/orders/{order_id}/actions/mark_ready", headers=KITCHEN).json()["total"] == 130.0
    assert client.post(
        f"/orders/{order_id}/transition", json={"target_status": "Pendiente de cobro"}, headers=WAITER
    ).status_code == 200
    delivered = client.post(f"/orders/{order_id}/actions/confirm_payment", headers=CASHIER)
    assert delivered.json()["status"] == "Entregado"

    closed = client.post(f"/orders/{order_id}/actions/close", headers=WAITER)
    assert closed.json()["status"] == "Completada"

    report = client.get("/sales", headers=ADMIN).json()
    assert report["total_sales"] == 130.0
    assert report["order_count"] == 1
    assert len(report["records"]) == 2

    assert client.get("/sales", headers=WAITER).status_code == 403
    assert client.get("/sales?date=ayer", headers=ADMIN).status_code == 422


def test_error_status_codes(client):
    tacos, _ = create_menu(client)
    order_id = open_table(client, [(tacos, 1)])

    assert client.get("/orders/999", headers=WAITER).status_code == 404
    assert client.get("/orders").status_code == 403
    assert client.post("/menu", json={"name": "Pozole", "price": 90}, headers=WAITER).status_code == 403

    bad_quantity = client.post(
        f"/orders/{order_id}/items", json={"menu_item_id": tacos, "quantity": 0}, headers=WAITER
    )
    assert bad_quantity.status_code == 422
    assert bad_quantity.json()["error"] == "validation_error"

    early = client.post(f"/orders/{order_id}/actions/mark_ready", headers=KITCHEN)
    assert early.status_code == 409
    assert early.json()["error"] == "invalid_transition"

    assert client.post(f"/orders/{order_id}/actions/submit", headers=WAITER).status_code == 200
    assert client.post(f"/orders/{order_id}/actions/submit", headers=WAITER).status_code == 409

    locked = client.post(
        f"/orders/{order_id}/items", json={"menu_item_id": tacos, "quantity": 1}, headers=WAITER
    )
    assert locked.status_code == 423

    assert client.post(f"/orders/{order_id}/actions/mark_ready", headers=WAITER).status_code == 403
    assert client.post(f"/orders/{order_id}/actions/dance", headers=WAITER).status_code == 422


def test_takeout_and_filtered_lists(client):
    tacos, agua = create_menu(client)

    response = client.post(
        "/takeout",
        json={
            "customer_name": "Ana",
            "customer_phone": "55 1234 5678",
            "items": [{"menu_item_id": tacos, "quantity": 1}, {"menu_item_id": agua, "quantity": 1}],
        },
        headers=CASHIER
    )
    assert response.status_code == 201
    order = response.json()
    assert order["status"] == "Enviado"
    assert order["customer_phone"] == "525512345678"

    kitchen = client.get("/orders?view=kitchen", headers=KITCHEN).json()["orders"]
    assert [o["order_id"] for o in kitchen] == [order["order_id"]]
    assert client.get("/orders?view=cashier", headers=CASHIER).json()["orders"] == []
    assert client.get("/orders?view=bar", headers=CASHIER).status_code == 422


def test_health_and_metrics(client):
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["notifications"] == {"enabled": False}
    assert health["sales_consumer"]["view"] == "sales_ledger"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "order_transitions_total" in metrics.text


def test_live_view_websocket(client):
    tacos, _ = create_menu(client)
    order_id = open_table(client, [(tacos, 1)])
    client.post(f"/orders/{order_id}/actions/submit", headers=WAITER)

    with client.websocket_connect("/ws/orders?view=kitchen&token=kitchen:kitchen-1") as websocket:
        message = websocket.receive_json()

    assert message["type"] == "view"
    assert message["view"] == "kitchen"
    assert [o["order_id"] for o in message["orders"]] == [order_id]
    assert message["counts"] == {"Enviado": 1}


def test_live_view_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws/orders?view=kitchen&token=nobody") as websocket:
            websocket.receive_json()
    assert excinfo.value.code == 1008


def test_main_validates_configuration_before_serving(monkeypatch, caplog):
    import config
    import server

    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("ENABLE_NOTIFICATIONS", "false")
    monkeypatch.setattr(config, "_config", None)
    run = MagicMock()
    monkeypatch.setattr(server.uvicorn, "run", run)

    with caplog.at_level(logging.INFO, logger="config"):
        server.main()

    assert "Configuration validation complete" in caplog.text
    run.assert_called_once()
    assert run.call_args.kwargs["port"] == config.get_config().server.port
