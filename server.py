"""
Order Server
============
HTTP and WebSocket surface for the order lifecycle.

Each role's screen calls the REST endpoints for actions and may hold a
WebSocket open on /ws/orders to receive its live view.

NO BUSINESS LOGIC - Request parsing, auth and error mapping only.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from auth import Actor, LocalAuthResolver, SupabaseAuthResolver
from change_feed import ChangeFeedConsumer, OrderView, RoleFilter
from config import Config, get_config, validate_configuration
from db import SupabaseStore
from errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransition,
    OrderError,
    OrderLocked,
    OrderNotFound,
    StoreUnavailable,
    ValidationError,
)
from local_store import InMemoryStore
from menu import MenuCatalog
from order_service import OrderService
from order_state import OrderStateMachine
from sales import SalesLedgerProjector
from sms import NotificationClient, OrderNotifier
from store import OrderQuery


logger = logging.getLogger(__name__)


ERROR_STATUS_CODES = {
    ValidationError: 422,
    OrderNotFound: 404,
    AuthorizationError: 403,
    InvalidTransition: 409,
    ConflictError: 409,
    OrderLocked: 423,
    StoreUnavailable: 503,
}

RowId = Union[int, str]


# ============================================================================
# SERVICES
# ============================================================================

@dataclass
class Services:
    """Everything the app needs, built once at startup."""
    store: Any
    orders: OrderService
    menu: MenuCatalog
    projector: SalesLedgerProjector
    notifier: OrderNotifier
    auth: Any
    config: Optional[Config] = None
    sales_consumer: Optional[ChangeFeedConsumer] = None

    async def start(self):
        await self.notifier.start()
        if self.sales_consumer is not None:
            await self.sales_consumer.start()

    async def stop(self):
        if self.sales_consumer is not None:
            await self.sales_consumer.stop()
        await self.notifier.stop()


def build_services(config: Config, store=None, twilio_client=None) -> Services:
    """
    Wire store, catalog, projector, notifier and service from config.

    Args:
        config: Validated configuration
        store: Store override (defaults to in-memory for APP_ENV=local,
            Supabase otherwise)
        twilio_client: Twilio client override
    """
    if store is None:
        store = InMemoryStore() if config.is_local else SupabaseStore.from_config(config.supabase)

    if isinstance(store, SupabaseStore):
        auth = SupabaseAuthResolver(store.client, timeout=store.timeout)
    else:
        auth = LocalAuthResolver()

    notification_client = None
    if config.notifications.enabled:
        notification_client = NotificationClient(
            account_sid=config.notifications.account_sid,
            auth_token=config.notifications.auth_token,
            from_number=config.notifications.from_number,
            channel=config.notifications.channel,
            twilio_client=twilio_client
        )
    notifier = OrderNotifier(notification_client, enabled=config.notifications.enabled)

    menu = MenuCatalog(store)
    projector = SalesLedgerProjector(store, business_timezone=config.restaurant.business_timezone)

    orders = OrderService(
        store,
        menu,
        state_machine=OrderStateMachine(),
        notifier=notifier,
        projector=projector,
        max_conflict_retries=config.restaurant.max_conflict_retries,
        country_code=config.restaurant.phone_country_code
    )

    sales_consumer = None
    if config.features.enable_sales_ledger_consumer:
        sales_consumer = ChangeFeedConsumer(
            store,
            RoleFilter.sales_ledger(timedelta(hours=config.feed.ledger_window_hours)),
            handlers=[projector.handle_order],
            resync_interval=config.feed.resync_interval,
            reconnect_delay=config.feed.reconnect_delay,
            max_reconnect_delay=config.feed.max_reconnect_delay
        )

    return Services(
        store=store,
        orders=orders,
        menu=menu,
        projector=projector,
        notifier=notifier,
        auth=auth,
        config=config,
        sales_consumer=sales_consumer
    )


# ============================================================================
# REQUEST MODELS
# ============================================================================

class CreateOrderRequest(BaseModel):
    service_type: str
    table_number: Optional[int] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    occupants: Optional[int] = None
    note: Optional[str] = None


class AddItemRequest(BaseModel):
    menu_item_id: RowId
    quantity: int
    note: Optional[str] = None


class UpdateItemRequest(BaseModel):
    quantity: int


class TransitionRequest(BaseModel):
    target_status: str


class CartItem(BaseModel):
    menu_item_id: RowId
    quantity: int
    note: Optional[str] = None


class TakeoutRequest(BaseModel):
    customer_name: str
    customer_phone: str
    items: List[CartItem] = Field(default_factory=list)
    note: Optional[str] = None


class MenuItemRequest(BaseModel):
    name: str
    price: float
    description: str = ""
    active: bool = True
    image_url: Optional[str] = None


class MenuItemUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = None
    description: Optional[str] = None
    active: Optional[bool] = None
    image_url: Optional[str] = None


# ============================================================================
# HELPERS
# ============================================================================

def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthorizationError("Missing bearer token")
    return authorization[7:].strip()


def _role_filter(view: str, actor: Actor) -> RoleFilter:
    try:
        return RoleFilter.named(view, owner_id=actor.user_id)
    except ValueError as e:
        raise ValidationError(str(e), field="view")


def _view_payload(view: OrderView) -> Dict[str, Any]:
    return {
        "type": "view",
        "view": view.role_filter.name,
        "orders": [order.to_dict() for order in view.visible_orders()],
        "counts": view.status_counts(),
        "outstanding_total": view.outstanding_total(),
    }


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(services: Services) -> FastAPI:
    """Build the FastAPI app around a Services container."""
    app = FastAPI(title="Restaurant Order Server")
    app.state.services = services

    async def current_actor(
        request: Request,
        authorization: Optional[str] = Header(None)
    ) -> Actor:
        return await request.app.state.services.auth.resolve(_bearer_token(authorization))

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError):
        status_code = ERROR_STATUS_CODES.get(type(exc), 500)

        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.code}: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path}: {exc.code}: {exc.message}")

        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.on_event("startup")
    async def startup_event():
        """Start notification processor and sales ledger consumer."""
        await services.start()
        logger.info("Order server started")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down server...")
        await services.stop()
        logger.info("Server shutdown complete")

    # ------------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        store = services.store
        health = {
            "status": "healthy",
            "store": store.get_stats() if hasattr(store, "get_stats") else {"backend": "memory"},
            "notifications": (
                services.notifier.client.get_stats()
                if services.notifier.client is not None else {"enabled": False}
            ),
            "sales_consumer": (
                services.sales_consumer.get_stats()
                if services.sales_consumer is not None else None
            ),
            "timestamp": datetime.utcnow().isoformat()
        }

        if hasattr(store, "is_healthy") and not store.is_healthy():
            health["status"] = "degraded"

        return health

    if services.config is None or services.config.features.enable_metrics_endpoint:
        @app.get("/metrics")
        async def metrics():
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------------

    @app.post("/orders", status_code=201)
    async def create_order(body: CreateOrderRequest, actor: Actor = Depends(current_actor)):
        order = await services.orders.create(
            body.service_type,
            actor,
            table_number=body.table_number,
            customer_name=body.customer_name,
            customer_phone=body.customer_phone,
            occupants=body.occupants,
            note=body.note
        )
        return order.to_dict()

    @app.get("/orders")
    async def list_orders(
        view: Optional[str] = Query(None),
        actor: Actor = Depends(current_actor)
    ):
        query = _role_filter(view, actor).to_query() if view else OrderQuery()
        orders = await services.orders.list_orders(query)
        return {"orders": [order.to_dict() for order in orders]}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, actor: Actor = Depends(current_actor)):
        order = await services.orders.get_order(order_id)
        return order.to_dict()

    @app.post("/orders/{order_id}/items")
    async def add_item(order_id: str, body: AddItemRequest, actor: Actor = Depends(current_actor)):
        order = await services.orders.add_line_item(
            order_id,
            str(body.menu_item_id),
            body.quantity,
            actor,
            note=body.note
        )
        return order.to_dict()

    @app.patch("/orders/{order_id}/items/{line_item_id}")
    async def update_item(
        order_id: str,
        line_item_id: str,
        body: UpdateItemRequest,
        actor: Actor = Depends(current_actor)
    ):
        order = await services.orders.update_line_item_quantity(order_id, line_item_id, body.quantity, actor)
        return order.to_dict()

    @app.delete("/orders/{order_id}/items/{line_item_id}")
    async def remove_item(order_id: str, line_item_id: str, actor: Actor = Depends(current_actor)):
        order = await services.orders.remove_line_item(order_id, line_item_id, actor)
        return order.to_dict()

    @app.post("/orders/{order_id}/transition")
    async def transition(order_id: str, body: TransitionRequest, actor: Actor = Depends(current_actor)):
        order = await services.orders.transition(order_id, body.target_status, actor)
        return order.to_dict()

    @app.post("/orders/{order_id}/actions/{action}")
    async def perform_action(order_id: str, action: str, actor: Actor = Depends(current_actor)):
        order = await services.orders.perform_action(order_id, action, actor)
        return order.to_dict()

    @app.post("/takeout", status_code=201)
    async def place_takeout(body: TakeoutRequest, actor: Actor = Depends(current_actor)):
        order = await services.orders.place_takeout_order(
            actor,
            body.customer_name,
            body.customer_phone,
            [item.model_dump() for item in body.items],
            note=body.note
        )
        return order.to_dict()

    # ------------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------------

    @app.get("/menu")
    async def list_menu(
        include_inactive: bool = Query(False),
        q: Optional[str] = Query(None),
        actor: Actor = Depends(current_actor)
    ):
        items = await services.menu.list_items(include_inactive=include_inactive, query=q)
        return {"items": [item.to_dict() for item in items]}

    @app.post("/menu", status_code=201)
    async def create_menu_item(body: MenuItemRequest, actor: Actor = Depends(current_actor)):
        item = await services.menu.create_item(
            actor,
            body.name,
            body.price,
            description=body.description,
            active=body.active,
            image_url=body.image_url
        )
        return item.to_dict()

    @app.patch("/menu/{menu_item_id}")
    async def update_menu_item(
        menu_item_id: str,
        body: MenuItemUpdate,
        actor: Actor = Depends(current_actor)
    ):
        item = await services.menu.update_item(actor, menu_item_id, **body.model_dump(exclude_unset=True))
        return item.to_dict()

    @app.delete("/menu/{menu_item_id}", status_code=204)
    async def delete_menu_item(menu_item_id: str, actor: Actor = Depends(current_actor)):
        await services.menu.delete_item(actor, menu_item_id)
        return Response(status_code=204)

    # ------------------------------------------------------------------------
    # Sales history
    # ------------------------------------------------------------------------

    @app.get("/sales")
    async def sales_report(
        date_: Optional[str] = Query(None, alias="date"),
        actor: Actor = Depends(current_actor)
    ):
        if not actor.is_admin():
            raise AuthorizationError(f"Role {actor.role.value} may not read sales history")

        if date_:
            try:
                business_date = date.fromisoformat(date_)
            except ValueError:
                raise ValidationError(f"Invalid date: {date_}", field="date")
        else:
            business_date = services.projector.business_date()

        report = await services.projector.daily_report(business_date)
        return report.to_dict()

    # ------------------------------------------------------------------------
    # Live views
    # ------------------------------------------------------------------------

    @app.websocket("/ws/orders")
    async def orders_feed(websocket: WebSocket, view: str = "kitchen", token: str = ""):
        """
        Push a role's live view.

        The first message is sent after the initial resync; every later
        message follows a processed change.
        """
        try:
            actor = await services.auth.resolve(token)
            role_filter = _role_filter(view, actor)
        except OrderError as e:
            await websocket.close(code=1008, reason=e.message)
            return

        await websocket.accept()

        async def push(order_view: OrderView):
            await websocket.send_json(_view_payload(order_view))

        feed = services.config.feed if services.config is not None else None
        consumer = ChangeFeedConsumer(
            services.store,
            role_filter,
            on_update=push,
            resync_interval=feed.resync_interval if feed else 60.0,
            reconnect_delay=feed.reconnect_delay if feed else 1.0,
            max_reconnect_delay=feed.max_reconnect_delay if feed else 30.0,
            channel_name=f"orders-{role_filter.name}-{id(websocket)}"
        )

        logger.info(f"Live view connected: {role_filter.name} ({actor.role.value})")

        try:
            await consumer.start()
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"Live view disconnected: {role_filter.name}")
        finally:
            await consumer.stop()

    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the order server."""
    config = get_config()

    logging.basicConfig(
        level=config.server.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    validate_configuration()

    app = create_app(build_services(config))

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
