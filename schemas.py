"""
Row Schemas
===========
Row schemas for the store tables (pedidos, detalle_pedidos, platillos,
ventas_diarias).

Every row crossing the store boundary is parsed here; failures become
ValidationError.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from errors import ValidationError
from menu import MenuItem
from order import LineItem, Order
from order_state import OrderStatus, ServiceType
from sales import SalesRecord
from store import ChangeEvent, NewOrder


ORDERS_TABLE = "pedidos"
LINE_ITEMS_TABLE = "detalle_pedidos"
MENU_TABLE = "platillos"
SALES_TABLE = "ventas_diarias"

RowId = Union[int, str]


class _Row(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MenuJoinRow(_Row):
    """Embedded platillos(nombre, descripcion) join on legacy line-item reads."""
    name: Optional[str] = Field(default=None, alias="nombre")
    description: Optional[str] = Field(default=None, alias="descripcion")


class LineItemRow(_Row):
    id: RowId
    order_id: RowId = Field(alias="pedido_id")
    menu_item_id: Optional[RowId] = Field(default=None, alias="platillo_id")
    name: Optional[str] = Field(default=None, alias="nombre")
    description: Optional[str] = Field(default=None, alias="descripcion")
    quantity: int = Field(alias="cantidad", ge=1)
    unit_price: float = Field(alias="precio_unitario", ge=0)
    note: Optional[str] = Field(default=None, alias="nota")
    menu_item: Optional[MenuJoinRow] = Field(default=None, alias="platillos")


class OrderRow(_Row):
    id: RowId
    service_type: Optional[ServiceType] = Field(default=None, alias="tipo_servicio")
    status: OrderStatus = Field(alias="estado")
    created_at: datetime
    owner_id: Optional[str] = Field(default=None, alias="id_mesero")
    table_number: Optional[int] = Field(default=None, alias="numero_mesa")
    customer_name: Optional[str] = Field(default=None, alias="nombre_cliente")
    customer_phone: Optional[str] = Field(default=None, alias="telefono")
    occupants: Optional[int] = Field(default=None, alias="ocupantes")
    note: Optional[str] = Field(default=None, alias="nota")
    total: Optional[float] = None
    line_items: List[LineItemRow] = Field(default_factory=list, alias="detalle_pedidos")


class MenuItemRow(_Row):
    id: RowId
    name: str = Field(alias="nombre", min_length=1)
    description: Optional[str] = Field(default=None, alias="descripcion")
    price: float = Field(alias="precio", ge=0)
    active: Optional[bool] = Field(default=True, alias="activo")
    image_url: Optional[str] = Field(default=None, alias="imagen_url")


class SalesRecordRow(_Row):
    order_id: RowId = Field(alias="pedido_id")
    line_item_id: Optional[RowId] = Field(default=None, alias="detalle_id")
    table_number: Optional[int] = Field(default=None, alias="numero_mesa")
    item_name: str = Field(alias="platillo")
    description: Optional[str] = Field(default=None, alias="descripcion")
    quantity: int = Field(alias="cantidad", ge=1)
    unit_price: float = Field(alias="precio_unitario", ge=0)
    business_date: Union[date, datetime] = Field(alias="fecha")


def _validate(model, row: Any, what: str):
    try:
        return model.model_validate(row)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed {what} row: {e.error_count()} errors", detail=str(e))


def _id(value: Optional[RowId]) -> Optional[str]:
    return None if value is None else str(value)


# ============================================================================
# PARSERS
# ============================================================================

def parse_line_item(row: Dict[str, Any]) -> LineItem:
    parsed = _validate(LineItemRow, row, LINE_ITEMS_TABLE)
    return _line_item_from(parsed)


def _line_item_from(parsed: LineItemRow) -> LineItem:
    joined = parsed.menu_item or MenuJoinRow()
    return LineItem(
        line_item_id=_id(parsed.id),
        order_id=str(parsed.order_id),
        menu_item_id=_id(parsed.menu_item_id),
        name=parsed.name or joined.name or "Desconocido",
        description=parsed.description or joined.description or "",
        quantity=parsed.quantity,
        unit_price=round(parsed.unit_price, 2),
        note=parsed.note or None
    )


def parse_order(row: Dict[str, Any]) -> Order:
    """Parse a pedidos row (optionally with embedded detalle_pedidos)."""
    parsed = _validate(OrderRow, row, ORDERS_TABLE)

    # Rows written by the table screens predate tipo_servicio
    service_type = parsed.service_type or ServiceType.DINE_IN

    if service_type == ServiceType.DINE_IN and parsed.table_number is None:
        raise ValidationError("Dine-in order row without numero_mesa", order_id=str(parsed.id))

    if service_type == ServiceType.TAKEOUT and not parsed.customer_phone:
        raise ValidationError("Takeout order row without telefono", order_id=str(parsed.id))

    return Order(
        order_id=str(parsed.id),
        service_type=service_type,
        status=parsed.status,
        created_at=parsed.created_at,
        owner_id=parsed.owner_id,
        table_number=parsed.table_number,
        customer_name=parsed.customer_name,
        customer_phone=parsed.customer_phone,
        occupants=parsed.occupants,
        note=parsed.note,
        total=round(parsed.total or 0.0, 2),
        line_items=tuple(_line_item_from(item) for item in parsed.line_items)
    )


def parse_menu_item(row: Dict[str, Any]) -> MenuItem:
    parsed = _validate(MenuItemRow, row, MENU_TABLE)
    return MenuItem(
        menu_item_id=str(parsed.id),
        name=parsed.name,
        price=round(parsed.price, 2),
        description=parsed.description or "",
        active=parsed.active is not False,
        image_url=parsed.image_url
    )


def parse_sales_record(row: Dict[str, Any]) -> SalesRecord:
    parsed = _validate(SalesRecordRow, row, SALES_TABLE)
    business_date = parsed.business_date
    if isinstance(business_date, datetime):
        business_date = business_date.date()

    return SalesRecord(
        order_id=str(parsed.order_id),
        line_item_id=_id(parsed.line_item_id),
        table_number=parsed.table_number,
        item_name=parsed.item_name,
        description=parsed.description or "",
        quantity=parsed.quantity,
        unit_price=round(parsed.unit_price, 2),
        business_date=business_date
    )


def parse_change_event(payload: Dict[str, Any], table: str = ORDERS_TABLE) -> ChangeEvent:
    """
    Parse a realtime postgres-changes payload.

    Only the order id is trusted; consumers refetch the full order.
    """
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    event_type = str(data.get("type") or data.get("eventType") or "UPDATE").upper()
    table = data.get("table") or table

    record = data.get("record") or data.get("new") or {}
    if not record:
        record = data.get("old_record") or data.get("old") or {}

    key = "id" if table == ORDERS_TABLE else "pedido_id"
    order_id = record.get(key)
    if order_id is None:
        raise ValidationError(f"Change event on {table} without {key}")

    status = None
    if table == ORDERS_TABLE and record.get("estado") is not None:
        try:
            status = OrderStatus(record["estado"])
        except ValueError:
            raise ValidationError(f"Change event with unknown estado: {record['estado']}")

    return ChangeEvent(
        order_id=str(order_id),
        event_type=event_type,
        table=table,
        status=status
    )


# ============================================================================
# SERIALIZERS
# ============================================================================

def new_order_to_row(new_order: NewOrder) -> Dict[str, Any]:
    return {
        "tipo_servicio": new_order.service_type.value,
        "estado": new_order.status.value,
        "id_mesero": new_order.owner_id,
        "numero_mesa": new_order.table_number,
        "nombre_cliente": new_order.customer_name,
        "telefono": new_order.customer_phone,
        "ocupantes": new_order.occupants,
        "nota": new_order.note,
        "total": new_order.total,
    }


def line_item_to_row(item: LineItem) -> Dict[str, Any]:
    row = {
        "pedido_id": item.order_id,
        "platillo_id": item.menu_item_id,
        "nombre": item.name,
        "descripcion": item.description,
        "cantidad": item.quantity,
        "precio_unitario": item.unit_price,
        "subtotal": item.subtotal,
        "nota": item.note,
    }
    if item.line_item_id is not None:
        row["id"] = item.line_item_id
    return row


def menu_item_to_row(item: MenuItem) -> Dict[str, Any]:
    return {
        "nombre": item.name,
        "descripcion": item.description,
        "precio": item.price,
        "activo": item.active,
        "imagen_url": item.image_url,
    }


def sales_record_to_row(record: SalesRecord) -> Dict[str, Any]:
    return {
        "pedido_id": record.order_id,
        "detalle_id": record.line_item_id,
        "numero_mesa": record.table_number,
        "platillo": record.item_name,
        "descripcion": record.description,
        "cantidad": record.quantity,
        "precio_unitario": record.unit_price,
        "fecha": record.business_date.isoformat(),
    }
