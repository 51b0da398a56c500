"""
Menu Catalog
============
Admin-managed catalog of dishes.

Rules:
- Only admins write the catalog; every role reads it
- Price changes never reach existing line items (they keep their snapshot)
- Inactive items stay readable but cannot be added to new orders
"""

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Optional

from prometheus_client import Counter

from auth import Actor
from errors import AuthorizationError, OrderNotFound, ValidationError


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

MAX_ITEM_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 500
MIN_ITEM_PRICE = 0.01
MAX_ITEM_PRICE = 100000.00


# ============================================================================
# METRICS
# ============================================================================

menu_writes = Counter(
    'menu_writes_total',
    'Menu catalog writes',
    ['operation']
)


# ============================================================================
# MENU ITEM
# ============================================================================

@dataclass(frozen=True)
class MenuItem:
    """Catalog entry."""
    menu_item_id: Optional[str]
    name: str
    price: float
    description: str = ""
    active: bool = True
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def matches_query(self, query: str) -> bool:
        """
        Check if a search query matches this item.

        Matches against: name, description (case-insensitive, contains)
        """
        query_lower = query.lower().strip()
        if not query_lower:
            return True

        return (
            query_lower in self.name.lower()
            or query_lower in (self.description or "").lower()
        )


# ============================================================================
# CATALOG
# ============================================================================

class MenuCatalog:
    """
    Read/write access to the menu through the store.

    Reads are uncached: the catalog is small and stale reads are harmless,
    but there is nothing to gain from holding copies either.
    """

    def __init__(self, store):
        self.store = store

    async def list_items(
        self,
        include_inactive: bool = False,
        query: Optional[str] = None
    ) -> List[MenuItem]:
        """
        List menu items.

        Args:
            include_inactive: Include deactivated items (admin views)
            query: Optional search text

        Returns:
            Items ordered by id
        """
        items = await self.store.list_menu_items(include_inactive=include_inactive)

        if query:
            items = [item for item in items if item.matches_query(query)]

        return items

    async def get_item(self, menu_item_id: str) -> MenuItem:
        """
        Get a menu item.

        Raises:
            OrderNotFound: If no item has that id
        """
        item = await self.store.get_menu_item(menu_item_id)
        if item is None:
            raise OrderNotFound(f"Menu item not found: {menu_item_id}", menu_item_id=menu_item_id)
        return item

    async def get_orderable_item(self, menu_item_id: str) -> MenuItem:
        """
        Get a menu item that can be added to an order.

        Raises:
            ValidationError: Unknown or inactive item
        """
        item = await self.store.get_menu_item(menu_item_id)

        if item is None:
            raise ValidationError(f"Unknown menu item: {menu_item_id}", field="menu_item_id")

        if not item.active:
            raise ValidationError(f"Menu item is not available: {item.name}", field="menu_item_id")

        return item

    async def create_item(
        self,
        actor: Actor,
        name: str,
        price: Any,
        description: str = "",
        active: bool = True,
        image_url: Optional[str] = None
    ) -> MenuItem:
        """Create a menu item (admin only)."""
        self._require_admin(actor)

        item = MenuItem(
            menu_item_id=None,
            name=self._validate_name(name),
            price=self._validate_price(price),
            description=self._validate_description(description),
            active=bool(active),
            image_url=image_url or None
        )

        saved = await self.store.save_menu_item(item)
        menu_writes.labels(operation='create').inc()

        logger.info(
            f"Menu item created: {saved.name} (${saved.price:.2f})",
            extra={"menu_item_id": saved.menu_item_id, "actor_role": actor.role.value}
        )

        return saved

    async def update_item(self, actor: Actor, menu_item_id: str, **changes: Any) -> MenuItem:
        """
        Update fields of a menu item (admin only).

        Args:
            actor: Caller
            menu_item_id: Item to change
            **changes: Any of name, price, description, active, image_url

        Raises:
            ValidationError: Unknown field or invalid value
        """
        self._require_admin(actor)

        allowed = {"name", "price", "description", "active", "image_url"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown menu fields: {', '.join(sorted(unknown))}")

        current = await self.get_item(menu_item_id)

        if "name" in changes:
            changes["name"] = self._validate_name(changes["name"])
        if "price" in changes:
            changes["price"] = self._validate_price(changes["price"])
        if "description" in changes:
            changes["description"] = self._validate_description(changes["description"])
        if "active" in changes:
            changes["active"] = bool(changes["active"])

        updated = await self.store.save_menu_item(replace(current, **changes))
        menu_writes.labels(operation='update').inc()

        if "price" in changes and changes["price"] != current.price:
            logger.info(
                f"Menu price changed: {current.name} "
                f"${current.price:.2f} -> ${updated.price:.2f}",
                extra={"menu_item_id": menu_item_id}
            )

        return updated

    async def set_active(self, actor: Actor, menu_item_id: str, active: bool) -> MenuItem:
        """Activate or deactivate a menu item (admin only)."""
        return await self.update_item(actor, menu_item_id, active=active)

    async def delete_item(self, actor: Actor, menu_item_id: str):
        """
        Delete a menu item (admin only).

        Existing line items keep their name and price snapshot.
        """
        self._require_admin(actor)
        await self.get_item(menu_item_id)

        await self.store.delete_menu_item(menu_item_id)
        menu_writes.labels(operation='delete').inc()

        logger.info(f"Menu item deleted: {menu_item_id}")

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def _require_admin(self, actor: Actor):
        if not actor.is_admin():
            raise AuthorizationError(
                f"Role {actor.role.value} may not edit the menu"
            )

    def _validate_name(self, name: Any) -> str:
        name = str(name or "").strip()
        if not name:
            raise ValidationError("Menu item name required", field="name")
        if len(name) > MAX_ITEM_NAME_LENGTH:
            raise ValidationError("Menu item name too long", field="name")
        return name

    def _validate_description(self, description: Any) -> str:
        description = str(description or "").strip()
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError("Menu item description too long", field="description")
        return description

    def _validate_price(self, price: Any) -> float:
        """Normalize price to float (cents)."""
        if isinstance(price, bool):
            raise ValidationError(f"Invalid price: {price!r}", field="price")
        try:
            p = round(float(price), 2)
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid price: {price!r}", field="price")

        if not MIN_ITEM_PRICE <= p <= MAX_ITEM_PRICE:
            raise ValidationError(f"Price out of range: {p}", field="price")

        return p
