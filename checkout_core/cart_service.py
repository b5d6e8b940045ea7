"""
Guest and user carts on top of the session store.

Quantity and line limits are checked here for a fast rejection and again
inside the store's atomic writes, which have the final word.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from checkout_core.config import Config
from checkout_core.exceptions import (
    CartNotFoundError,
    LimitExceededError,
    ProductNotFoundError,
    ValidationError
)
from checkout_core.middleware import hash_identifier
from checkout_core.models import Cart, CartItem, SessionUser
from checkout_core.session_store import SessionStore

logger = logging.getLogger(__name__)

CONFLICT_RESOLUTIONS = ["sum", "last-write-wins"]


def user_cart_id(user: SessionUser) -> str:
    """Cart id of an authenticated user's saved cart"""
    return f"user:{user.id}"


def cart_ttl(is_guest: bool) -> int:
    return Config.GUEST_CART_TTL_SECONDS if is_guest else Config.CART_TTL_SECONDS


def _store_error(reply: Dict, variant_id: str) -> Optional[Exception]:
    code = reply.get("err")
    if not code:
        return None
    if code == "PRODUCT_NOT_FOUND":
        return ProductNotFoundError(variant_id)
    if code == "MAX_QUANTITY_EXCEEDED":
        cap = reply.get("max", Config.MAX_QUANTITY_PER_ITEM)
        return LimitExceededError(f"Quantity exceeds maximum {cap}")
    if code == "MAX_ITEMS_EXCEEDED":
        limit = reply.get("max", Config.MAX_ITEMS_PER_CART)
        return LimitExceededError(f"Cart exceeds maximum items {limit}")
    return ValidationError(f"Cart update rejected: {code}")


class CartService:
    """Reads and edits carts by id; ``user:{id}`` carts outlive guest ones"""

    def __init__(self, store: SessionStore):
        self.store = store

    @staticmethod
    def _within_cap(quantity: int) -> None:
        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}")

    async def add_item(
        self,
        cart_id: str,
        variant_id: str,
        quantity: int,
        price: Decimal,
        product_name: str = "",
        fulfillment_variant_id: Optional[str] = None,
        source: Optional[str] = None,
        availability_regions: Optional[List[str]] = None,
        is_guest: bool = False
    ) -> Dict:
        """
        Add ``quantity`` of a variant, growing the line if it is already in the cart.

        Returns the store reply: the line's new ``quantity`` and ``is_new``.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")
        self._within_cap(quantity)

        line = CartItem(
            variant_id=variant_id,
            fulfillment_variant_id=fulfillment_variant_id,
            quantity=quantity,
            product_name=product_name,
            unit_price=price,
            source=source,
            availability_regions=availability_regions
        )
        reply = await self.store.add_item(
            cart_id, line,
            max_items=Config.MAX_ITEMS_PER_CART,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=cart_ttl(is_guest)
        )
        error = _store_error(reply, variant_id)
        if error:
            raise error
        return reply

    async def update_quantity(self, cart_id: str, variant_id: str, quantity: int, is_guest: bool = False) -> Dict:
        """Set a line quantity; zero removes the line"""
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative")
        self._within_cap(quantity)

        reply = await self.store.update_quantity(
            cart_id, variant_id, quantity,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=cart_ttl(is_guest)
        )
        error = _store_error(reply, variant_id)
        if error:
            raise error
        return reply

    async def remove_item(self, cart_id: str, variant_id: str, is_guest: bool = False) -> bool:
        return await self.store.remove_item(cart_id, variant_id, ttl=cart_ttl(is_guest))

    async def get_cart(self, cart_id: str) -> Cart:
        items = await self.store.get_cart_items(cart_id)
        if items is None:
            raise CartNotFoundError(cart_id)
        return Cart(cart_id=cart_id, items=items)

    async def get_cart_or_empty(self, cart_id: str) -> Cart:
        """Like get_cart, but a cart that was never written reads as empty"""
        try:
            return await self.get_cart(cart_id)
        except CartNotFoundError:
            return Cart(cart_id=cart_id)

    async def clear_cart(self, cart_id: str) -> bool:
        return await self.store.clear_cart(cart_id)

    async def merge_carts(self, source_cart_id: str, target_cart_id: str, conflict_resolution: str = "sum") -> Dict:
        """
        Fold a guest cart into a user cart in one atomic store write.

        With ``sum`` a variant present in both carts ends with the combined
        quantity (capped at MAX_QUANTITY_PER_ITEM); with ``last-write-wins``
        the guest line replaces the saved one. The guest cart is deleted and
        the user cart gets the long TTL.
        """
        if conflict_resolution not in CONFLICT_RESOLUTIONS:
            raise ValidationError("conflict_resolution must be 'sum' or 'last-write-wins'")

        reply = await self.store.merge_carts(
            source_cart_id,
            target_cart_id,
            conflict_resolution,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=cart_ttl(is_guest=False)
        )
        logger.info(
            f"Cart {hash_identifier(source_cart_id)} folded into {hash_identifier(target_cart_id)} "
            f"({conflict_resolution}): {reply.get('merged', 0)} lines, {reply.get('conflicts', 0)} shared variants"
        )
        return reply
