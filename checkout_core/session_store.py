"""
Key-value store for session credentials and carts.

The checkout core only talks to ``SessionStore``; ``RedisSessionStore`` backs
it with Redis and the Lua scripts in ``atomic_scripts``, ``MemorySessionStore``
keeps everything in process for tests and local runs.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from checkout_core.atomic_scripts import AtomicScripts
from checkout_core.config import Config
from checkout_core.models import CartItem, SessionCredentials, SessionUser
from checkout_core.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

CART_ITEM_EXCLUDE = {"total_price"}


def session_key(session_id: str) -> str:
    """Generate store key for session credentials"""
    return f"session:{session_id}"


def cart_key(cart_id: str) -> str:
    """Generate store key for cart"""
    return f"cart:{cart_id}"


class SessionStore(ABC):
    """Storage contract used by identity and cart code"""

    @abstractmethod
    async def commit_session(self, session_id: str, credentials: SessionCredentials, ttl: int) -> None:
        """Write token, accessToken, refreshToken and user as one atomic step"""

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[SessionCredentials]:
        """Return the committed credentials, or None"""

    @abstractmethod
    async def clear_session(self, session_id: str) -> bool:
        """Remove the session; True if something was removed"""

    @abstractmethod
    async def get_cart_items(self, cart_id: str) -> Optional[Dict[str, CartItem]]:
        """Return cart lines by variant id, or None if the cart does not exist"""

    @abstractmethod
    async def add_item(self, cart_id: str, item: CartItem, max_items: int, max_quantity: int, ttl: int) -> Dict:
        """Add a line or grow an existing one"""

    @abstractmethod
    async def update_quantity(self, cart_id: str, variant_id: str, quantity: int, max_quantity: int, ttl: int) -> Dict:
        """Set a line quantity; zero removes the line"""

    @abstractmethod
    async def remove_item(self, cart_id: str, variant_id: str, ttl: int) -> bool:
        """Remove a line"""

    @abstractmethod
    async def clear_cart(self, cart_id: str) -> bool:
        """Delete the whole cart"""

    @abstractmethod
    async def merge_carts(
        self,
        source_cart_id: str,
        target_cart_id: str,
        conflict_resolution: str,
        max_quantity: int,
        ttl: int
    ) -> Dict:
        """Move every source line into the target cart and delete the source"""

    @abstractmethod
    async def ping(self) -> bool:
        """Health probe"""

    async def close(self) -> None:
        """Release connections; nothing to do for in-process stores"""


class RedisSessionStore(SessionStore):
    """Session store backed by Redis hashes"""

    def __init__(self, redis_client: Optional[RedisClient] = None):
        self.redis = redis_client or get_redis_client()
        self.scripts = AtomicScripts(self.redis)

    async def commit_session(self, session_id: str, credentials: SessionCredentials, ttl: int) -> None:
        await self.scripts.commit_session(
            session_key=session_key(session_id),
            access_token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            user_json=credentials.user.model_dump_json(),
            ttl=ttl
        )

    async def load_session(self, session_id: str) -> Optional[SessionCredentials]:
        data = await self.redis.hgetall(session_key(session_id))
        if not data or "user" not in data:
            return None
        return SessionCredentials(
            access_token=data.get("accessToken") or data.get("token", ""),
            refresh_token=data.get("refreshToken", ""),
            user=SessionUser.model_validate_json(data["user"])
        )

    async def clear_session(self, session_id: str) -> bool:
        return await self.redis.delete(session_key(session_id)) > 0

    async def get_cart_items(self, cart_id: str) -> Optional[Dict[str, CartItem]]:
        key = cart_key(cart_id)
        if not await self.redis.exists(key):
            return None

        items: Dict[str, CartItem] = {}
        for variant_id, item_json in (await self.redis.hgetall(key)).items():
            try:
                items[variant_id] = CartItem.model_validate_json(item_json)
            except ValueError as e:
                # Skip invalid items
                logger.warning(f"Failed to parse cart item {variant_id}: {e}")
        return items

    async def add_item(self, cart_id: str, item: CartItem, max_items: int, max_quantity: int, ttl: int) -> Dict:
        return await self.scripts.add_item(
            cart_key=cart_key(cart_id),
            variant_id=item.variant_id,
            item_json=item.model_dump_json(exclude=CART_ITEM_EXCLUDE),
            max_items=max_items,
            max_quantity=max_quantity,
            ttl=ttl
        )

    async def update_quantity(self, cart_id: str, variant_id: str, quantity: int, max_quantity: int, ttl: int) -> Dict:
        return await self.scripts.update_quantity(
            cart_key=cart_key(cart_id),
            variant_id=variant_id,
            quantity=quantity,
            max_quantity=max_quantity,
            ttl=ttl
        )

    async def remove_item(self, cart_id: str, variant_id: str, ttl: int) -> bool:
        key = cart_key(cart_id)
        if await self.redis.hdel(key, variant_id) == 0:
            return False

        # Refresh TTL if cart still has items, otherwise drop it
        if await self.redis.hlen(key) > 0:
            await self.redis.expire(key, ttl)
        else:
            await self.redis.delete(key)
        return True

    async def clear_cart(self, cart_id: str) -> bool:
        return await self.redis.delete(cart_key(cart_id)) > 0

    async def merge_carts(
        self,
        source_cart_id: str,
        target_cart_id: str,
        conflict_resolution: str,
        max_quantity: int,
        ttl: int
    ) -> Dict:
        return await self.scripts.merge_cart(
            source_key=cart_key(source_cart_id),
            target_key=cart_key(target_cart_id),
            conflict_resolution=conflict_resolution,
            max_quantity=max_quantity,
            ttl=ttl
        )

    async def ping(self) -> bool:
        return await self.redis.ping()

    async def close(self) -> None:
        await self.redis.close()


class MemorySessionStore(SessionStore):
    """
    In-process session store.

    No method awaits between reading and writing, so each call is atomic on
    the event loop just like a Lua script is atomic in Redis. TTLs are
    accepted and ignored.
    """

    def __init__(self):
        self.sessions: Dict[str, Dict[str, str]] = {}
        self.carts: Dict[str, Dict[str, CartItem]] = {}

    async def commit_session(self, session_id: str, credentials: SessionCredentials, ttl: int) -> None:
        self.sessions[session_key(session_id)] = {
            "token": credentials.access_token,
            "accessToken": credentials.access_token,
            "refreshToken": credentials.refresh_token,
            "user": credentials.user.model_dump_json(),
        }

    async def load_session(self, session_id: str) -> Optional[SessionCredentials]:
        data = self.sessions.get(session_key(session_id))
        if not data:
            return None
        return SessionCredentials(
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
            user=SessionUser.model_validate_json(data["user"])
        )

    async def clear_session(self, session_id: str) -> bool:
        return self.sessions.pop(session_key(session_id), None) is not None

    async def get_cart_items(self, cart_id: str) -> Optional[Dict[str, CartItem]]:
        items = self.carts.get(cart_key(cart_id))
        if items is None:
            return None
        return {variant_id: item.model_copy() for variant_id, item in items.items()}

    async def add_item(self, cart_id: str, item: CartItem, max_items: int, max_quantity: int, ttl: int) -> Dict:
        items = self.carts.get(cart_key(cart_id), {})
        existing = items.get(item.variant_id)
        existing_qty = existing.quantity if existing else 0
        new_qty = existing_qty + item.quantity

        if new_qty > max_quantity:
            return {"err": "MAX_QUANTITY_EXCEEDED", "max": max_quantity, "requested": new_qty}
        if existing is None and len(items) >= max_items:
            return {"err": "MAX_ITEMS_EXCEEDED", "max": max_items, "current": len(items)}

        items[item.variant_id] = item.model_copy(update={"quantity": new_qty})
        self.carts[cart_key(cart_id)] = items
        return {"ok": True, "quantity": new_qty, "is_new": existing is None}

    async def update_quantity(self, cart_id: str, variant_id: str, quantity: int, max_quantity: int, ttl: int) -> Dict:
        key = cart_key(cart_id)
        items = self.carts.get(key, {})
        if variant_id not in items:
            return {"err": "PRODUCT_NOT_FOUND"}
        if quantity < 0:
            return {"err": "INVALID_QUANTITY", "quantity": quantity}
        if quantity > max_quantity:
            return {"err": "MAX_QUANTITY_EXCEEDED", "max": max_quantity, "requested": quantity}

        if quantity == 0:
            del items[variant_id]
            if not items:
                self.carts.pop(key, None)
            return {"ok": True, "quantity": 0, "removed": True}

        items[variant_id] = items[variant_id].model_copy(update={"quantity": quantity})
        return {"ok": True, "quantity": quantity, "removed": False}

    async def remove_item(self, cart_id: str, variant_id: str, ttl: int) -> bool:
        key = cart_key(cart_id)
        items = self.carts.get(key, {})
        if items.pop(variant_id, None) is None:
            return False
        if not items:
            self.carts.pop(key, None)
        return True

    async def clear_cart(self, cart_id: str) -> bool:
        return self.carts.pop(cart_key(cart_id), None) is not None

    async def merge_carts(
        self,
        source_cart_id: str,
        target_cart_id: str,
        conflict_resolution: str,
        max_quantity: int,
        ttl: int
    ) -> Dict:
        source = self.carts.get(cart_key(source_cart_id))
        if not source:
            return {"ok": True, "merged": 0, "conflicts": 0, "resolution": conflict_resolution}

        target = self.carts.setdefault(cart_key(target_cart_id), {})
        conflicts = 0
        for variant_id, item in source.items():
            existing = target.get(variant_id)
            if existing is not None:
                conflicts += 1
                if conflict_resolution == "sum":
                    quantity = min(existing.quantity + item.quantity, max_quantity)
                    item = item.model_copy(update={"quantity": quantity})
            target[variant_id] = item

        del self.carts[cart_key(source_cart_id)]
        return {"ok": True, "merged": len(source), "conflicts": conflicts, "resolution": conflict_resolution}

    async def ping(self) -> bool:
        return True


def build_session_store(backend: Optional[str] = None) -> SessionStore:
    """Create the store selected by configuration"""
    backend = backend or Config.SESSION_STORE_BACKEND
    if backend == "memory":
        return MemorySessionStore()
    if backend == "redis":
        return RedisSessionStore()
    raise ValueError(f"Unknown session store backend: {backend}")
