"""
Wiring of shared clients and per-session checkout components.
"""
import logging
import time
import uuid
from collections import OrderedDict
from typing import Callable, Dict, Optional

from checkout_core.address_resolver import AddressResolver
from checkout_core.cart_reconciler import CartReconciler
from checkout_core.cart_service import CartService
from checkout_core.config import Config
from checkout_core.exceptions import CheckoutSessionNotFoundError
from checkout_core.identity import IdentityCoordinator
from checkout_core.inventory_gate import InventoryGate
from checkout_core.middleware import hash_identifier
from checkout_core.models import CheckoutStage
from checkout_core.orchestrator import CheckoutOrchestrator
from checkout_core.providers import (
    AuthClient,
    FulfillmentClient,
    PaymentClient,
    RegionClient,
    ZipLookupClient
)
from checkout_core.session_store import SessionStore, build_session_store

logger = logging.getLogger(__name__)

# A checkout in one of these stages has nothing left to do
FINISHED_STAGES = (CheckoutStage.COMPLETE, CheckoutStage.EMPTY_CART)


class CheckoutRegistry:
    """
    Holds the store and collaborator clients shared by every checkout, and
    the live orchestrator of each checkout session.

    Stateful components (login, merge, availability, zip lookup) are created
    per session so their in-flight guards only reject overlapping calls of
    the same shopper.

    Live checkouts are kept in least-recently-used order. Finished ones
    (complete or empty cart) and ones untouched for ``idle_ttl`` seconds are
    dropped on the next create or lookup, and at most ``max_checkouts`` are
    held at once.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        auth_client: Optional[AuthClient] = None,
        fulfillment_client: Optional[FulfillmentClient] = None,
        payment_client: Optional[PaymentClient] = None,
        region_client: Optional[RegionClient] = None,
        zip_client: Optional[ZipLookupClient] = None,
        idle_ttl: Optional[int] = None,
        max_checkouts: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store or build_session_store()
        self.cart_service = CartService(self.store)
        self.auth_client = auth_client or AuthClient()
        self.fulfillment_client = fulfillment_client or FulfillmentClient()
        self.payment_client = payment_client or PaymentClient()
        self.region_client = region_client or RegionClient()
        self.zip_client = zip_client or ZipLookupClient()
        self.idle_ttl = idle_ttl or Config.SESSION_TTL_SECONDS
        self.max_checkouts = max_checkouts or Config.MAX_LIVE_CHECKOUTS
        self.clock = clock
        self.checkouts: Dict[str, CheckoutOrchestrator] = OrderedDict()
        self.last_seen: Dict[str, float] = {}

    def create(self, session_id: str, guest_cart_id: str) -> CheckoutOrchestrator:
        """Start a fresh checkout; a previous one for the session is replaced"""
        checkout = CheckoutOrchestrator(
            session_id=session_id,
            guest_cart_id=guest_cart_id,
            cart_service=self.cart_service,
            identity=IdentityCoordinator(self.auth_client, self.store),
            reconciler=CartReconciler(self.cart_service),
            inventory=InventoryGate(self.fulfillment_client),
            address=AddressResolver(self.region_client, self.zip_client),
            payment_client=self.payment_client
        )
        self.evict()
        self.checkouts.pop(session_id, None)
        self.checkouts[session_id] = checkout
        self.last_seen[session_id] = self.clock()
        while len(self.checkouts) > self.max_checkouts:
            self._drop(next(iter(self.checkouts)), "capacity")
        logger.info(f"Checkout created for session {hash_identifier(session_id)}")
        return checkout

    def get(self, session_id: str) -> CheckoutOrchestrator:
        self.evict()
        checkout = self.checkouts.get(session_id)
        if checkout is None:
            raise CheckoutSessionNotFoundError(session_id)
        self.checkouts.move_to_end(session_id)
        self.last_seen[session_id] = self.clock()
        return checkout

    def evict(self) -> int:
        """Drop finished and idle checkouts; returns how many were dropped"""
        cutoff = self.clock() - self.idle_ttl
        stale = [
            (session_id, "finished" if checkout.stage in FINISHED_STAGES else "idle")
            for session_id, checkout in self.checkouts.items()
            if checkout.stage in FINISHED_STAGES or self.last_seen[session_id] <= cutoff
        ]
        for session_id, reason in stale:
            self._drop(session_id, reason)
        return len(stale)

    def _drop(self, session_id: str, reason: str) -> None:
        del self.checkouts[session_id]
        del self.last_seen[session_id]
        logger.info(f"Checkout for session {hash_identifier(session_id)} released ({reason})")

    async def notify_cart_changed(self, cart_id: str) -> int:
        """Invalidate availability of every checkout reading this cart"""
        affected = [c for c in self.checkouts.values() if c.active_cart_id == cart_id]
        for checkout in affected:
            await checkout.cart_changed()
        return len(affected)

    @staticmethod
    def new_session_id() -> str:
        return uuid.uuid4().hex

    async def close(self) -> None:
        for client in (self.auth_client, self.fulfillment_client, self.payment_client,
                       self.region_client, self.zip_client):
            await client.close()
        await self.store.close()
