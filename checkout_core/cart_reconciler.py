"""
Guest/user cart reconciliation after a mid-checkout login.
"""
import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from checkout_core.cart_service import CartService
from checkout_core.config import Config
from checkout_core.exceptions import CheckoutException, ErrorKind, OperationInProgressError
from checkout_core.models import Cart, CartMergeData
from checkout_core.operations import Operation

logger = logging.getLogger(__name__)


class MergeState(str, Enum):
    IDLE = "idle"
    DETECTED = "detected"
    MERGING = "merging"
    RESOLVED = "resolved"


class MergeOutcome(BaseModel):
    state: MergeState
    merge_data: Optional[CartMergeData] = None
    cart: Optional[Cart] = None
    message: Optional[str] = None
    error: Optional[ErrorKind] = None


class CartReconciler:
    """
    Resolves a guest cart against the user's saved cart.

    Idle -> Detected -> Merging -> Resolved. Confirm and cancel only act in
    Detected; a failed store call goes back to Detected with the error so the
    shopper can retry, and neither cart is touched.
    """

    def __init__(self, cart_service: CartService, conflict_resolution: Optional[str] = None):
        self.cart_service = cart_service
        self.conflict_resolution = conflict_resolution or Config.MERGE_CONFLICT_RESOLUTION
        self.operation = Operation("cart_merge")
        self.state = MergeState.IDLE
        self.merge_data: Optional[CartMergeData] = None
        self.guest_cart_id: Optional[str] = None
        self.user_cart_id: Optional[str] = None

    @property
    def loading(self) -> bool:
        return self.operation.in_flight

    def _outcome(self, cart: Optional[Cart] = None, message: Optional[str] = None,
                 error: Optional[ErrorKind] = None) -> MergeOutcome:
        return MergeOutcome(
            state=self.state,
            merge_data=self.merge_data,
            cart=cart,
            message=message,
            error=error
        )

    def _resolve(self) -> None:
        self.state = MergeState.RESOLVED
        self.merge_data = None

    async def detect(self, guest_cart_id: str, user_cart_id: str) -> MergeOutcome:
        """
        Compare the guest cart with the user's saved cart.

        Both non-empty enters Detected and returns the prompt counts. An empty
        guest cart resolves immediately; a guest cart with an empty saved cart
        is adopted into the saved cart without asking.
        """
        self.guest_cart_id = guest_cart_id
        self.user_cart_id = user_cart_id

        try:
            guest_cart = await self.cart_service.get_cart_or_empty(guest_cart_id)
            if guest_cart.item_count == 0:
                self._resolve()
                return self._outcome(cart=await self.cart_service.get_cart_or_empty(user_cart_id))

            user_cart = await self.cart_service.get_cart_or_empty(user_cart_id)
            if user_cart.item_count == 0:
                await self.cart_service.merge_carts(guest_cart_id, user_cart_id, self.conflict_resolution)
                self._resolve()
                return self._outcome(cart=await self.cart_service.get_cart(user_cart_id))
        except CheckoutException as e:
            logger.error(f"Cart check failed: {e.message}")
            self.state = MergeState.IDLE
            return self._outcome(message="Login successful, but cart check failed", error=e.kind)

        self.state = MergeState.DETECTED
        self.merge_data = CartMergeData(
            guest_cart_count=guest_cart.item_count,
            user_cart_count=user_cart.item_count
        )
        return self._outcome()

    async def confirm(self) -> MergeOutcome:
        """Merge the guest cart into the saved cart and drop the guest cart"""
        return await self._transition(merge=True)

    async def cancel(self) -> MergeOutcome:
        """Drop the guest cart and keep only the saved cart"""
        return await self._transition(merge=False)

    async def _transition(self, merge: bool) -> MergeOutcome:
        if self.state is not MergeState.DETECTED:
            return self._outcome(
                message="Cart merge already in progress" if self.loading else None,
                error=ErrorKind.BUSY if self.loading else None
            )

        try:
            async with self.operation.run():
                self.state = MergeState.MERGING
                try:
                    if merge:
                        await self.cart_service.merge_carts(
                            self.guest_cart_id, self.user_cart_id, self.conflict_resolution
                        )
                    else:
                        await self.cart_service.clear_cart(self.guest_cart_id)
                    cart = await self.cart_service.get_cart_or_empty(self.user_cart_id)
                except CheckoutException as e:
                    self.operation.mark_failed()
                    self.state = MergeState.DETECTED
                    logger.error(f"Cart {'merge' if merge else 'discard'} failed: {e.message}")
                    message = "Failed to merge carts" if merge else "Failed to discard guest cart"
                    return self._outcome(message=message, error=e.kind)
        except OperationInProgressError:
            return self._outcome(message="Cart merge already in progress", error=ErrorKind.BUSY)

        self._resolve()
        message = "Carts merged successfully!" if merge else "Using your saved cart."
        return self._outcome(cart=cart, message=message)
