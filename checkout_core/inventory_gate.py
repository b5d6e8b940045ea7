"""
Pre-payment stock availability gate against the fulfillment provider.
"""
import logging
from typing import Iterable, List, Optional

from checkout_core.exceptions import OperationInProgressError
from checkout_core.models import AvailabilityResult, CartItem, VariantQuantity
from checkout_core.operations import Operation
from checkout_core.providers import FulfillmentClient

logger = logging.getLogger(__name__)

FULFILLMENT_SOURCE = "printful"

RETRY_MESSAGE = "Unable to verify availability. Please try again."


def fulfillment_items(items: Iterable[CartItem]) -> List[CartItem]:
    """Items whose stock is owned by the fulfillment provider"""
    return [
        item for item in items
        if item.fulfillment_variant_id or item.source == FULFILLMENT_SOURCE
    ]


class InventoryGate:
    """
    Checks fulfillment stock before payment.

    The gate fails closed: anything short of a well-formed provider answer
    blocks checkout. The last result is kept until ``clear_last_check`` and
    is not invalidated by cart changes; callers check again after editing
    the cart.
    """

    def __init__(self, fulfillment_client: FulfillmentClient):
        self.fulfillment_client = fulfillment_client
        self.operation = Operation("availability_check")
        self.last_check: Optional[AvailabilityResult] = None

    @property
    def checking(self) -> bool:
        return self.operation.in_flight

    async def check_availability(self, items: Iterable[CartItem]) -> AvailabilityResult:
        try:
            async with self.operation.run():
                result = await self._check(list(items))
        except OperationInProgressError:
            # Rejected call; the cached result belongs to the call in flight
            return AvailabilityResult(available=False, message="Availability check already in progress")

        self.last_check = result
        return result

    async def _check(self, items: List[CartItem]) -> AvailabilityResult:
        to_check = fulfillment_items(items)
        if not to_check:
            return AvailabilityResult(available=True, message="No fulfillment items to check")

        # One batched round trip for every item
        variants = [
            VariantQuantity(
                variant_id=item.fulfillment_variant_id or item.variant_id,
                quantity=item.quantity
            )
            for item in to_check
        ]

        try:
            response = await self.fulfillment_client.check_variant_availability(variants)
        except Exception as e:
            # Fail closed on anything, not only transport errors
            logger.error(f"Availability check failed: {type(e).__name__}: {e}")
            self.operation.mark_failed()
            return AvailabilityResult(available=False, message=RETRY_MESSAGE)

        if not response.success:
            logger.error("Availability check failed: provider reported success=false")
            self.operation.mark_failed()
            return AvailabilityResult(available=False, message=RETRY_MESSAGE)

        if response.all_available:
            message = "All items are available"
        else:
            message = f"{response.unavailable_count or 0} item(s) unavailable"

        return AvailabilityResult(
            available=response.all_available,
            checks=response.checks,
            message=message
        )

    def clear_last_check(self) -> None:
        self.last_check = None
