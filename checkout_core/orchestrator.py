"""
Checkout orchestration: sequences identity, cart reconciliation, address,
inventory and payment for one checkout session.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

from checkout_core.address_resolver import AddressResolver
from checkout_core.address_validation import (
    can_fetch_shipping_rates,
    get_error_message,
    normalize_state_name,
    validate_customer_info,
    validate_shipping_address
)
from checkout_core.cart_reconciler import CartReconciler, MergeState
from checkout_core.cart_service import CartService, user_cart_id
from checkout_core.config import Config
from checkout_core.exceptions import (
    CheckoutException,
    ErrorKind,
    OperationInProgressError,
    ValidationError
)
from checkout_core.identity import IdentityCoordinator
from checkout_core.inventory_gate import InventoryGate
from checkout_core.middleware import hash_identifier
from checkout_core.models import (
    Cart,
    CheckoutSnapshot,
    CheckoutStage,
    CustomerInfo,
    OrderConfirmation,
    SessionUser,
    StepOutcome
)
from checkout_core.operations import Operation, OperationState
from checkout_core.providers import PaymentClient
from checkout_core.shipping import check_shipping_compatibility, format_incompatibility_message

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Stages at which the shopper may still edit the address
ADDRESS_EDITABLE = (
    CheckoutStage.IDENTITY_RESOLVED,
    CheckoutStage.CART_RECONCILED,
    CheckoutStage.ADDRESS_READY,
    CheckoutStage.INVENTORY_CONFIRMED,
)


def calculate_totals(subtotal: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (shipping, tax, total) for a cart subtotal"""
    shipping = Config.SHIPPING_FLAT_RATE.quantize(CENT, rounding=ROUND_HALF_UP)
    tax = (subtotal * Config.TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    total = (subtotal + shipping + tax).quantize(CENT, rounding=ROUND_HALF_UP)
    return shipping, tax, total


class CheckoutOrchestrator:
    """
    Forward-only checkout state machine for one session.

    Every step returns a StepOutcome. A failed step keeps the current stage
    and reports the error; nothing advances past a failure. Editing the
    address or the cart after later stages were reached drops the session
    back so those stages run again.
    """

    def __init__(
        self,
        session_id: str,
        guest_cart_id: str,
        cart_service: CartService,
        identity: IdentityCoordinator,
        reconciler: CartReconciler,
        inventory: InventoryGate,
        address: AddressResolver,
        payment_client: PaymentClient
    ):
        self.session_id = session_id
        self.guest_cart_id = guest_cart_id
        self.active_cart_id = guest_cart_id
        self.cart_service = cart_service
        self.identity = identity
        self.reconciler = reconciler
        self.inventory = inventory
        self.address = address
        self.payment_client = payment_client
        self.payment_operation = Operation("payment")

        self.stage = CheckoutStage.STARTED
        self.identity_stage = CheckoutStage.IDENTITY_RESOLVED
        self.customer_info = CustomerInfo()
        self.user: Optional[SessionUser] = None
        self.order: Optional[OrderConfirmation] = None
        self.last_outcome: Optional[StepOutcome] = None

    # Outcomes

    def _ok(self, message: Optional[str] = None) -> StepOutcome:
        self.last_outcome = StepOutcome(ok=True, stage=self.stage, message=message)
        return self.last_outcome

    def _fail(self, message: str, error: ErrorKind) -> StepOutcome:
        self.last_outcome = StepOutcome(ok=False, stage=self.stage, message=message, error=error)
        return self.last_outcome

    def _out_of_order(self, action: str) -> StepOutcome:
        return self._fail(f"Cannot {action} while checkout is {self.stage.value}", ErrorKind.VALIDATION)

    def _advance(self, stage: CheckoutStage) -> None:
        logger.info(f"Checkout {hash_identifier(self.session_id)}: {self.stage.value} -> {stage.value}")
        self.stage = stage

    def _reopen_address(self) -> None:
        """Address changed; shipping eligibility and stock must be re-confirmed"""
        if self.stage in (CheckoutStage.ADDRESS_READY, CheckoutStage.INVENTORY_CONFIRMED):
            self._advance(self.identity_stage)
        self.inventory.clear_last_check()

    # Empty cart / identity

    async def start(self) -> StepOutcome:
        """Load reference data, pick up an existing login and short-circuit empty carts"""
        if self.stage is not CheckoutStage.STARTED:
            return self._out_of_order("start checkout")

        try:
            await self.address.load_countries()
            self.user = await self.identity.current_user(self.session_id)
        except CheckoutException as e:
            return self._fail(e.message, e.kind)

        if self.user:
            # The guest cart from this visit still has to meet the saved cart
            self.identity.fill_user_info(self.user, self.customer_info)
            return await self._reconcile(message=None)

        try:
            cart = await self.cart_service.get_cart_or_empty(self.active_cart_id)
        except CheckoutException as e:
            return self._fail(e.message, e.kind)

        if cart.item_count == 0:
            self._advance(CheckoutStage.EMPTY_CART)
            return self._ok("Your cart is empty")
        return self._ok()

    async def continue_as_guest(self) -> StepOutcome:
        if self.stage is not CheckoutStage.STARTED or self.user:
            return self._out_of_order("continue as guest")
        self._advance(CheckoutStage.IDENTITY_RESOLVED)
        return self._ok()

    async def login(self, email: str, password: str) -> StepOutcome:
        """
        Log in without resetting the cart or address.

        The continuation fills the contact fields from the account and runs
        cart reconciliation, which decides the next stage.
        """
        guest_in_progress = self.stage is CheckoutStage.IDENTITY_RESOLVED and self.user is None
        if self.stage is not CheckoutStage.STARTED and not guest_in_progress:
            return self._out_of_order("log in")

        outcome = await self.identity.login(self.session_id, email, password, on_success=self._on_login)
        if not outcome.ok:
            return self._fail(outcome.message, outcome.error)
        return self.last_outcome

    async def _on_login(self, user: SessionUser) -> None:
        self.user = user
        self.identity.fill_user_info(user, self.customer_info)
        await self.reconcile()

    # Cart reconciliation

    async def reconcile(self) -> StepOutcome:
        """Detect a guest/user cart conflict after login; safe to retry after a failed check"""
        return await self._reconcile(message="Logged in successfully!")

    async def _reconcile(self, message: Optional[str]) -> StepOutcome:
        if self.user is None or self.stage not in (CheckoutStage.STARTED, CheckoutStage.IDENTITY_RESOLVED):
            return self._out_of_order("check carts")

        saved_cart_id = user_cart_id(self.user)
        if self.guest_cart_id == saved_cart_id:
            # Checkout was opened on the saved cart itself; nothing to merge
            try:
                cart = await self.cart_service.get_cart_or_empty(saved_cart_id)
            except CheckoutException as e:
                return self._fail(e.message, e.kind)
        else:
            outcome = await self.reconciler.detect(self.guest_cart_id, saved_cart_id)
            if outcome.error:
                return self._fail(outcome.message, outcome.error)
            if outcome.state is MergeState.DETECTED:
                self._advance(CheckoutStage.AWAITING_MERGE)
                return self._ok("Your account already has a saved cart")
            cart = outcome.cart

        self.active_cart_id = saved_cart_id
        if cart is None or cart.item_count == 0:
            self._advance(CheckoutStage.EMPTY_CART)
            return self._ok("Your cart is empty")

        if self.stage is not CheckoutStage.IDENTITY_RESOLVED:
            self._advance(CheckoutStage.IDENTITY_RESOLVED)
        return self._ok(message)

    async def confirm_merge(self) -> StepOutcome:
        return await self._resolve_merge(merge=True)

    async def cancel_merge(self) -> StepOutcome:
        return await self._resolve_merge(merge=False)

    async def _resolve_merge(self, merge: bool) -> StepOutcome:
        if self.stage is not CheckoutStage.AWAITING_MERGE:
            return self._out_of_order("resolve the cart merge")

        outcome = await (self.reconciler.confirm() if merge else self.reconciler.cancel())
        if outcome.error:
            return self._fail(outcome.message, outcome.error)
        if outcome.state is not MergeState.RESOLVED:
            return self._fail(outcome.message or "Cart merge not resolved", ErrorKind.BUSY)

        self.active_cart_id = user_cart_id(self.user)
        self.identity_stage = CheckoutStage.CART_RECONCILED
        self._advance(CheckoutStage.CART_RECONCILED)
        return self._ok(outcome.message)

    # Address

    def update_customer_info(self, updates: Dict[str, str]) -> StepOutcome:
        """Apply contact/street edits; country, state and zip have their own steps"""
        if self.stage not in ADDRESS_EDITABLE:
            return self._out_of_order("edit customer info")
        for field, value in updates.items():
            if field in ("country", "state", "zip"):
                continue
            setattr(self.customer_info, field, value)
        self._reopen_address()
        return self._ok()

    def change_country(self, country_code: str) -> StepOutcome:
        if self.stage not in ADDRESS_EDITABLE:
            return self._out_of_order("change country")
        self.customer_info.country = country_code
        self.address.update_available_states(country_code, self.customer_info.state, self.customer_info)
        self._reopen_address()
        return self._ok()

    def change_state(self, state_code: str) -> StepOutcome:
        if self.stage not in ADDRESS_EDITABLE:
            return self._out_of_order("change state")
        state_code = normalize_state_name(state_code)
        if state_code and not self.address.is_available_state(state_code):
            return self._fail(f"{state_code} is not a state of the selected country", ErrorKind.VALIDATION)
        self.customer_info.state = state_code
        self._reopen_address()
        return self._ok()

    async def change_zip(self, zip_code: str) -> StepOutcome:
        if self.stage not in ADDRESS_EDITABLE:
            return self._out_of_order("change postal code")
        outcome = await self.address.handle_zip_code_change(
            zip_code, self.customer_info.country, self.customer_info
        )
        self._reopen_address()
        return self._ok(outcome.message)

    async def submit_address(self) -> StepOutcome:
        """Validate contact and shipping details and check shipping eligibility"""
        if self.stage not in (self.identity_stage, CheckoutStage.ADDRESS_READY):
            return self._out_of_order("submit the address")
        if self.user and self.active_cart_id != user_cart_id(self.user):
            return self._fail("Your carts have not been checked yet", ErrorKind.VALIDATION)

        errors = validate_customer_info(self.customer_info) + validate_shipping_address(self.customer_info)
        if errors:
            return self._fail(get_error_message(errors), ErrorKind.VALIDATION)

        try:
            cart = await self._active_cart()
        except CheckoutException as e:
            return self._fail(e.message, e.kind)

        incompatible = check_shipping_compatibility(
            list(cart.items.values()), self.customer_info.country, self.address.countries
        )
        if incompatible:
            return self._fail(format_incompatibility_message(incompatible, self.address.countries), ErrorKind.BUSINESS)

        self._advance(CheckoutStage.ADDRESS_READY)
        return self._ok()

    # Inventory

    async def cart_changed(self) -> StepOutcome:
        """Any cart edit invalidates a previous availability confirmation"""
        self.inventory.clear_last_check()
        if self.stage is CheckoutStage.INVENTORY_CONFIRMED:
            self._advance(CheckoutStage.ADDRESS_READY)
        return self._ok()

    async def confirm_inventory(self) -> StepOutcome:
        if self.stage not in (CheckoutStage.ADDRESS_READY, CheckoutStage.INVENTORY_CONFIRMED):
            return self._out_of_order("check availability")

        try:
            cart = await self._active_cart()
        except CheckoutException as e:
            return self._fail(e.message, e.kind)

        if cart.item_count == 0:
            self._advance(CheckoutStage.EMPTY_CART)
            return self._ok("Your cart is empty")

        if self.inventory.checking:
            return self._fail("Availability check already in progress", ErrorKind.BUSY)

        result = await self.inventory.check_availability(cart.items.values())
        if result.available:
            self._advance(CheckoutStage.INVENTORY_CONFIRMED)
            return self._ok(result.message)

        # Back to cart editing
        self.stage = CheckoutStage.ADDRESS_READY
        if self.inventory.operation.state is OperationState.FAILED:
            return self._fail(result.message, ErrorKind.NETWORK)
        return self._fail(result.message, ErrorKind.BUSINESS)

    # Payment / completion

    async def capture_payment(self, payment_method: str = "card") -> StepOutcome:
        """Hand the order to the payment gateway, then complete"""
        if self.stage is not CheckoutStage.INVENTORY_CONFIRMED:
            return self._out_of_order("pay")

        try:
            async with self.payment_operation.run():
                cart = await self._active_cart()
                if cart.item_count == 0:
                    raise ValidationError("Your cart is empty")
                shipping, tax, total = calculate_totals(cart.total_price)
                access_token = await self.identity.access_token(self.session_id) if self.user else None
                receipt = await self.payment_client.capture_payment(
                    amount=total,
                    customer_email=self.customer_info.email,
                    items=list(cart.items.values()),
                    payment_method=payment_method,
                    access_token=access_token
                )
        except OperationInProgressError:
            return self._fail("Payment already in progress", ErrorKind.BUSY)
        except CheckoutException as e:
            logger.error(f"Payment failed for checkout {hash_identifier(self.session_id)}: {e.message}")
            return self._fail("Payment failed. Please try again.", e.kind)

        self._advance(CheckoutStage.PAYMENT_CAPTURED)
        self.order = OrderConfirmation(
            order_number=receipt.order_number,
            subtotal=cart.total_price,
            shipping=shipping,
            tax=tax,
            total=total
        )
        await self._complete()
        return self._ok(f"Order {self.order.order_number} placed")

    async def _complete(self) -> None:
        try:
            await self.cart_service.clear_cart(self.active_cart_id)
        except CheckoutException as e:
            # The order exists; a stale cart must not block completion
            logger.error(f"Could not clear cart after order {self.order.order_number}: {e.message}")
        self._advance(CheckoutStage.COMPLETE)

    # Views

    async def _active_cart(self) -> Cart:
        return await self.cart_service.get_cart_or_empty(self.active_cart_id)

    async def snapshot(self) -> CheckoutSnapshot:
        try:
            cart = await self._active_cart()
        except CheckoutException:
            cart = None
        last = self.last_outcome
        return CheckoutSnapshot(
            session_id=self.session_id,
            stage=self.stage,
            cart=cart,
            user=self.user,
            customer_info=self.customer_info,
            merge=self.reconciler.merge_data,
            available_states=self.address.available_states,
            shipping_quotable=can_fetch_shipping_rates(self.customer_info),
            availability=self.inventory.last_check,
            order=self.order,
            message=last.message if last else None,
            error=last.error if last else None
        )
