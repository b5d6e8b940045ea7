"""Tests for guest/user cart reconciliation."""

import asyncio
from decimal import Decimal

import pytest

from checkout_core.cart_reconciler import CartReconciler, MergeState
from checkout_core.cart_service import CartService
from checkout_core.exceptions import ErrorKind, SessionStoreError
from checkout_core.operations import OperationState
from checkout_core.session_store import MemorySessionStore

GUEST = "guest-abc"
USER = "user:42"


class FlakyStore(MemorySessionStore):
    """Memory store whose cart writes can be switched off"""

    def __init__(self):
        super().__init__()
        self.fail_writes = False
        self.fail_reads = False

    async def get_cart_items(self, cart_id):
        if self.fail_reads:
            raise SessionStoreError("Redis connection failed")
        return await super().get_cart_items(cart_id)

    async def merge_carts(self, *args, **kwargs):
        if self.fail_writes:
            raise SessionStoreError("Redis connection failed")
        return await super().merge_carts(*args, **kwargs)

    async def clear_cart(self, cart_id):
        if self.fail_writes:
            raise SessionStoreError("Redis connection failed")
        return await super().clear_cart(cart_id)


def _add(cart_service, cart_id, variant_id, quantity, price="10.00"):
    asyncio.run(cart_service.add_item(cart_id, variant_id, quantity, Decimal(price), product_name=variant_id))


def _quantities(cart_service, cart_id):
    cart = asyncio.run(cart_service.get_cart_or_empty(cart_id))
    return {variant_id: item.quantity for variant_id, item in cart.items.items()}


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def flaky_cart_service(flaky_store):
    return CartService(flaky_store)


@pytest.fixture
def conflicting_carts(cart_service):
    for variant_id in ("g1", "g2", "g3"):
        _add(cart_service, GUEST, variant_id, 1)
    for variant_id in ("u1", "u2"):
        _add(cart_service, USER, variant_id, 1)
    return cart_service


class TestDetect:
    def test_both_carts_non_empty_prompts(self, conflicting_carts):
        reconciler = CartReconciler(conflicting_carts)

        outcome = asyncio.run(reconciler.detect(GUEST, USER))

        assert outcome.state is MergeState.DETECTED
        assert outcome.merge_data.guest_cart_count == 3
        assert outcome.merge_data.user_cart_count == 2
        assert outcome.merge_data.combined_count == 5

    def test_empty_guest_cart_resolves_without_prompt(self, cart_service):
        _add(cart_service, USER, "u1", 2)
        reconciler = CartReconciler(cart_service)

        outcome = asyncio.run(reconciler.detect(GUEST, USER))

        assert outcome.state is MergeState.RESOLVED
        assert outcome.merge_data is None
        assert outcome.cart.item_count == 1

    def test_empty_user_cart_adopts_guest_cart(self, cart_service):
        _add(cart_service, GUEST, "g1", 2)
        reconciler = CartReconciler(cart_service)

        outcome = asyncio.run(reconciler.detect(GUEST, USER))

        assert outcome.state is MergeState.RESOLVED
        assert _quantities(cart_service, USER) == {"g1": 2}
        assert _quantities(cart_service, GUEST) == {}

    def test_store_failure_reports_cart_check_failed(self, flaky_store, flaky_cart_service):
        flaky_store.fail_reads = True
        reconciler = CartReconciler(flaky_cart_service)

        outcome = asyncio.run(reconciler.detect(GUEST, USER))

        assert outcome.state is MergeState.IDLE
        assert outcome.message == "Login successful, but cart check failed"
        assert outcome.error is ErrorKind.STORAGE


class TestConfirm:
    def test_merge_combines_all_lines(self, conflicting_carts):
        reconciler = CartReconciler(conflicting_carts)
        asyncio.run(reconciler.detect(GUEST, USER))

        outcome = asyncio.run(reconciler.confirm())

        assert outcome.state is MergeState.RESOLVED
        assert outcome.message == "Carts merged successfully!"
        assert outcome.cart.item_count == 5
        assert reconciler.merge_data is None
        assert _quantities(conflicting_carts, GUEST) == {}

    def test_same_variant_quantities_are_summed(self, cart_service):
        _add(cart_service, GUEST, "v1", 2)
        _add(cart_service, USER, "v1", 3)
        reconciler = CartReconciler(cart_service)
        asyncio.run(reconciler.detect(GUEST, USER))

        asyncio.run(reconciler.confirm())

        assert _quantities(cart_service, USER) == {"v1": 5}

    def test_summed_quantity_is_clamped(self, cart_service):
        _add(cart_service, GUEST, "v1", 60)
        _add(cart_service, USER, "v1", 50)
        reconciler = CartReconciler(cart_service)
        asyncio.run(reconciler.detect(GUEST, USER))

        asyncio.run(reconciler.confirm())

        assert _quantities(cart_service, USER) == {"v1": 99}

    def test_last_write_wins_keeps_guest_line(self, cart_service):
        _add(cart_service, GUEST, "v1", 2)
        _add(cart_service, USER, "v1", 3)
        reconciler = CartReconciler(cart_service, conflict_resolution="last-write-wins")
        asyncio.run(reconciler.detect(GUEST, USER))

        asyncio.run(reconciler.confirm())

        assert _quantities(cart_service, USER) == {"v1": 2}

    def test_failure_returns_to_detected_and_keeps_carts(self, flaky_store, flaky_cart_service):
        _add(flaky_cart_service, GUEST, "g1", 1)
        _add(flaky_cart_service, USER, "u1", 1)
        reconciler = CartReconciler(flaky_cart_service)
        asyncio.run(reconciler.detect(GUEST, USER))
        flaky_store.fail_writes = True

        outcome = asyncio.run(reconciler.confirm())

        assert outcome.state is MergeState.DETECTED
        assert outcome.message == "Failed to merge carts"
        assert outcome.error is ErrorKind.STORAGE
        assert outcome.merge_data.combined_count == 2
        assert reconciler.operation.state is OperationState.FAILED
        assert _quantities(flaky_cart_service, GUEST) == {"g1": 1}
        assert _quantities(flaky_cart_service, USER) == {"u1": 1}

    def test_retry_after_failure(self, flaky_store, flaky_cart_service):
        _add(flaky_cart_service, GUEST, "g1", 1)
        _add(flaky_cart_service, USER, "u1", 1)
        reconciler = CartReconciler(flaky_cart_service)
        asyncio.run(reconciler.detect(GUEST, USER))
        flaky_store.fail_writes = True
        asyncio.run(reconciler.confirm())
        flaky_store.fail_writes = False

        outcome = asyncio.run(reconciler.confirm())

        assert outcome.state is MergeState.RESOLVED
        assert _quantities(flaky_cart_service, USER) == {"g1": 1, "u1": 1}


class TestCancel:
    def test_discards_guest_cart_and_keeps_saved_cart(self, conflicting_carts):
        reconciler = CartReconciler(conflicting_carts)
        asyncio.run(reconciler.detect(GUEST, USER))

        outcome = asyncio.run(reconciler.cancel())

        assert outcome.state is MergeState.RESOLVED
        assert outcome.message == "Using your saved cart."
        assert _quantities(conflicting_carts, GUEST) == {}
        assert _quantities(conflicting_carts, USER) == {"u1": 1, "u2": 1}

    def test_failure_returns_to_detected(self, flaky_store, flaky_cart_service):
        _add(flaky_cart_service, GUEST, "g1", 1)
        _add(flaky_cart_service, USER, "u1", 1)
        reconciler = CartReconciler(flaky_cart_service)
        asyncio.run(reconciler.detect(GUEST, USER))
        flaky_store.fail_writes = True

        outcome = asyncio.run(reconciler.cancel())

        assert outcome.state is MergeState.DETECTED
        assert outcome.message == "Failed to discard guest cart"


class TestTransitionsOutsideDetected:
    def test_confirm_before_detect_is_a_no_op(self, conflicting_carts):
        reconciler = CartReconciler(conflicting_carts)

        outcome = asyncio.run(reconciler.confirm())

        assert outcome.state is MergeState.IDLE
        assert outcome.error is None
        assert _quantities(conflicting_carts, GUEST) == {"g1": 1, "g2": 1, "g3": 1}

    def test_confirm_while_merging_reports_busy(self, conflicting_carts):
        reconciler = CartReconciler(conflicting_carts)
        asyncio.run(reconciler.detect(GUEST, USER))
        reconciler.state = MergeState.MERGING
        reconciler.operation.state = OperationState.IN_FLIGHT

        outcome = asyncio.run(reconciler.confirm())

        assert outcome.error is ErrorKind.BUSY
        assert _quantities(conflicting_carts, GUEST) == {"g1": 1, "g2": 1, "g3": 1}

    def test_cancel_after_resolution_is_a_no_op(self, conflicting_carts):
        reconciler = CartReconciler(conflicting_carts)
        asyncio.run(reconciler.detect(GUEST, USER))
        asyncio.run(reconciler.confirm())

        outcome = asyncio.run(reconciler.cancel())

        assert outcome.state is MergeState.RESOLVED
        assert outcome.error is None
        assert _quantities(conflicting_carts, USER) == {"g1": 1, "g2": 1, "g3": 1, "u1": 1, "u2": 1}
