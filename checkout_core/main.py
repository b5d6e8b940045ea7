"""
FastAPI application for storefront cart and checkout.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkout_core.config import Config
from checkout_core.exceptions import (
    AuthenticationError,
    CartNotFoundError,
    CheckoutException,
    CheckoutSessionNotFoundError,
    ErrorKind,
    LimitExceededError,
    OperationInProgressError,
    ProductNotFoundError,
    SessionStoreError,
    UpstreamError,
    ValidationError
)
from checkout_core.middleware import MetricsMiddleware
from checkout_core.models import (
    CartItemRequest,
    CheckoutStepResponse,
    CountryChangeRequest,
    CustomerInfoUpdate,
    LoginRequest,
    PaymentRequest,
    QuantityUpdateRequest,
    StateChangeRequest,
    StepOutcome,
    ZipChangeRequest
)
from checkout_core.orchestrator import CheckoutOrchestrator
from checkout_core.registry import CheckoutRegistry

logger = logging.getLogger(__name__)

# HTTP status of a failed checkout step
STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.BUSINESS: 409,
    ErrorKind.BUSY: 409,
    ErrorKind.NETWORK: 503,
    ErrorKind.STORAGE: 503,
}

# (exception, status, error label) for the exception handlers
ERROR_RESPONSES = [
    (ValidationError, 400, "Validation error"),
    (LimitExceededError, 400, "Validation error"),
    (AuthenticationError, 401, "Authentication failed"),
    (CartNotFoundError, 404, "Cart not found"),
    (ProductNotFoundError, 404, "Product not found"),
    (CheckoutSessionNotFoundError, 404, "Checkout not found"),
    (OperationInProgressError, 409, "Operation in progress"),
    (UpstreamError, 503, "Service unavailable"),
    (SessionStoreError, 503, "Service unavailable"),
    (CheckoutException, 409, "Checkout error"),
]


def get_registry(request: Request) -> CheckoutRegistry:
    return request.app.state.registry


def get_checkout(session_id: str, registry: CheckoutRegistry = Depends(get_registry)) -> CheckoutOrchestrator:
    return registry.get(session_id)


def _require_cart_id(cart_id: str) -> str:
    if not cart_id or not cart_id.strip():
        raise HTTPException(status_code=400, detail="Cart ID is required")
    return cart_id.strip()


async def _step_response(checkout: CheckoutOrchestrator, outcome: StepOutcome) -> JSONResponse:
    """Render a step outcome; a failed step maps its error kind to a status code"""
    body = CheckoutStepResponse(outcome=outcome, checkout=await checkout.snapshot())
    status_code = 200 if outcome.ok else STATUS_BY_KIND.get(outcome.error, 400)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _error_handler(status_code: int, label: str):
    async def handler(request: Request, exc: CheckoutException):
        return JSONResponse(
            status_code=status_code,
            content={"error": label, "message": exc.message, "kind": exc.kind.value}
        )
    return handler


async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


def create_app(registry: Optional[CheckoutRegistry] = None) -> FastAPI:
    """Build the application; tests pass a registry with in-memory collaborators"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.registry.close()

    app = FastAPI(
        title="Storefront Checkout API",
        description="Cart reconciliation and checkout orchestration",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.registry = registry or CheckoutRegistry()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Response-Time-Ms"],
    )

    # Metrics middleware
    app.add_middleware(MetricsMiddleware)

    for exc_class, status_code, label in ERROR_RESPONSES:
        app.add_exception_handler(exc_class, _error_handler(status_code, label))
    app.add_exception_handler(Exception, generic_exception_handler)

    # Health check endpoint for ALB
    @app.get("/health")
    async def health_check(registry: CheckoutRegistry = Depends(get_registry)):
        """
        Always returns HTTP 200 if the application is running.
        Reports session store connectivity without failing on it.
        """
        store_status = "healthy"

        ping_start = time.time()
        try:
            if not await registry.store.ping():
                store_status = "unhealthy"
        except SessionStoreError:
            store_status = "unhealthy"
        store_latency_ms = round((time.time() - ping_start) * 1000, 2)

        return {
            "status": "healthy",
            "service": "checkout-api",
            "session_store": {
                "backend": type(registry.store).__name__,
                "status": store_status,
                "latency_ms": store_latency_ms
            },
            "timestamp": time.time()
        }

    @app.get("/regions")
    async def get_regions(registry: CheckoutRegistry = Depends(get_registry)):
        """Countries and their states for the shipping form"""
        countries = await registry.region_client.get_countries()
        return {"countries": [country.model_dump() for country in countries]}

    # Cart endpoints

    @app.post("/cart/items")
    async def add_cart_item(
        request: CartItemRequest,
        cart_id: str = Header(..., alias="X-Cart-ID", description="Cart identifier"),
        user_id: Optional[str] = Header(None, alias="X-User-ID", description="User identifier"),
        registry: CheckoutRegistry = Depends(get_registry)
    ):
        """Add a line or grow an existing one"""
        cart_id = _require_cart_id(cart_id)
        start_time = time.time()

        result = await registry.cart_service.add_item(
            cart_id=cart_id,
            variant_id=request.variant_id,
            quantity=request.quantity,
            price=request.price,
            product_name=request.product_name,
            fulfillment_variant_id=request.fulfillment_variant_id,
            source=request.source,
            availability_regions=request.availability_regions,
            is_guest=user_id is None
        )
        await registry.notify_cart_changed(cart_id)

        return {
            "success": True,
            "message": "Item added to cart",
            "variant_id": request.variant_id,
            "quantity": int(result.get("quantity", request.quantity)),
            "latency_ms": round((time.time() - start_time) * 1000, 2)
        }

    @app.get("/cart")
    async def get_cart(
        cart_id: str = Header(..., alias="X-Cart-ID", description="Cart identifier"),
        registry: CheckoutRegistry = Depends(get_registry)
    ):
        """Cart contents; a cart that does not exist yet is returned empty"""
        cart_id = _require_cart_id(cart_id)
        start_time = time.time()
        cart = await registry.cart_service.get_cart_or_empty(cart_id)
        return {
            **cart.model_dump(mode="json"),
            "latency_ms": round((time.time() - start_time) * 1000, 2)
        }

    @app.patch("/cart/items/{variant_id}")
    async def update_cart_item(
        variant_id: str,
        request: QuantityUpdateRequest,
        cart_id: str = Header(..., alias="X-Cart-ID", description="Cart identifier"),
        user_id: Optional[str] = Header(None, alias="X-User-ID", description="User identifier"),
        registry: CheckoutRegistry = Depends(get_registry)
    ):
        """Set a line quantity; 0 removes the line"""
        cart_id = _require_cart_id(cart_id)
        result = await registry.cart_service.update_quantity(
            cart_id, variant_id, request.quantity, is_guest=user_id is None
        )
        await registry.notify_cart_changed(cart_id)
        return {
            "success": True,
            "variant_id": variant_id,
            "quantity": int(result.get("quantity", request.quantity)),
            "removed": bool(result.get("removed", False))
        }

    @app.delete("/cart/items/{variant_id}")
    async def remove_cart_item(
        variant_id: str,
        cart_id: str = Header(..., alias="X-Cart-ID", description="Cart identifier"),
        user_id: Optional[str] = Header(None, alias="X-User-ID", description="User identifier"),
        registry: CheckoutRegistry = Depends(get_registry)
    ):
        """Remove item from cart"""
        cart_id = _require_cart_id(cart_id)
        if not await registry.cart_service.remove_item(cart_id, variant_id, is_guest=user_id is None):
            raise HTTPException(status_code=404, detail="Product not found in cart")
        await registry.notify_cart_changed(cart_id)
        return {"success": True, "message": "Item removed from cart", "variant_id": variant_id}

    # Checkout endpoints

    @app.post("/checkout/sessions")
    async def start_checkout(
        cart_id: str = Header(..., alias="X-Cart-ID", description="Guest cart identifier"),
        session_id: Optional[str] = Header(None, alias="X-Session-ID", description="Browser session"),
        registry: CheckoutRegistry = Depends(get_registry)
    ):
        """
        Open a checkout for the browser session.
        An already logged-in session goes straight to the address step.
        """
        checkout = registry.create(session_id or registry.new_session_id(), _require_cart_id(cart_id))
        return await _step_response(checkout, await checkout.start())

    @app.get("/checkout/{session_id}")
    async def get_checkout_state(checkout: CheckoutOrchestrator = Depends(get_checkout)):
        outcome = checkout.last_outcome or StepOutcome(ok=True, stage=checkout.stage)
        return await _step_response(checkout, outcome)

    @app.post("/checkout/{session_id}/guest")
    async def continue_as_guest(checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, await checkout.continue_as_guest())

    @app.post("/checkout/{session_id}/login")
    async def login(request: LoginRequest, checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, await checkout.login(request.email, request.password))

    @app.post("/checkout/{session_id}/merge/confirm")
    async def confirm_merge(checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, await checkout.confirm_merge())

    @app.post("/checkout/{session_id}/merge/cancel")
    async def cancel_merge(checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, await checkout.cancel_merge())

    @app.patch("/checkout/{session_id}/customer")
    async def update_customer(request: CustomerInfoUpdate, checkout: CheckoutOrchestrator = Depends(get_checkout)):
        outcome = checkout.update_customer_info(request.model_dump(exclude_none=True))
        return await _step_response(checkout, outcome)

    @app.put("/checkout/{session_id}/country")
    async def change_country(request: CountryChangeRequest, checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, checkout.change_country(request.country))

    @app.put("/checkout/{session_id}/state")
    async def change_state(request: StateChangeRequest, checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, checkout.change_state(request.state))

    @app.put("/checkout/{session_id}/zip")
    async def change_zip(request: ZipChangeRequest, checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, await checkout.change_zip(request.zip))

    @app.post("/checkout/{session_id}/address")
    async def submit_address(checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, await checkout.submit_address())

    @app.post("/checkout/{session_id}/inventory")
    async def confirm_inventory(checkout: CheckoutOrchestrator = Depends(get_checkout)):
        return await _step_response(checkout, await checkout.confirm_inventory())

    @app.post("/checkout/{session_id}/payment")
    async def capture_payment(
        request: Optional[PaymentRequest] = None,
        checkout: CheckoutOrchestrator = Depends(get_checkout)
    ):
        payment_method = request.payment_method if request else "card"
        return await _step_response(checkout, await checkout.capture_payment(payment_method))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
