"""
Pydantic models for carts, sessions, reference data, requests and responses.
"""
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from checkout_core.exceptions import ErrorKind


# Cart

class CartItem(BaseModel):
    """Cart line keyed by storefront variant"""
    variant_id: str = Field(..., description="Storefront variant identifier")
    fulfillment_variant_id: Optional[str] = Field(None, description="Fulfillment provider variant identifier")
    quantity: int = Field(..., ge=1, description="Item quantity")
    product_name: str = Field("", description="Product display name")
    unit_price: Decimal = Field(Decimal("0"), description="Price at time of add")
    source: Optional[str] = Field(None, description="Origin of the product, e.g. 'printful'")
    availability_regions: Optional[List[str]] = Field(None, description="Regions the item ships to")

    @field_validator("variant_id", "fulfillment_variant_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        # Providers send numeric ids
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("availability_regions", mode="before")
    @classmethod
    def empty_object_as_list(cls, v):
        # cjson encodes an empty Lua table as {}
        if isinstance(v, dict):
            return list(v.values())
        return v

    @computed_field
    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


class Cart(BaseModel):
    """Read model of a stored cart"""
    cart_id: str
    items: Dict[str, CartItem] = Field(default_factory=dict, description="Cart items by variant_id")

    @computed_field
    @property
    def item_count(self) -> int:
        """Number of distinct lines"""
        return len(self.items)

    @computed_field
    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items.values())

    @computed_field
    @property
    def total_price(self) -> Decimal:
        return sum((item.total_price for item in self.items.values()), Decimal("0"))


class CartItemRequest(BaseModel):
    """Request model for adding cart items"""
    variant_id: str = Field(..., description="Storefront variant identifier")
    fulfillment_variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1, description="Item quantity")
    product_name: str = ""
    price: Decimal = Field(..., description="Unit price")
    source: Optional[str] = None
    availability_regions: Optional[List[str]] = None


class QuantityUpdateRequest(BaseModel):
    """Request model for changing a line quantity; 0 removes the line"""
    quantity: int = Field(..., ge=0)


# Identity

class SessionUser(BaseModel):
    """Authenticated user owned by the session store"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return v if isinstance(v, str) else str(v)


class AuthTokens(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")


class LoginResponse(BaseModel):
    """Auth service login payload"""
    tokens: AuthTokens
    user: SessionUser


class SessionCredentials(BaseModel):
    """Everything committed to the session store on login"""
    access_token: str
    refresh_token: str
    user: SessionUser


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


# Customer

class CustomerInfo(BaseModel):
    """Contact and shipping details, filled in field by field"""
    name: str = ""
    email: str = ""
    phone: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""


class CustomerInfoUpdate(BaseModel):
    """Partial update of customer info; unset fields are left alone"""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None


class CountryChangeRequest(BaseModel):
    country: str


class StateChangeRequest(BaseModel):
    state: str = ""


class ZipChangeRequest(BaseModel):
    zip: str


# Reconciliation

class CartMergeData(BaseModel):
    """Counts shown on the merge prompt"""
    guest_cart_count: int = Field(..., ge=0)
    user_cart_count: int = Field(..., ge=0)

    @computed_field
    @property
    def combined_count(self) -> int:
        return self.guest_cart_count + self.user_cart_count


# Inventory

class AvailabilityCheck(BaseModel):
    model_config = ConfigDict(extra="ignore")

    variant_id: Union[int, str]
    available: bool
    name: Optional[str] = None
    reason: Optional[str] = None


class AvailabilityResult(BaseModel):
    """Outcome of one availability gate invocation"""
    available: bool
    checks: Optional[List[AvailabilityCheck]] = None
    message: str = ""


class VariantQuantity(BaseModel):
    variant_id: Union[int, str]
    quantity: int = Field(..., ge=1)


class VariantAvailabilityResponse(BaseModel):
    """Fulfillment provider availability payload"""
    model_config = ConfigDict(extra="ignore")

    success: bool = True
    all_available: bool = False
    unavailable_count: int = 0
    checks: List[AvailabilityCheck] = Field(default_factory=list)


# Address reference data

class RegionState(BaseModel):
    code: str
    name: str


class Country(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str
    name: str
    states: List[RegionState] = Field(default_factory=list)
    region: Optional[str] = None

    @field_validator("states", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        # The provider sends null for countries without subdivisions
        return v or []


class ZipLookupResult(BaseModel):
    city: str
    state: str


class FieldError(BaseModel):
    field: str
    message: str


# Orchestration

class CheckoutStage(str, Enum):
    """Forward-only checkout stages"""
    STARTED = "started"
    EMPTY_CART = "empty_cart"
    IDENTITY_RESOLVED = "identity_resolved"
    AWAITING_MERGE = "awaiting_merge"
    CART_RECONCILED = "cart_reconciled"
    ADDRESS_READY = "address_ready"
    INVENTORY_CONFIRMED = "inventory_confirmed"
    PAYMENT_CAPTURED = "payment_captured"
    COMPLETE = "complete"


class StepOutcome(BaseModel):
    """Structured result of one orchestrator step"""
    ok: bool
    stage: CheckoutStage
    message: Optional[str] = None
    error: Optional[ErrorKind] = None


class PaymentRequest(BaseModel):
    payment_method: str = "card"


class PaymentReceipt(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_number: str = Field(..., alias="orderNumber")
    payment_id: Optional[str] = Field(None, alias="paymentId")


class OrderConfirmation(BaseModel):
    """Display-only completion output"""
    order_number: str
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal


class CheckoutSnapshot(BaseModel):
    """Everything presentation needs to render the current checkout"""
    session_id: str
    stage: CheckoutStage
    cart: Optional[Cart] = None
    user: Optional[SessionUser] = None
    customer_info: CustomerInfo
    merge: Optional[CartMergeData] = None
    available_states: List[RegionState] = Field(default_factory=list)
    # City, zip and (where required) state are filled in
    shipping_quotable: bool = False
    availability: Optional[AvailabilityResult] = None
    order: Optional[OrderConfirmation] = None
    message: Optional[str] = None
    error: Optional[ErrorKind] = None


class CheckoutStepResponse(BaseModel):
    """Outcome of a checkout step with the resulting checkout view"""
    outcome: StepOutcome
    checkout: CheckoutSnapshot
