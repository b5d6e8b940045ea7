"""
Clients for the external collaborators: authentication service, fulfillment
provider, payment gateway and address reference services.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from pydantic import ValidationError as ModelValidationError

from checkout_core.config import Config
from checkout_core.exceptions import AuthenticationError, UpstreamError
from checkout_core.http_client import ApiClient
from checkout_core.models import (
    CartItem,
    Country,
    LoginResponse,
    PaymentReceipt,
    VariantAvailabilityResponse,
    VariantQuantity,
    ZipLookupResult
)
from checkout_core.regions import DEFAULT_COUNTRIES

logger = logging.getLogger(__name__)

ZIP_LOOKUP_COUNTRIES = {"US", "CA"}


class AuthClient(ApiClient):
    """Authentication service"""

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or Config.AUTH_API_URL, **kwargs)

    async def login(self, email: str, password: str) -> LoginResponse:
        response = await self.post("/api/auth/login", json={"email": email, "password": password})

        if response.status_code in (400, 401, 403):
            try:
                detail = response.json().get("error")
            except (ValueError, AttributeError):
                detail = None
            raise AuthenticationError(detail or "Login failed")

        if response.is_error:
            raise UpstreamError("Login failed", status_code=response.status_code)

        try:
            return LoginResponse.model_validate(self.json(response))
        except ModelValidationError as e:
            raise UpstreamError(f"Unexpected login response: {e.error_count()} invalid fields")


class FulfillmentClient(ApiClient):
    """Fulfillment provider stock availability"""

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or Config.FULFILLMENT_API_URL, **kwargs)

    async def check_variant_availability(self, variants: List[VariantQuantity]) -> VariantAvailabilityResponse:
        """Check every variant in a single batched request"""
        response = await self.post(
            "/api/unified-checkout/check-availability",
            json={"variants": [v.model_dump() for v in variants]}
        )
        if response.is_error:
            raise UpstreamError("Availability check failed", status_code=response.status_code)

        try:
            return VariantAvailabilityResponse.model_validate(self.json(response))
        except ModelValidationError as e:
            raise UpstreamError(f"Unexpected availability response: {e.error_count()} invalid fields")


class PaymentClient(ApiClient):
    """Payment gateway; capture happens on the gateway side"""

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or Config.PAYMENT_API_URL, **kwargs)

    async def capture_payment(
        self,
        amount: Decimal,
        customer_email: str,
        items: List[CartItem],
        payment_method: str = "card",
        access_token: Optional[str] = None
    ) -> PaymentReceipt:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        response = await self.post(
            "/api/unified-checkout/process",
            headers=headers,
            json={
                "amount": f"{amount:.2f}",
                "customerEmail": customer_email,
                "paymentMethod": payment_method,
                "cartItems": [
                    {"variant_id": item.variant_id, "quantity": item.quantity}
                    for item in items
                ],
            }
        )
        if response.is_error:
            raise UpstreamError("Failed to process checkout", status_code=response.status_code)

        body = self.json(response)
        try:
            return PaymentReceipt.model_validate(body.get("order", body))
        except (AttributeError, ModelValidationError):
            raise UpstreamError("Unexpected payment response")


class ZipLookupClient(ApiClient):
    """Postal code to city/state lookup (zippopotam.us)"""

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or Config.ZIP_LOOKUP_API_URL, **kwargs)

    def _lookup_path(self, zip_code: str, country_code: str) -> Optional[str]:
        if country_code == "US" and len(zip_code) == 5:
            return f"/us/{zip_code}"
        if country_code == "CA" and len(zip_code) >= 6:
            # Only the forward sortation area is indexed
            return f"/ca/{zip_code[:3]}"
        return None

    async def lookup(self, zip_code: str, country_code: str = "US") -> Optional[ZipLookupResult]:
        """Resolve a postal code; None when unsupported or not found"""
        zip_code = zip_code.strip()
        path = self._lookup_path(zip_code, country_code)
        if path is None:
            return None

        try:
            response = await self.get(path)
            if response.status_code != 200:
                return None
            place = self.json(response)["places"][0]
            return ZipLookupResult(city=place["place name"], state=place["state abbreviation"])
        except (UpstreamError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"ZIP code lookup failed: {e}")
            return None


class RegionClient(ApiClient):
    """Country and state reference data (Printful /countries)"""

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or Config.REGIONS_API_URL, **kwargs)

    async def get_countries(self) -> List[Country]:
        """Load the reference table, falling back to the built-in US/CA table"""
        try:
            response = await self.get("/countries")
            if response.is_error:
                raise UpstreamError("Failed to fetch countries", status_code=response.status_code)
            result = self.json(response).get("result") or []
            return [Country.model_validate(country) for country in result]
        except (UpstreamError, AttributeError, ModelValidationError) as e:
            logger.error(f"Failed to fetch countries, using built-in table: {e}")
            return [country.model_copy(deep=True) for country in DEFAULT_COUNTRIES]
