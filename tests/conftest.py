import httpx
import pytest

from checkout_core.cart_service import CartService
from checkout_core.providers import (
    AuthClient,
    FulfillmentClient,
    PaymentClient,
    RegionClient,
    ZipLookupClient
)
from checkout_core.registry import CheckoutRegistry
from checkout_core.session_store import MemorySessionStore

BASE_URL = "http://collaborators.test"

LOGIN_PATH = "/api/auth/login"
AVAILABILITY_PATH = "/api/unified-checkout/check-availability"
PAYMENT_PATH = "/api/unified-checkout/process"
COUNTRIES_PATH = "/countries"

COUNTRIES = [
    {
        "code": "US",
        "name": "United States",
        "region": "north_america",
        "states": [
            {"code": "CA", "name": "California"},
            {"code": "NY", "name": "New York"},
            {"code": "TX", "name": "Texas"},
        ],
    },
    {
        "code": "CA",
        "name": "Canada",
        "region": "north_america",
        "states": [
            {"code": "ON", "name": "Ontario"},
            {"code": "QC", "name": "Quebec"},
        ],
    },
    {"code": "GB", "name": "United Kingdom", "region": "europe", "states": None},
    {"code": "DE", "name": "Germany", "region": "europe", "states": None},
]

LOGIN_OK = {
    "tokens": {"accessToken": "at-1", "refreshToken": "rt-1"},
    "user": {"id": 42, "name": "Ada Lovelace", "email": "ada@example.com", "phone": "555-123-4567"},
}

ALL_AVAILABLE = {"success": True, "all_available": True, "unavailable_count": 0, "checks": []}

PAYMENT_OK = {"success": True, "order": {"orderNumber": "ORD-1001", "paymentId": "pay-1"}}


class FakeCollaborator:
    """Canned responses per (method, path); every request is recorded"""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, status=200, json=None, text=None, exc=None):
        self.routes[(method, path)] = (status, json, text, exc)

    def handler(self, request):
        self.requests.append(request)
        status, body, text, exc = self.routes.get(
            (request.method, request.url.path), (404, {"error": "Not found"}, None, None)
        )
        if exc is not None:
            raise exc
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=body)

    def transport(self):
        return httpx.MockTransport(self.handler)

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]


def make_client(client_class, fake, **kwargs):
    return client_class(base_url=BASE_URL, transport=fake.transport(), max_retries=1, **kwargs)


@pytest.fixture
def fake_api():
    fake = FakeCollaborator()
    fake.add("GET", COUNTRIES_PATH, json={"code": 200, "result": COUNTRIES})
    fake.add("POST", LOGIN_PATH, json=LOGIN_OK)
    fake.add("POST", AVAILABILITY_PATH, json=ALL_AVAILABLE)
    fake.add("POST", PAYMENT_PATH, json=PAYMENT_OK)
    fake.add("GET", "/us/90210", json={"places": [{"place name": "Beverly Hills", "state abbreviation": "CA"}]})
    fake.add("GET", "/ca/M5V", json={"places": [{"place name": "Toronto", "state abbreviation": "ON"}]})
    return fake


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def cart_service(store):
    return CartService(store)


@pytest.fixture
def auth_client(fake_api):
    return make_client(AuthClient, fake_api)


@pytest.fixture
def fulfillment_client(fake_api):
    return make_client(FulfillmentClient, fake_api)


@pytest.fixture
def payment_client(fake_api):
    return make_client(PaymentClient, fake_api)


@pytest.fixture
def region_client(fake_api):
    return make_client(RegionClient, fake_api)


@pytest.fixture
def zip_client(fake_api):
    return make_client(ZipLookupClient, fake_api)


@pytest.fixture
def registry(store, auth_client, fulfillment_client, payment_client, region_client, zip_client):
    return CheckoutRegistry(
        store=store,
        auth_client=auth_client,
        fulfillment_client=fulfillment_client,
        payment_client=payment_client,
        region_client=region_client,
        zip_client=zip_client
    )
