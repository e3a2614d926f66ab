"""Pytest fixtures: an in-memory Naar upstream behind httpx.MockTransport."""

import json
import re
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from storefront.backend_client import NaarBackendClient
from storefront.config import APIConfig, CheckoutConfig, PaymentConfig
from storefront.errors import GatewayLoadFailed
from storefront.models import CartLine, UserDetails
from storefront.services import (
    AuthService,
    AuthSession,
    CheckoutSession,
    HostedCheckoutWidget,
    MemoryTokenProvider,
    OrderCache,
    PaymentGatewayAdapter,
)
from storefront.services.payment_gateway import ScriptLoader

COMMERCE_URL = "https://commerce.test/v1"
SOCIAL_URL = "https://social.test/v1"
VALID_OTP = "1234"
PHONE = "+919876543210"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeUpstream:
    """Commerce + Social APIs with call counters"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.tokens = set()
        self.users = {}
        self.addresses = []
        self.order_ttl = timedelta(minutes=15)
        self.total = 499.5

        self.calls = []
        self.created_orders = []
        self.cancelled_orders = []
        self.estimate_requests = []
        self.otp_requests = []

        self.fail_estimate = None       # status code to return from /checkout/estimate
        self.fail_create_order = None
        self.fail_cancel = None
        self.fail_addresses = None

    # helpers -----------------------------------------------------------

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p in self.calls if m == method and p == path)

    def add_address(self, address_id: str, line1: str, is_default: bool = False):
        self.addresses.append({
            "_id": address_id,
            "addressNickName": "Home",
            "fullName": "Asha",
            "addressLine1": line1,
            "city": "Delhi",
            "state": "Delhi",
            "pincode": "110001",
            "phone": PHONE,
            "location": {"type": "Point", "coordinates": [77.209, 28.6139]},
            "isDefault": is_default,
        })

    def _json(self, status: int, body) -> httpx.Response:
        return httpx.Response(status, json=body)

    def _authorized(self, request: httpx.Request) -> bool:
        return request.headers.get("authorization") in self.tokens

    # router ------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path.replace("/v1", "", 1)
        method = request.method
        self.calls.append((method, path))
        body = json.loads(request.content) if request.content else None

        if host == "social.test":
            return self._social(request, method, path, body)
        return self._commerce(request, method, path, body)

    def _social(self, request, method, path, body):
        params = request.url.params
        if path == "/generateOtp":
            self.otp_requests.append(params.get("phoneNumber"))
            return self._json(200, {"status": "success"})
        if path == "/verifyOtp":
            if params.get("otp") != VALID_OTP:
                return self._json(400, {"message": "Invalid OTP"})
            token = f"tok-{len(self.tokens) + 1}"
            self.tokens.add(token)
            return self._json(200, {"status": "success", "token": token})
        if path == "/linkClick":
            return self._json(200, {"status": "recorded"})

        if not self._authorized(request):
            return self._json(401, {"message": "Token expired"})
        token = request.headers["authorization"]
        if path == "/userDetails" and method == "GET":
            user = self.users.get(token)
            return self._json(200, {"data": user or {}})
        if path == "/userDetails" and method == "POST":
            self.users[token] = {"userId": "user-1", "name": body["name"], "phoneNumber": PHONE}
            return self._json(200, {"status": "success"})
        if path == "/linkDevice":
            return self._json(200, {"status": "linked"})
        return self._json(404, {"message": "Not found"})

    def _commerce(self, request, method, path, body):
        product = re.fullmatch(r"/products/([\w-]+)", path)
        if product:
            return self._json(200, {"data": {
                "_id": product.group(1),
                "title": "Chai Masala",
                "content": [{"fileName": "chai.png"}],
                "variants": [
                    {"_id": "var-1", "variantOption": "100g", "price": 249.75, "quantity": 3},
                    {"_id": "var-2", "variantOption": "250g", "price": 499.5, "inStock": False},
                ],
            }})

        if not self._authorized(request):
            return self._json(401, {"message": "Token expired"})

        if path == "/addresses" and method == "GET":
            if self.fail_addresses:
                return self._json(self.fail_addresses, {"message": "Address service down"})
            return self._json(200, {"data": list(self.addresses)})
        if path == "/addresses" and method == "POST":
            record = dict(body, _id=f"addr-{len(self.addresses) + 1}")
            self.addresses.insert(0, record)
            return self._json(201, {"data": {"_id": record["_id"]}})
        if path == "/checkout/estimate":
            self.estimate_requests.append(body)
            if self.fail_estimate:
                return self._json(self.fail_estimate, {"message": "Address not serviceable"})
            quote_id = f"quote-{len(self.estimate_requests)}"
            return self._json(200, {
                "quoteId": quote_id,
                "productPrice": self.total - 40,
                "shipping": 40,
                "total": self.total,
                "logisticsOptions": [
                    {"label": "Express", "logisticsChoice": "hyperlocal", "deliveryText": "Today"}
                ],
            })
        if path == "/checkout/createOrder":
            if self.fail_create_order:
                return self._json(self.fail_create_order, {"message": "Quote expired"})
            number = len(self.created_orders) + 1
            order = {
                "orderId": f"order-{number}",
                "razorpayOrderId": f"order_rzp{number}",
                "expiryTime": (self.clock.now + self.order_ttl).isoformat().replace("+00:00", "Z"),
                "quoteId": body["quoteId"],
            }
            self.created_orders.append(order)
            return self._json(200, order)
        cancel = re.fullmatch(r"/order/([\w-]+)/cancel", path)
        if cancel and method == "PUT":
            self.cancelled_orders.append(cancel.group(1))
            if self.fail_cancel:
                return self._json(self.fail_cancel, {"message": "Cannot cancel"})
            return self._json(200, {"status": "cancelled"})
        return self._json(404, {"message": "Not found"})


class FakeLoader(ScriptLoader):
    """Script loader that counts loads and records every widget built"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.loads = 0
        self.widgets = []

    async def load(self):
        self.loads += 1
        if self.fail:
            raise GatewayLoadFailed()

        def factory(options):
            widget = HostedCheckoutWidget(options)
            self.widgets.append(widget)
            return widget
        return factory

    @property
    def opened(self):
        return [w for w in self.widgets if w.opened]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def upstream(clock):
    return FakeUpstream(clock)


@pytest.fixture
def api_config():
    return APIConfig(commerce_url=COMMERCE_URL, social_url=SOCIAL_URL)


@pytest.fixture
def backend(api_config, upstream):
    return NaarBackendClient(api_config, transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def checkout_config():
    return CheckoutConfig()


@pytest.fixture
def payment_config():
    return PaymentConfig(razorpay_key="rzp_test_key")


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def gateway(payment_config, loader):
    return PaymentGatewayAdapter(payment_config, loader)


@pytest.fixture
def auth(backend, checkout_config):
    return AuthService(AuthSession(device_id="device-1"), MemoryTokenProvider(), backend, checkout_config)


@pytest.fixture
def logged_in(auth, upstream):
    """Auth service with a valid token and an existing user record"""
    upstream.tokens.add("tok-seed")
    upstream.users["tok-seed"] = {"userId": "user-1", "name": "Asha", "phoneNumber": PHONE}
    auth.session.token = "tok-seed"
    auth.session.login_phone = PHONE
    auth.session.user = UserDetails(user_id="user-1", name="Asha", phone_number=PHONE)
    auth.token_provider.set_token("tok-seed", PHONE)
    return auth


@pytest.fixture
def order_cache(backend, auth, clock):
    return OrderCache(backend, auth.session, clock)


@pytest.fixture
def make_checkout(auth, backend, order_cache, gateway, clock, checkout_config):
    def _make(**kwargs):
        return CheckoutSession(
            auth,
            kwargs.pop("cart_line", CartLine("prod-1", "var-1", 2)),
            backend=backend,
            order_cache=kwargs.pop("order_cache", order_cache),
            gateway=kwargs.pop("gateway", gateway),
            clock=clock,
            checkout_config=checkout_config,
            **kwargs
        )
    return _make
