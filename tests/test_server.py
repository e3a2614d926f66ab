"""API tests: proxy relays and the checkout session routes."""

from datetime import datetime, timezone

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from conftest import PHONE, VALID_OTP
from storefront.api import create_app
from storefront.api.server import CheckoutRegistry
from storefront.config import GeocodeConfig
from storefront.geocode_client import GeocodeClient
from storefront.models import CartLine


@pytest.fixture
def geocode():
    def handler(request):
        if "latlng" in request.url.params:
            return httpx.Response(200, json={"results": [{"address_components": [
                {"long_name": "Mumbai", "types": ["locality"]},
                {"long_name": "Maharashtra", "types": ["administrative_area_level_1"]},
                {"long_name": "400001", "types": ["postal_code"]},
            ]}]})
        return httpx.Response(200, json={"results": [
            {"formatted_address": "Fort, Mumbai", "geometry": {"location": {"lat": 18.93, "lng": 72.83}}}
        ]})

    return GeocodeClient(GeocodeConfig(google_maps_api_key="k"), transport=httpx.MockTransport(handler))


@pytest.fixture
def client(backend, geocode, gateway, clock):
    # Sessions created through the API run on the wall clock
    clock.now = datetime.now(timezone.utc)
    with TestClient(create_app(backend, geocode, gateway)) as test_client:
        yield test_client


def open_session(client, device_id="device-web"):
    response = client.post("/api/checkout/sessions", json={
        "product_id": "prod-1", "variant_id": "var-1", "quantity": 5, "device_id": device_id
    })
    assert response.status_code == 200
    return response.json()


# ---------------------------------------------------------------------------
# Proxy routes
# ---------------------------------------------------------------------------

def test_health_and_root(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/").json()["endpoints"]["checkout_sessions"] == "/api/checkout/sessions"


def test_generate_otp_restores_plus(client, upstream):
    response = client.get("/api/auth/generateOtp?phoneNumber=+919876543210")

    assert response.status_code == 200
    assert upstream.otp_requests == [PHONE]


def test_otp_routes_require_params(client):
    assert client.get("/api/auth/generateOtp").status_code == 400
    assert client.get("/api/auth/verifyOtp", params={"phoneNumber": PHONE}).status_code == 400


def test_verify_otp_relays_upstream_error(client):
    response = client.get("/api/auth/verifyOtp", params={"phoneNumber": PHONE, "otp": "0000"})

    assert response.status_code == 400
    assert response.json() == {"message": "Invalid OTP"}


def test_otp_route_is_rate_limited(client):
    statuses = [
        client.get("/api/auth/generateOtp", params={"phoneNumber": PHONE}).status_code
        for _ in range(6)
    ]

    assert statuses[:5] == [200] * 5
    assert statuses[5] == 429


@pytest.mark.parametrize("method, path", [
    ("GET", "/api/auth/userDetails"),
    ("GET", "/api/addresses"),
    ("POST", "/api/checkout/estimate"),
    ("POST", "/api/checkout/createOrder"),
    ("PUT", "/api/order/o-1/cancel"),
])
def test_auth_routes_reject_missing_token(client, upstream, method, path):
    response = client.request(method, path, json={})

    assert response.status_code == 401
    assert response.json() == {"error": "Authorization required"}
    assert upstream.calls == []


def test_addresses_relay_with_bearer_token(client, upstream):
    upstream.tokens.add("tok-seed")
    upstream.add_address("addr-1", "1, Marine Drive")

    response = client.get("/api/addresses", headers={"Authorization": "Bearer tok-seed"})

    assert response.status_code == 200
    assert response.json()["data"][0]["_id"] == "addr-1"


def test_expired_token_status_is_relayed(client):
    response = client.get("/api/addresses", headers={"Authorization": "tok-gone"})

    assert response.status_code == 401
    assert response.json() == {"message": "Token expired"}


def test_create_order_requires_quote_id(client, upstream):
    upstream.tokens.add("tok-seed")

    response = client.post("/api/checkout/createOrder", json={}, headers={"Authorization": "tok-seed"})
    assert response.status_code == 400

    response = client.post(
        "/api/checkout/createOrder", json={"quoteId": "quote-1", "extra": True},
        headers={"Authorization": "tok-seed"}
    )
    assert response.status_code == 200
    assert response.json()["orderId"] == "order-1"


def test_invalid_json_body_is_400(client, upstream):
    upstream.tokens.add("tok-seed")

    response = client.post(
        "/api/checkout/estimate", content=b"{not json",
        headers={"Authorization": "tok-seed", "Content-Type": "application/json"}
    )

    assert response.status_code == 400


def test_geocode_routes(client):
    assert client.get("/api/geocode/search", params={"q": "fort"}).json() == {
        "results": [{"lat": 18.93, "lon": 72.83, "display_name": "Fort, Mumbai"}]
    }
    assert client.get("/api/geocode/reverse", params={"lat": 18.93, "lng": 72.83}).json() == {
        "city": "Mumbai", "state": "Maharashtra", "pincode": "400001"
    }
    assert client.get("/api/geocode/reverse").json() == {"city": "", "state": "", "pincode": ""}


def test_campaign_click_logs_only_with_campaign(client, upstream):
    plain = client.post("/api/campaign/click", json={"url": "/p/chai", "device_id": "d-1"}).json()
    tagged = client.post("/api/campaign/click", json={"url": "/p/chai?source=wa", "device_id": "d-1"}).json()

    assert plain == {"logged": False, "device_id": "d-1"}
    assert tagged["logged"] is True
    assert tagged["campaign"]["source"] == "wa"
    assert upstream.count("POST", "/linkClick") == 1


# ---------------------------------------------------------------------------
# Checkout sessions
# ---------------------------------------------------------------------------

def test_open_session_clamps_quantity(client):
    view = open_session(client)

    assert view["step"] == "idle"
    assert view["cart_line"] == {"productId": "prod-1", "productVariantId": "var-1", "quantity": 3}
    assert view["device_id"] == "device-web"


def test_unknown_variant_is_400(client):
    response = client.post("/api/checkout/sessions", json={"product_id": "prod-1", "variant_id": "var-9"})

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "ValidationError"


def test_unknown_session_is_404(client):
    assert client.get("/api/checkout/sessions/nope").status_code == 404


def test_full_checkout_through_api(client, upstream, loader):
    session_id = open_session(client)["session_id"]
    base = f"/api/checkout/sessions/{session_id}"

    assert client.post(f"{base}/buy-now").json()["step"] == "login"
    assert client.post(f"{base}/otp", json={"phone": "9876543210"}).json()["ok"]

    view = client.post(f"{base}/login", json={"phone": "9876543210", "otp": VALID_OTP}).json()
    assert view["step"] == "address-map"
    assert view["auth"]["is_authenticated"]

    view = client.post(f"{base}/addresses", json={
        "house_number": "221B", "street": "Baker Street", "lat": 18.93, "lng": 72.83,
        "full_name": "Asha Rao",
    }).json()
    assert view["ok"], view["last_error"]
    assert view["step"] == "confirm"
    assert view["selected_address"]["city"] == "Mumbai"
    assert view["estimate"]["quoteId"]

    view = client.post(f"{base}/pay").json()
    assert view["step"] == "payment"
    attempt_id = view["payment"]["attempt_id"]
    assert view["payment"]["options"]["amount"] == 49950

    view = client.post(f"{base}/payment-events", json={
        "attempt_id": attempt_id, "event": "payment.success", "payload": {"razorpay_payment_id": "pay_1"}
    }).json()
    assert view["ok"]
    assert view["step"] == "success"

    late = client.post(f"{base}/payment-events", json={"attempt_id": attempt_id, "event": "modal.dismissed"})
    assert late.json()["ok"] is False
    assert upstream.cancelled_orders == []

    assert client.delete(base).status_code == 200
    assert client.get(base).status_code == 404


def test_dismissed_payment_returns_to_confirm(client, upstream):
    upstream.tokens.add("tok-seed")
    upstream.users["tok-seed"] = {"userId": "user-1", "name": "Asha", "phoneNumber": PHONE}
    upstream.add_address("addr-1", "1, Marine Drive", is_default=True)

    session_id = open_session(client)["session_id"]
    base = f"/api/checkout/sessions/{session_id}"
    client.app.state.registry.devices["device-web"].auth.session.token = "tok-seed"

    view = client.post(f"{base}/buy-now").json()
    assert view["step"] == "confirm"
    view = client.post(f"{base}/addresses/addr-1/select").json()
    assert view["step"] == "confirm"

    attempt_id = client.post(f"{base}/pay").json()["payment"]["attempt_id"]
    view = client.post(f"{base}/payment-events", json={"attempt_id": attempt_id, "event": "modal.dismissed"}).json()

    assert view["step"] == "confirm"
    assert view["last_error"] == "Payment cancelled"
    assert upstream.cancelled_orders == ["order-1"]


def test_sessions_on_one_device_share_login(client, upstream):
    first = open_session(client)["session_id"]
    client.post(f"/api/checkout/sessions/{first}/buy-now")
    client.post(f"/api/checkout/sessions/{first}/login", json={"phone": "9876543210", "otp": VALID_OTP})

    second = open_session(client)["session_id"]
    view = client.post(f"/api/checkout/sessions/{second}/buy-now").json()

    assert view["auth"]["is_authenticated"]
    assert view["step"] == "address-map"


def test_checkouts_on_one_device_have_separate_order_caches(client):
    first = open_session(client)["session_id"]
    second = open_session(client)["session_id"]
    registry = client.app.state.registry

    assert registry.get(first).order_cache is not registry.get(second).order_cache
    assert registry.get(first).auth is registry.get(second).auth


# ---------------------------------------------------------------------------
# Registry housekeeping
# ---------------------------------------------------------------------------

class Ticker:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def registry(backend, gateway):
    return CheckoutRegistry(backend, gateway, idle_seconds=600, clock=Ticker())


async def test_idle_checkouts_are_swept(registry):
    stale = await registry.open("device-1", CartLine("prod-1", "var-1"))
    registry.clock.now += 300
    fresh = await registry.open("device-1", CartLine("prod-1", "var-1"))
    listeners = registry.devices["device-1"].auth.session._logout_listeners
    assert len(listeners) == 2

    registry.clock.now += 400

    assert registry.sweep() == 1
    assert stale.closed
    assert list(registry.sessions) == [fresh.session_id]
    assert len(listeners) == 1
    with pytest.raises(HTTPException):
        registry.get(stale.session_id)


async def test_touching_a_checkout_keeps_it_open(registry):
    session = await registry.open("device-1", CartLine("prod-1", "var-1"))

    registry.clock.now += 500
    registry.get(session.session_id)
    registry.clock.now += 500

    assert registry.sweep() == 0
    assert not session.closed


async def test_idle_devices_without_checkouts_are_dropped(registry):
    session = await registry.open("device-1", CartLine("prod-1", "var-1"))
    registry.close(session.session_id)
    assert "device-1" in registry.devices

    registry.clock.now += 601
    registry.sweep()

    assert registry.devices == {}
