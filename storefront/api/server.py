"""
Naar Storefront Backend API Server

FastAPI app with two groups of routes:

- Proxy routes (``/api/auth/*``, ``/api/addresses``, ``/api/checkout/*``,
  ``/api/order/*``, ``/api/geocode/*``, ``/api/linkClick``,
  ``/api/products/*``): forward to the Commerce/Social APIs and relay the
  upstream status and JSON body verbatim.
- Checkout session routes (``/api/checkout/sessions``): drive a server-held
  ``CheckoutSession`` state machine, one per open checkout.
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..backend_client import (
    COMMERCE,
    SOCIAL,
    NaarBackendClient,
    clean_token,
    get_backend_client,
    restore_phone_plus,
)
from ..config import config
from ..errors import ErrorHandler, StorefrontError, Unauthorized, UpstreamError, ValidationError
from ..geocode_client import GeocodeClient, ReverseGeocode, get_geocode_client
from ..models import CartLine
from ..services import (
    AuthService,
    AuthSession,
    CheckoutSession,
    PaymentGatewayAdapter,
    create_token_provider,
    get_payment_gateway,
)
from ..services.address_service import AddressDraft, drop_marker
from ..utils.campaign import build_link_click_payload, get_or_create_device_id
from ..utils.logger import get_logger

logger = get_logger(__name__)

AUTH_REQUIRED = {"error": "Authorization required"}
DEVICE_HEADER = "x-device-id"


# Request models
class SessionCreateRequest(BaseModel):
    product_id: str = Field(..., description="Product being bought")
    variant_id: Optional[str] = Field(None, description="Variant id or option label")
    quantity: int = Field(1, description="Requested quantity, clamped to stock")
    device_id: Optional[str] = Field(None, description="Device ID")


class OtpRequest(BaseModel):
    phone: str


class LoginRequest(BaseModel):
    phone: str
    otp: str


class AddressCreateRequest(BaseModel):
    house_number: str = ""
    street: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    full_name: Optional[str] = None


class CampaignClickRequest(BaseModel):
    url: str
    device_id: Optional[str] = None


class PaymentEventRequest(BaseModel):
    attempt_id: str
    event: str = Field(..., description="payment.success | payment.failed | modal.dismissed")
    payload: Dict[str, Any] = Field(default_factory=dict)


class DeviceContext:
    """Login state shared by every checkout on one device"""

    def __init__(self, device_id: str, backend: NaarBackendClient):
        self.device_id = device_id
        self.auth = AuthService(
            AuthSession(device_id=device_id),
            create_token_provider(device_id),
            backend
        )
        self.restored = False
        self.last_seen = 0.0

    async def ensure_restored(self) -> None:
        if not self.restored:
            self.restored = True
            await self.auth.restore()


class CheckoutRegistry:
    """
    In-process registry of devices and open checkout sessions

    Each checkout keeps its own order cache. Checkouts untouched for
    ``idle_seconds`` are closed by ``sweep``, and devices with no open
    checkout are dropped after the same idle period.
    """

    def __init__(
        self,
        backend: NaarBackendClient,
        gateway: PaymentGatewayAdapter,
        idle_seconds: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.backend = backend
        self.gateway = gateway
        self.idle_seconds = idle_seconds if idle_seconds is not None else config.server.checkout_idle_seconds
        self.clock = clock or time.monotonic
        self.devices: Dict[str, DeviceContext] = {}
        self.sessions: Dict[str, CheckoutSession] = {}
        self._session_device: Dict[str, str] = {}
        self._last_seen: Dict[str, float] = {}

    def device(self, device_id: str) -> DeviceContext:
        context = self.devices.get(device_id)
        if context is None:
            context = DeviceContext(device_id, self.backend)
            self.devices[device_id] = context
        context.last_seen = self.clock()
        return context

    async def open(self, device_id: str, cart_line: CartLine) -> CheckoutSession:
        self.sweep()
        context = self.device(device_id)
        await context.ensure_restored()
        session = CheckoutSession(
            context.auth,
            cart_line,
            backend=self.backend,
            gateway=self.gateway
        )
        self.sessions[session.session_id] = session
        self._session_device[session.session_id] = device_id
        self._last_seen[session.session_id] = self.clock()
        logger.info(f"Opened checkout {session.session_id} for device {device_id}")
        return session

    def get(self, session_id: str) -> CheckoutSession:
        self.sweep()
        session = self.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Checkout session not found")
        now = self.clock()
        self._last_seen[session_id] = now
        self.devices[self._session_device[session_id]].last_seen = now
        return session

    def _discard(self, session_id: str) -> None:
        session = self.sessions.pop(session_id)
        self._session_device.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        session.close()

    def close(self, session_id: str) -> None:
        self.get(session_id)
        self._discard(session_id)

    def sweep(self) -> int:
        """
        Close idle checkouts and forget idle devices

        Returns:
            Number of checkouts closed
        """
        cutoff = self.clock() - self.idle_seconds
        stale = [sid for sid, seen in self._last_seen.items() if seen < cutoff]
        for session_id in stale:
            self._discard(session_id)

        active_devices = set(self._session_device.values())
        idle_devices = [
            device_id for device_id, context in self.devices.items()
            if device_id not in active_devices and context.last_seen < cutoff
        ]
        for device_id in idle_devices:
            del self.devices[device_id]

        if stale or idle_devices:
            logger.info(f"Swept {len(stale)} idle checkout(s) and {len(idle_devices)} idle device(s)")
        return len(stale)


def _token(request: Request) -> Optional[str]:
    return clean_token(request.headers.get("authorization"))


def _relay(result: Tuple[int, Any]) -> JSONResponse:
    status, body = result
    return JSONResponse(content=body, status_code=status)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")


def _session_view(session: CheckoutSession, ok: bool) -> Dict[str, Any]:
    view = session.to_dict()
    view["ok"] = ok
    return view


def create_app(
    backend: Optional[NaarBackendClient] = None,
    geocode: Optional[GeocodeClient] = None,
    gateway: Optional[PaymentGatewayAdapter] = None
) -> FastAPI:
    """
    Build the API application

    Args:
        backend: Backend client (defaults to the process singleton)
        geocode: Geocoding client
        gateway: Payment gateway adapter

    Returns:
        Configured FastAPI app
    """
    backend = backend or get_backend_client()
    geocode = geocode or get_geocode_client()
    gateway = gateway or get_payment_gateway()
    registry = CheckoutRegistry(backend, gateway)

    app = FastAPI(
        title="Naar Storefront Backend API",
        description="Proxy and checkout API for the Naar storefront",
        version="1.0.0"
    )
    app.state.registry = registry

    # Add rate limiting
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Add CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if isinstance(exc, UpstreamError):
            status = exc.status_code
        elif isinstance(exc, Unauthorized):
            status = 401
        else:
            status = 400
        return JSONResponse(status_code=status, content={"error": ErrorHandler.to_dict(exc)})

    # Health check
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "active_sessions": len(registry.sessions),
            "payment_gateway_loaded": gateway.is_loaded
        }

    # ========================================================================
    # Proxy routes
    # ========================================================================

    @app.get("/api/auth/generateOtp")
    @limiter.limit(config.server.otp_rate_limit)
    async def generate_otp(request: Request, phoneNumber: Optional[str] = None):
        if not phoneNumber:
            return JSONResponse({"error": "phoneNumber required"}, status_code=400)
        return _relay(await backend.proxy(
            "GET", SOCIAL, "/generateOtp", params={"phoneNumber": restore_phone_plus(phoneNumber)}
        ))

    @app.get("/api/auth/verifyOtp")
    @limiter.limit(config.server.otp_rate_limit)
    async def verify_otp(request: Request, phoneNumber: Optional[str] = None, otp: Optional[str] = None):
        if not phoneNumber or not otp:
            return JSONResponse({"error": "phoneNumber and otp required"}, status_code=400)
        return _relay(await backend.proxy(
            "GET", SOCIAL, "/verifyOtp",
            params={"phoneNumber": restore_phone_plus(phoneNumber), "otp": otp}
        ))

    @app.get("/api/auth/userDetails")
    async def get_user_details(request: Request):
        token = _token(request)
        if not token:
            return JSONResponse(AUTH_REQUIRED, status_code=401)
        return _relay(await backend.proxy("GET", SOCIAL, "/userDetails", auth_token=token))

    @app.post("/api/auth/userDetails")
    async def create_user_details(request: Request):
        token = _token(request)
        if not token:
            return JSONResponse(AUTH_REQUIRED, status_code=401)
        body = await _json_body(request)
        return _relay(await backend.proxy("POST", SOCIAL, "/userDetails", json_data=body, auth_token=token))

    @app.get("/api/addresses")
    async def list_addresses(request: Request):
        token = _token(request)
        if not token:
            return JSONResponse(AUTH_REQUIRED, status_code=401)
        return _relay(await backend.proxy(
            "GET", COMMERCE, "/addresses", auth_token=token, headers=backend.config.platform_headers
        ))

    @app.post("/api/addresses")
    async def create_address(request: Request):
        token = _token(request)
        if not token:
            return JSONResponse(AUTH_REQUIRED, status_code=401)
        body = await _json_body(request)
        return _relay(await backend.proxy(
            "POST", COMMERCE, "/addresses", json_data=body, auth_token=token,
            headers=backend.config.platform_headers
        ))

    @app.post("/api/checkout/estimate")
    async def checkout_estimate(request: Request):
        token = _token(request)
        if not token:
            return JSONResponse(AUTH_REQUIRED, status_code=401)
        body = await _json_body(request)
        return _relay(await backend.proxy(
            "POST", COMMERCE, "/checkout/estimate", json_data=body, auth_token=token
        ))

    @app.post("/api/checkout/createOrder")
    async def checkout_create_order(request: Request):
        token = _token(request)
        if not token:
            return JSONResponse(AUTH_REQUIRED, status_code=401)
        body = await _json_body(request)
        if not isinstance(body, dict) or not body.get("quoteId"):
            return JSONResponse({"error": "quoteId required"}, status_code=400)
        return _relay(await backend.proxy(
            "POST", COMMERCE, "/checkout/createOrder", json_data={"quoteId": body["quoteId"]},
            auth_token=token
        ))

    @app.put("/api/order/{order_id}/cancel")
    async def cancel_order(request: Request, order_id: str):
        token = _token(request)
        if not token:
            return JSONResponse(AUTH_REQUIRED, status_code=401)
        return _relay(await backend.proxy("PUT", COMMERCE, f"/order/{order_id}/cancel", auth_token=token))

    @app.get("/api/geocode/search")
    async def geocode_search(q: Optional[str] = None):
        results = await geocode.search(q or "")
        return {"results": [r.to_dict() for r in results]}

    @app.get("/api/geocode/reverse")
    async def geocode_reverse(lat: Optional[float] = None, lng: Optional[float] = None):
        if lat is None or lng is None:
            return ReverseGeocode().to_dict()
        result = await geocode.reverse(lat, lng)
        return result.to_dict()

    @app.post("/api/linkClick")
    async def link_click(request: Request):
        body = await _json_body(request)
        return _relay(await backend.proxy(
            "POST", SOCIAL, "/linkClick", json_data=body, auth_token=_token(request),
            headers=backend.config.platform_headers
        ))

    @app.post("/api/campaign/click")
    async def campaign_click(request: Request, body: CampaignClickRequest):
        """Record campaign attribution for a landing URL, if it carries any"""
        device_id = get_or_create_device_id(body.device_id or request.headers.get(DEVICE_HEADER))
        payload = build_link_click_payload(body.url, device_id)
        if payload is None:
            return {"logged": False, "device_id": device_id}
        await backend.log_link_click(payload, auth_token=_token(request))
        return {"logged": True, "device_id": device_id, "campaign": payload}

    @app.get("/api/products/{product_id}")
    async def get_product(product_id: str):
        return _relay(await backend.proxy("GET", COMMERCE, f"/products/{product_id}"))

    # ========================================================================
    # Checkout session routes
    # ========================================================================

    @app.post("/api/checkout/sessions")
    async def open_checkout(request: Request, body: SessionCreateRequest):
        """Open a checkout for one product line"""
        device_id = get_or_create_device_id(body.device_id or request.headers.get(DEVICE_HEADER))

        product = await backend.get_product(body.product_id)
        variant = product.find_variant(body.variant_id) if body.variant_id else product.default_variant()
        if variant is None:
            raise ValidationError("Variant not found", field="variant_id")

        cart_line = CartLine.for_variant(product.id or body.product_id, variant, body.quantity)
        session = await registry.open(device_id, cart_line)
        view = _session_view(session, True)
        view["device_id"] = device_id
        return view

    @app.get("/api/checkout/sessions/{session_id}")
    async def get_checkout(session_id: str):
        session = registry.get(session_id)
        return _session_view(session, True)

    @app.post("/api/checkout/sessions/{session_id}/buy-now")
    async def checkout_buy_now(session_id: str):
        session = registry.get(session_id)
        return _session_view(session, await session.buy_now())

    @app.post("/api/checkout/sessions/{session_id}/otp")
    @limiter.limit(config.server.otp_rate_limit)
    async def checkout_request_otp(request: Request, session_id: str, body: OtpRequest):
        session = registry.get(session_id)
        return _session_view(session, await session.request_otp(body.phone))

    @app.post("/api/checkout/sessions/{session_id}/login")
    @limiter.limit(config.server.otp_rate_limit)
    async def checkout_login(request: Request, session_id: str, body: LoginRequest):
        session = registry.get(session_id)
        return _session_view(session, await session.login(body.phone, body.otp))

    @app.post("/api/checkout/sessions/{session_id}/addresses/new")
    async def checkout_add_address(session_id: str):
        session = registry.get(session_id)
        return _session_view(session, await session.add_address())

    @app.post("/api/checkout/sessions/{session_id}/addresses")
    async def checkout_create_address(session_id: str, body: AddressCreateRequest):
        session = registry.get(session_id)
        draft = AddressDraft(
            house_number=body.house_number,
            street=body.street,
            full_name=body.full_name
        )
        if body.lat is not None and body.lng is not None:
            if body.city or body.state or body.pincode:
                draft.marker = (body.lat, body.lng)
                draft.geo = ReverseGeocode(
                    city=body.city or "", state=body.state or "", pincode=body.pincode or ""
                )
            else:
                await drop_marker(draft, body.lat, body.lng, geocode)
        return _session_view(session, await session.create_address(draft))

    @app.post("/api/checkout/sessions/{session_id}/addresses/{address_id}/select")
    async def checkout_select_address(session_id: str, address_id: str):
        session = registry.get(session_id)
        return _session_view(session, await session.select_address(address_id))

    @app.post("/api/checkout/sessions/{session_id}/back")
    async def checkout_back(session_id: str):
        session = registry.get(session_id)
        return _session_view(session, await session.back())

    @app.post("/api/checkout/sessions/{session_id}/pay")
    async def checkout_pay(session_id: str):
        session = registry.get(session_id)
        return _session_view(session, await session.pay())

    @app.post("/api/checkout/sessions/{session_id}/payment-events")
    async def checkout_payment_event(session_id: str, body: PaymentEventRequest):
        session = registry.get(session_id)
        accepted = await session.handle_payment_event(body.attempt_id, body.event, body.payload)
        return _session_view(session, accepted)

    @app.delete("/api/checkout/sessions/{session_id}")
    async def close_checkout(session_id: str):
        registry.close(session_id)
        return {"message": "Checkout session closed"}

    # Root endpoint
    @app.get("/")
    async def root():
        """API information"""
        return {
            "name": "Naar Storefront Backend API",
            "version": "1.0.0",
            "status": "operational",
            "endpoints": {
                "health": "/health",
                "checkout_sessions": "/api/checkout/sessions",
                "addresses": "/api/addresses",
                "geocode": "/api/geocode/search"
            },
            "docs": "/docs"
        }

    return app
