"""
Naar Backend Client

Async client for the two upstream services the storefront fronts:

- Commerce API: products, addresses, checkout estimate, orders
- Social API: OTP login, user details, link-click attribution

Typed methods raise storefront errors (``Unauthorized``, ``UpstreamError``,
``EstimationFailed``, ``OrderCreationFailed``). ``proxy`` is the raw
pass-through used by the HTTP routes and never raises for HTTP status codes.
"""

import json
import re
import shlex
from typing import Dict, List, Optional, Any, Tuple, Union
from urllib.parse import urlencode

import httpx

from .config import config, APIConfig
from .errors import (
    Unauthorized,
    UpstreamError,
    EstimationFailed,
    OrderCreationFailed,
)
from .models import Address, CartLine, Estimate, Order, Product, UserDetails
from .utils.logger import get_logger, mask_token

logger = get_logger(__name__)

COMMERCE = "commerce"
SOCIAL = "social"

JsonBody = Union[Dict[str, Any], List[Any]]

_BEARER_PREFIX = re.compile(r"^Bearer\s+", re.IGNORECASE)


def clean_token(token: Optional[str]) -> Optional[str]:
    """Strip a ``Bearer`` prefix; upstream expects the bare id token"""
    if not token:
        return None
    cleaned = _BEARER_PREFIX.sub("", token).strip()
    return cleaned or None


def restore_phone_plus(phone: str) -> str:
    """
    Restore a ``+`` that was decoded into a space in a query string

    ``?phoneNumber=+919999999999`` arrives as ``" 919999999999"``.
    """
    if phone.startswith(" ") and phone[1:].isdigit():
        return "+" + phone.strip()
    return phone


def _error_message(body: Any, status_code: int) -> str:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message
    return f"Request failed: {status_code}"


class NaarBackendClient:
    """Client for the Naar Commerce and Social APIs"""

    def __init__(
        self,
        api_config: Optional[APIConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the backend client

        Args:
            api_config: Endpoint configuration (defaults to global config)
            transport: Optional httpx transport, used by tests
        """
        self.config = api_config or config.api
        self.base_urls = {
            COMMERCE: self.config.commerce_url,
            SOCIAL: self.config.social_url,
        }
        self.debug_curl = self.config.debug_curl
        self._transport = transport

        self.timeout = httpx.Timeout(float(self.config.timeout))
        self.limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)

        logger.info(
            f"NaarBackendClient initialized - commerce: {self.config.commerce_url}, "
            f"social: {self.config.social_url}"
        )

    def _generate_curl_command(self, method: str, url: str, headers: Dict,
                               params: Optional[Dict], json_data: Optional[JsonBody]) -> str:
        """Generate curl command for debugging"""
        curl_parts = ['curl', '-X', method.upper()]

        for key, value in headers.items():
            if key.lower() == 'authorization':
                value = mask_token(value)
            curl_parts.extend(['-H', shlex.quote(f'{key}: {value}')])

        if json_data is not None:
            curl_parts.extend(['-d', shlex.quote(json.dumps(json_data, separators=(',', ':')))])

        if params:
            url = f"{url}?{urlencode(params)}"

        curl_parts.append(shlex.quote(url))
        return ' '.join(curl_parts)

    def _build_url(self, service: str, path: str) -> str:
        base = self.base_urls[service]
        return f"{base}{path if path.startswith('/') else '/' + path}"

    async def _send(
        self,
        method: str,
        service: str,
        path: str,
        params: Optional[Dict] = None,
        json_data: Optional[JsonBody] = None,
        auth_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        """Issue one upstream request; transport failures raise UpstreamError"""
        url = self._build_url(service, path)

        request_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)

        token = clean_token(auth_token)
        if token:
            request_headers["Authorization"] = token

        if self.debug_curl:
            logger.info(f"CURL: {self._generate_curl_command(method, url, request_headers, params, json_data)}")

        logger.info(f"[REQUEST] {method.upper()} {url}")
        if params:
            logger.debug(f"[REQUEST] Params: {params}")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, limits=self.limits, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method.upper(),
                    url=url,
                    params=params,
                    json=json_data,
                    headers=request_headers
                )
        except httpx.HTTPError as e:
            logger.error(f"Network/connection error for {path}: {e}. Check backend availability.")
            raise UpstreamError(
                "Service unavailable. Please try again.",
                status_code=503,
                endpoint=path
            ) from e

        logger.debug(f"{method.upper()} {url} -> {response.status_code}")
        return response

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        text = response.text
        if not text:
            return {}
        try:
            return response.json()
        except json.JSONDecodeError:
            logger.debug(f"Non-JSON body from {response.request.url}")
            return {}

    async def _make_request(
        self,
        method: str,
        service: str,
        path: str,
        params: Optional[Dict] = None,
        json_data: Optional[JsonBody] = None,
        auth_token: Optional[str] = None,
        require_auth: bool = False,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """
        Make a request and return the decoded JSON body

        Raises:
            Unauthorized: token missing for an auth-only call, or upstream 401/403
            UpstreamError: any other non-2xx status or a connection failure
        """
        if require_auth and not clean_token(auth_token):
            logger.warning(f"Auth required for {path} but no token provided")
            raise Unauthorized("Authorization required")

        response = await self._send(method, service, path, params, json_data, auth_token, headers)
        body = self._parse_body(response)

        if response.is_success:
            return body

        message = _error_message(body, response.status_code)
        if response.status_code in (401, 403):
            logger.error(f"Unauthorized access to {path} ({response.status_code}): {message}")
            raise Unauthorized(message)

        logger.error(f"HTTP {response.status_code} for {path}: {message}")
        raise UpstreamError(message, status_code=response.status_code, body=body, endpoint=path)

    async def proxy(
        self,
        method: str,
        service: str,
        path: str,
        params: Optional[Dict] = None,
        json_data: Optional[JsonBody] = None,
        auth_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Tuple[int, Any]:
        """
        Forward a request and relay status + body verbatim

        Returns:
            Tuple of (status_code, json_body); connection failures map to 503
        """
        try:
            response = await self._send(method, service, path, params, json_data, auth_token, headers)
        except UpstreamError as e:
            return e.status_code, {"error": e.message}
        return response.status_code, self._parse_body(response)

    # ================================
    # CATALOGUE APIs (Commerce)
    # ================================

    async def get_product(self, product_id: str) -> Product:
        """Fetch a single product with its variants"""
        data = await self._make_request("GET", COMMERCE, f"/products/{product_id}")
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return Product.from_dict(data)

    # ================================
    # AUTH APIs (Social)
    # ================================

    async def generate_otp(self, phone: str) -> Dict[str, Any]:
        """Send an OTP to ``phone`` (E.164 with country code)"""
        return await self._make_request(
            "GET", SOCIAL, "/generateOtp", params={"phoneNumber": restore_phone_plus(phone)}
        )

    async def verify_otp(self, phone: str, otp: str) -> Dict[str, Any]:
        """Exchange phone + OTP for a custom sign-in token: ``{status, token}``"""
        return await self._make_request(
            "GET", SOCIAL, "/verifyOtp",
            params={"phoneNumber": restore_phone_plus(phone), "otp": otp}
        )

    async def get_user_details(self, auth_token: str) -> Optional[UserDetails]:
        """Get the user record for the token, or None if it does not exist yet"""
        result = await self._make_request(
            "GET", SOCIAL, "/userDetails", auth_token=auth_token, require_auth=True
        )
        data = result.get("data") if isinstance(result, dict) else None
        if isinstance(data, dict) and data.get("userId"):
            return UserDetails.from_dict(data)
        return None

    async def create_user(self, auth_token: str, name: str) -> Dict[str, Any]:
        """Create the user record for a freshly verified phone"""
        return await self._make_request(
            "POST", SOCIAL, "/userDetails", json_data={"name": name},
            auth_token=auth_token, require_auth=True
        )

    async def link_device_to_user(self, auth_token: str, device_id: str) -> Dict[str, Any]:
        """Attach an anonymous device id to the logged-in user"""
        return await self._make_request(
            "POST", SOCIAL, "/linkDevice", json_data={"deviceId": device_id},
            auth_token=auth_token, require_auth=True
        )

    async def log_link_click(self, payload: Dict[str, Any], auth_token: Optional[str] = None) -> Dict[str, Any]:
        """Record a campaign link click"""
        return await self._make_request(
            "POST", SOCIAL, "/linkClick", json_data=payload, auth_token=auth_token,
            headers=self.config.platform_headers
        )

    # ================================
    # ADDRESS APIs (Commerce)
    # ================================

    async def get_addresses(self, auth_token: str) -> List[Address]:
        """List saved addresses; upstream returns either a list or {data: [...]}"""
        result = await self._make_request(
            "GET", COMMERCE, "/addresses", auth_token=auth_token, require_auth=True,
            headers=self.config.platform_headers
        )
        items = result if isinstance(result, list) else (result or {}).get("data") or []
        return [Address.from_dict(item) for item in items if isinstance(item, dict)]

    async def create_address(self, auth_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create an address; returns the raw record (at least ``_id``)"""
        result = await self._make_request(
            "POST", COMMERCE, "/addresses", json_data=payload,
            auth_token=auth_token, require_auth=True,
            headers=self.config.platform_headers
        )
        if isinstance(result, dict) and isinstance(result.get("data"), dict):
            return result["data"]
        return result

    # ================================
    # CHECKOUT APIs (Commerce)
    # ================================

    async def get_checkout_estimate(
        self,
        auth_token: str,
        cart_lines: List[CartLine],
        address_id: str,
        logistics_choice: str,
        coupon_code: Optional[str] = None,
        coupon_id: Optional[str] = None
    ) -> Estimate:
        """
        Price a cart for an address

        Raises:
            Unauthorized: token rejected
            EstimationFailed: any other failure, including malformed responses
        """
        body: Dict[str, Any] = {
            "productDetails": [line.to_dict() for line in cart_lines],
            "addressId": address_id,
            "logisticsChoice": logistics_choice,
        }
        if coupon_code:
            body["couponCode"] = coupon_code
        if coupon_id:
            body["couponId"] = coupon_id

        try:
            result = await self._make_request(
                "POST", COMMERCE, "/checkout/estimate", json_data=body,
                auth_token=auth_token, require_auth=True
            )
            if isinstance(result, dict) and isinstance(result.get("data"), dict):
                result = result["data"]
            return Estimate.from_dict(result)
        except UpstreamError as e:
            raise EstimationFailed(e.message, data={"status_code": e.status_code}) from e
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"[Checkout] Malformed estimate response: {e}")
            raise EstimationFailed("Received an invalid estimate") from e

    async def create_order(self, auth_token: str, quote_id: str) -> Order:
        """
        Create a payment order for a quote

        Raises:
            Unauthorized: token rejected
            OrderCreationFailed: any other failure, including malformed responses
        """
        try:
            result = await self._make_request(
                "POST", COMMERCE, "/checkout/createOrder", json_data={"quoteId": quote_id},
                auth_token=auth_token, require_auth=True
            )
            if isinstance(result, dict) and isinstance(result.get("data"), dict):
                result = result["data"]
            return Order.from_dict(result)
        except UpstreamError as e:
            raise OrderCreationFailed(e.message, data={"status_code": e.status_code}) from e
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"[Checkout] Malformed createOrder response: {e}")
            raise OrderCreationFailed("Received an invalid order") from e

    async def cancel_order(self, auth_token: str, order_id: str) -> None:
        """Cancel an unpaid order"""
        await self._make_request(
            "PUT", COMMERCE, f"/order/{order_id}/cancel",
            auth_token=auth_token, require_auth=True
        )

    # ================================
    # UTILITY METHODS
    # ================================

    async def health_check(self) -> bool:
        """Check that both upstream services answer"""
        ok = True
        for service in (COMMERCE, SOCIAL):
            status, _ = await self.proxy("GET", service, "/health")
            if status >= 500:
                logger.error(f"Health check failed for {service}: HTTP {status}")
                ok = False
        return ok


# Singleton instance for global use
_backend_client: Optional[NaarBackendClient] = None


def get_backend_client() -> NaarBackendClient:
    """Get singleton NaarBackendClient instance"""
    global _backend_client
    if _backend_client is None:
        _backend_client = NaarBackendClient()
    return _backend_client
