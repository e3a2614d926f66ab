"""
Checkout session state machine

One ``CheckoutSession`` per open checkout surface. It walks the buyer from
"buy now" through login, address selection or creation, estimate and order
creation to the payment widget, and reacts to the widget's callbacks.

Every public transition catches storefront errors and records them in
``last_error``; nothing raises out of a transition.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..backend_client import NaarBackendClient
from ..config import config, CheckoutConfig
from ..errors import (
    ErrorHandler,
    PaymentCancelled,
    PaymentFailed,
    StorefrontError,
    Unauthorized,
    ValidationError,
)
from ..models import Address, CartLine, CheckoutStep, Estimate
from ..utils.logger import get_logger
from .address_service import (
    AddressDraft,
    address_from_created,
    build_address_payload,
    pick_default_address,
)
from .auth_service import AuthService
from .order_cache import Clock, OrderCache, utc_now
from .payment_gateway import (
    MODAL_DISMISSED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESS,
    PaymentAttempt,
    PaymentGatewayAdapter,
    get_payment_gateway,
)

logger = get_logger(__name__)


class CheckoutSession:
    """State machine for a single-product checkout"""

    def __init__(
        self,
        auth: AuthService,
        cart_line: CartLine,
        backend: Optional[NaarBackendClient] = None,
        order_cache: Optional[OrderCache] = None,
        gateway: Optional[PaymentGatewayAdapter] = None,
        clock: Optional[Clock] = None,
        checkout_config: Optional[CheckoutConfig] = None,
        session_id: Optional[str] = None
    ):
        """
        Initialize a checkout session

        Args:
            auth: Auth service for the buyer's device
            cart_line: The line being bought
            backend: Backend client (defaults to the auth service's)
            order_cache: Quote id -> order cache for this checkout (new one by default)
            gateway: Payment gateway adapter
            clock: Returns the current aware UTC time
            checkout_config: Checkout defaults
            session_id: Optional external id
        """
        self.session_id = session_id or uuid.uuid4().hex
        self.auth = auth
        self.backend = backend or auth.backend
        self.clock = clock or utc_now
        self.order_cache = (
            order_cache if order_cache is not None
            else OrderCache(self.backend, auth.session, self.clock)
        )
        self.gateway = gateway or get_payment_gateway()
        self.settings = checkout_config or config.checkout

        self.cart_line = cart_line
        self.logistics_choice = self.settings.default_logistics_choice
        self.coupon_code: Optional[str] = None

        self.step = CheckoutStep.IDLE
        self.history: List[CheckoutStep] = [CheckoutStep.IDLE]
        self.addresses: List[Address] = []
        self.selected_address: Optional[Address] = None
        self.estimate: Optional[Estimate] = None
        self.attempt: Optional[PaymentAttempt] = None
        self.last_error: Optional[str] = None
        self.last_error_kind: Optional[str] = None
        self.busy = False
        self.closed = False

        self._lock = asyncio.Lock()
        self.auth.session.add_logout_listener(self.order_cache.clear)

    # ================================
    # INTERNAL HELPERS
    # ================================

    def _move(self, step: CheckoutStep) -> None:
        if step != self.step:
            logger.info(f"[Checkout] {self.session_id[:8]}: {self.step.value} -> {step.value}")
        self.step = step
        self.history.append(step)

    def _fail(self, error: BaseException, fallback: Optional[str] = None) -> None:
        self.last_error = ErrorHandler.to_message(error, fallback)
        self.last_error_kind = error.kind if isinstance(error, StorefrontError) else "InternalError"

    def _clear_error(self) -> None:
        self.last_error = None
        self.last_error_kind = None

    def _force_login(self) -> None:
        """Upstream rejected the token: drop login state, keep the cart line"""
        logger.info(f"[Checkout] {self.session_id[:8]}: session unauthorized, returning to login")
        self.auth.logout()
        self.attempt = None
        self._move(CheckoutStep.LOGIN)

    async def _run(self, action: Callable[[], Awaitable[Any]], fallback: Optional[str] = None) -> bool:
        """
        Run a transition body, turning errors into ``last_error``

        Returns:
            True if the body completed without error
        """
        try:
            await action()
            return True
        except Unauthorized as e:
            self._fail(e)
            self._force_login()
        except StorefrontError as e:
            logger.info(f"[Checkout] {self.session_id[:8]}: {e.kind}: {e.message}")
            self._fail(e, fallback)
        except Exception as e:
            logger.error(f"[Checkout] {self.session_id[:8]}: unexpected error: {e}", exc_info=True)
            self._fail(e, fallback)
        return False

    async def _load_addresses(self) -> None:
        """
        Enter ``address``, fetch the list and preselect the default

        Once the preselected address is priced the session moves on to
        ``confirm``; the address list and the order summary share a screen.
        """
        self._move(CheckoutStep.ADDRESS)
        try:
            self.addresses = await self.backend.get_addresses(self.auth.session.token)
        except Unauthorized:
            raise
        except StorefrontError as e:
            logger.warning(f"[Checkout] Could not load addresses: {e.message}")
            self.addresses = []

        if not self.addresses:
            self.selected_address = None
            self.estimate = None
            self._move(CheckoutStep.ADDRESS_MAP)
            return

        default = pick_default_address(self.addresses)
        if self.selected_address is None or self._find_address(self.selected_address.id) is None:
            self.selected_address = default
        await self._fetch_estimate()
        self._move(CheckoutStep.CONFIRM)

    def _find_address(self, address_id: str) -> Optional[Address]:
        for address in self.addresses:
            if address.id == address_id:
                return address
        return None

    async def _fetch_estimate(self) -> None:
        """Price the cart line for the selected address"""
        if self.selected_address is None:
            return
        try:
            estimate = await self.backend.get_checkout_estimate(
                self.auth.session.token,
                [self.cart_line],
                self.selected_address.id,
                self.logistics_choice,
                coupon_code=self.coupon_code
            )
        except StorefrontError:
            self.estimate = None
            raise

        self.estimate = estimate
        await self.order_cache.invalidate_except(estimate.quote_id)
        logger.info(
            f"[Checkout] Estimate {estimate.quote_id} for address {self.selected_address.id}: "
            f"total {estimate.total}"
        )

    # ================================
    # TRANSITIONS
    # ================================

    async def buy_now(self) -> bool:
        """``idle -> login`` when logged out, else straight to the address list"""
        async with self._lock:
            self._clear_error()
            if not self.auth.session.is_authenticated:
                self._move(CheckoutStep.LOGIN)
                return True
            return await self._run(self._load_addresses)

    async def request_otp(self, phone: str) -> bool:
        async with self._lock:
            self._clear_error()
            return await self._run(lambda: self.auth.request_otp(phone), "Failed to send OTP")

    async def login(self, phone: str, otp: str) -> bool:
        """Verify the OTP, then ``login -> address``"""
        async with self._lock:
            self._clear_error()

            async def action():
                await self.auth.login(phone, otp)
                await self._load_addresses()

            try:
                await action()
                return True
            except Unauthorized as e:
                # Rejected OTP: stay on the login step
                self._fail(e, "Invalid OTP")
                self.auth.logout()
                self._move(CheckoutStep.LOGIN)
            except StorefrontError as e:
                self._fail(e, "Invalid OTP")
            return False

    async def add_address(self) -> bool:
        """Open the map to add an address"""
        async with self._lock:
            if self.step not in (CheckoutStep.ADDRESS, CheckoutStep.CONFIRM):
                return False
            self._clear_error()
            self._move(CheckoutStep.ADDRESS_MAP)
            return True

    async def create_address(self, draft: AddressDraft) -> bool:
        """
        Save a new address, select it and price the cart for it

        Validation problems are reported in ``last_error`` with no step change.
        """
        async with self._lock:
            if self.step != CheckoutStep.ADDRESS_MAP:
                return False
            self._clear_error()

            async def action():
                session = self.auth.session
                user_name = session.user.display_name if session.user else None
                payload = build_address_payload(
                    draft, user_name, session.phone, session.has_user_record, self.settings
                )
                if not session.has_user_record:
                    await self.auth.ensure_user(draft.full_name)

                record = await self.backend.create_address(session.token, payload)
                address = address_from_created(record, payload)
                logger.info(f"[Checkout] Address {address.id} created")

                self.addresses.insert(0, address)
                self.selected_address = address
                self._move(CheckoutStep.CONFIRM)
                await self._fetch_estimate()

            return await self._run(action, "Failed to save address")

    async def select_address(self, address_id: str) -> bool:
        """Select an existing address and fetch a fresh estimate for it"""
        async with self._lock:
            if self.step not in (CheckoutStep.ADDRESS, CheckoutStep.CONFIRM):
                return False
            address = self._find_address(address_id)
            if address is None:
                self._fail(ValidationError("Address not found", field="address_id"))
                return False

            self._clear_error()
            self.selected_address = address
            self._move(CheckoutStep.CONFIRM)
            return await self._run(self._fetch_estimate, "Failed to get estimate")

    async def back(self) -> bool:
        """
        Back navigation

        ``address-map`` returns to ``confirm`` when addresses exist, otherwise
        to ``address``, which redirects straight back to the map.
        """
        async with self._lock:
            self._clear_error()
            if self.step == CheckoutStep.ADDRESS_MAP:
                if self.addresses:
                    if self.selected_address is None:
                        self.selected_address = pick_default_address(self.addresses)
                    self._move(CheckoutStep.CONFIRM)
                else:
                    self._move(CheckoutStep.ADDRESS)
                    self._move(CheckoutStep.ADDRESS_MAP)
            elif self.step == CheckoutStep.CONFIRM:
                self._move(CheckoutStep.ADDRESS)
            elif self.step in (CheckoutStep.ADDRESS, CheckoutStep.LOGIN, CheckoutStep.SUCCESS):
                self._move(CheckoutStep.IDLE)
            else:
                return False
            return True

    async def pay(self) -> bool:
        """
        ``confirm -> payment``: get or create the order and open the widget

        A click while another pay is in flight is ignored.
        """
        if self.busy:
            logger.info(f"[Checkout] {self.session_id[:8]}: pay ignored, already in flight")
            return False

        self.busy = True
        try:
            async with self._lock:
                if self.step != CheckoutStep.CONFIRM:
                    return False
                if self.estimate is None or self.selected_address is None:
                    self._fail(ValidationError("Select an address to continue"))
                    return False
                self._clear_error()
                return await self._run(self._open_payment, "Failed to create order")
        finally:
            self.busy = False

    async def _open_payment(self) -> None:
        estimate = self.estimate
        await self.gateway.ensure_loaded()
        self.gateway.check_configured()
        order = await self.order_cache.acquire_for_payment(estimate.quote_id)

        session = self.auth.session
        user = session.user
        self.attempt = await self.gateway.open(
            order,
            estimate,
            {
                PAYMENT_SUCCESS: self._on_payment_success,
                PAYMENT_FAILED: self._on_payment_failed,
                MODAL_DISMISSED: self._on_modal_dismissed,
            },
            name=user.display_name if user else "",
            contact=session.phone,
            now=self.clock()
        )
        self._move(CheckoutStep.PAYMENT)

    def _accept_callback(self, attempt: PaymentAttempt, outcome: str) -> bool:
        """Single-assignment guard for widget callbacks"""
        if not self.order_cache.holds(attempt.quote_id, attempt.order.order_id):
            attempt.complete("rejected")
            logger.warning(
                f"[Payment] Late '{outcome}' for order {attempt.order.order_id} rejected, entry evicted"
            )
            return False
        if not attempt.complete(outcome):
            logger.warning(
                f"[Payment] Duplicate '{outcome}' for attempt {attempt.attempt_id} rejected "
                f"(already {attempt.outcome})"
            )
            return False
        return True

    async def _on_payment_success(self, attempt: PaymentAttempt, payload: Dict[str, Any]) -> None:
        if not self._accept_callback(attempt, PAYMENT_SUCCESS):
            return
        self.order_cache.consume(attempt.quote_id)
        self.gateway.forget(attempt.attempt_id)
        logger.info(
            f"[Payment] Order {attempt.order.order_id} paid "
            f"(payment {payload.get('razorpay_payment_id', 'n/a')})"
        )
        self._clear_error()
        self._move(CheckoutStep.SUCCESS)

    async def _on_payment_failed(self, attempt: PaymentAttempt, payload: Dict[str, Any]) -> None:
        if not self._accept_callback(attempt, PAYMENT_FAILED):
            return
        await self.order_cache.release(attempt.quote_id, reason="payment failed")
        self.gateway.forget(attempt.attempt_id)
        self._fail(PaymentFailed())
        self._move(CheckoutStep.CONFIRM)

    async def _on_modal_dismissed(self, attempt: PaymentAttempt, payload: Dict[str, Any]) -> None:
        if not self._accept_callback(attempt, MODAL_DISMISSED):
            return
        await self.order_cache.release(attempt.quote_id, reason="dismissed")
        self.gateway.forget(attempt.attempt_id)
        self._fail(PaymentCancelled())
        self._move(CheckoutStep.CONFIRM)

    async def handle_payment_event(self, attempt_id: str, event: str,
                                   payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Deliver a widget callback relayed by the browser

        Returns:
            True if the callback was accepted
        """
        async with self._lock:
            attempt = self.attempt
            if attempt is None or attempt.attempt_id != attempt_id:
                logger.warning(f"[Payment] Event '{event}' for stale attempt {attempt_id} rejected")
                return False
            already_complete = attempt.is_complete
            try:
                delivered = await self.gateway.dispatch(attempt_id, event, payload)
            except StorefrontError as e:
                self._fail(e)
                return False
            return delivered and not already_complete and attempt.outcome == event

    def close(self) -> None:
        """Discard the session; unpaid orders lapse on their own expiry"""
        self.closed = True
        self.auth.session.remove_logout_listener(self.order_cache.clear)
        self.order_cache.clear()
        logger.info(f"[Checkout] {self.session_id[:8]}: closed in step {self.step.value}")

    def to_dict(self) -> Dict[str, Any]:
        """Session view for the UI"""
        return {
            'session_id': self.session_id,
            'step': self.step.value,
            'cart_line': self.cart_line.to_dict(),
            'auth': self.auth.session.to_dict(),
            'addresses': [address.to_dict() for address in self.addresses],
            'selected_address': self.selected_address.to_dict() if self.selected_address else None,
            'estimate': self.estimate.to_dict() if self.estimate else None,
            'payment': self.attempt.to_dict() if self.attempt and self.step == CheckoutStep.PAYMENT else None,
            'last_error': self.last_error,
            'last_error_kind': self.last_error_kind,
            'busy': self.busy
        }
