"""
Payment gateway adapter

Drives the hosted Razorpay checkout widget. The widget runs in the buyer's
browser; this side verifies the checkout script is reachable, builds the
widget options, and receives the widget's callbacks (relayed by the browser)
through ``dispatch``.

Events:
    payment.success  - payment captured
    payment.failed   - gateway rejected the payment
    modal.dismissed  - buyer closed the widget
"""

import asyncio
import functools
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..config import config, PaymentConfig
from ..errors import ConfigurationError, GatewayLoadFailed
from ..models import Estimate, Order
from ..utils.logger import get_logger

logger = get_logger(__name__)

PAYMENT_SUCCESS = "payment.success"
PAYMENT_FAILED = "payment.failed"
MODAL_DISMISSED = "modal.dismissed"
PAYMENT_EVENTS = (PAYMENT_SUCCESS, PAYMENT_FAILED, MODAL_DISMISSED)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]
AttemptHandler = Callable[["PaymentAttempt", Dict[str, Any]], Awaitable[None]]


class PaymentWidget(ABC):
    """One checkout widget instance"""

    @abstractmethod
    def on(self, event: str, handler: EventHandler) -> None:
        ...

    @abstractmethod
    def open(self) -> None:
        ...


class HostedCheckoutWidget(PaymentWidget):
    """
    Widget rendered by the browser from ``options``

    Opening only marks the widget as handed off; the browser renders it and
    relays callbacks back, which are delivered with ``emit``.
    """

    def __init__(self, options: Dict[str, Any]):
        self.options = options
        self.handlers: Dict[str, EventHandler] = {}
        self.opened = False

    def on(self, event: str, handler: EventHandler) -> None:
        self.handlers[event] = handler

    def open(self) -> None:
        self.opened = True

    async def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        handler = self.handlers.get(event)
        if handler is None:
            return False
        await handler(payload or {})
        return True


WidgetFactory = Callable[[Dict[str, Any]], PaymentWidget]


class ScriptLoader(ABC):
    """Loads the gateway script and returns a widget constructor"""

    @abstractmethod
    async def load(self) -> WidgetFactory:
        ...


class HttpScriptLoader(ScriptLoader):
    """Checks the checkout script URL answers before any widget is handed out"""

    def __init__(self, payment_config: Optional[PaymentConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = payment_config or config.payment
        self._transport = transport

    async def load(self) -> WidgetFactory:
        logger.info(f"[Payment] Loading checkout script {self.config.script_url}")
        try:
            async with httpx.AsyncClient(
                timeout=float(self.config.script_timeout), transport=self._transport
            ) as client:
                response = await client.get(self.config.script_url)
        except httpx.HTTPError as e:
            logger.error(f"[Payment] Checkout script unreachable: {e}")
            raise GatewayLoadFailed() from e

        if not response.is_success:
            logger.error(f"[Payment] Checkout script returned HTTP {response.status_code}")
            raise GatewayLoadFailed()
        return HostedCheckoutWidget


class PaymentAttempt:
    """
    One opening of the widget for one order

    ``outcome`` is assigned at most once; every later callback for the same
    attempt is rejected.
    """

    def __init__(self, quote_id: str, order: Order, widget: PaymentWidget):
        self.attempt_id = uuid.uuid4().hex
        self.quote_id = quote_id
        self.order = order
        self.widget = widget
        self.outcome: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.outcome is not None

    def complete(self, outcome: str) -> bool:
        """Record the outcome; False if one was already recorded"""
        if self.outcome is not None:
            return False
        self.outcome = outcome
        return True

    def to_dict(self) -> Dict[str, Any]:
        options = getattr(self.widget, "options", None)
        return {
            'attempt_id': self.attempt_id,
            'quote_id': self.quote_id,
            'order_id': self.order.order_id,
            'outcome': self.outcome,
            'options': options
        }


class PaymentGatewayAdapter:
    """Loads the gateway once per process and opens widgets for orders"""

    def __init__(self, payment_config: Optional[PaymentConfig] = None,
                 loader: Optional[ScriptLoader] = None):
        self.config = payment_config or config.payment
        self.loader = loader or HttpScriptLoader(self.config)
        self._factory: Optional[WidgetFactory] = None
        self._loading: Optional[asyncio.Future] = None
        self._attempts: Dict[str, PaymentAttempt] = {}

    @property
    def is_loaded(self) -> bool:
        return self._factory is not None

    async def ensure_loaded(self) -> WidgetFactory:
        """
        Load the gateway script at most once

        Concurrent callers share the same in-flight load. A failed load is
        not cached, so a later checkout attempt can try again.

        Raises:
            GatewayLoadFailed: script could not be loaded
        """
        if self._factory is not None:
            return self._factory

        if self._loading is None:
            self._loading = asyncio.ensure_future(self.loader.load())

        loading = self._loading
        try:
            factory = await asyncio.shield(loading)
        except GatewayLoadFailed:
            if self._loading is loading:
                self._loading = None
            raise
        except Exception as e:
            if self._loading is loading:
                self._loading = None
            logger.error(f"[Payment] Unexpected error loading gateway: {e}")
            raise GatewayLoadFailed() from e

        self._factory = factory
        return factory

    def check_configured(self) -> None:
        """
        Raises:
            ConfigurationError: no payment key to open the widget with
        """
        if not self.config.razorpay_key:
            raise ConfigurationError("Payment key is not configured")

    def build_options(self, order: Order, estimate: Estimate, name: str = "",
                      contact: str = "", now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Build the widget options for an order

        Args:
            order: Order created for the estimate's quote
            estimate: Quote whose total is charged
            name: Prefill name
            contact: Prefill phone
            now: Current time, for the widget timeout

        Returns:
            Options dict in the gateway's format
        """
        self.check_configured()

        options = {
            'key': self.config.razorpay_key,
            'amount': estimate.total_minor_units,
            'currency': self.config.currency,
            'order_id': order.gateway_order_id,
            'prefill': {'name': name or "", 'contact': contact or ""},
            'theme': {'color': self.config.theme_color},
            'notes': {'orderId': order.order_id, 'quoteId': estimate.quote_id}
        }
        if now is not None:
            options['timeout'] = max(int(order.remaining_seconds(now)), 0)
        return options

    async def open(
        self,
        order: Order,
        estimate: Estimate,
        handlers: Dict[str, AttemptHandler],
        name: str = "",
        contact: str = "",
        now: Optional[datetime] = None
    ) -> PaymentAttempt:
        """
        Open a widget for an order and subscribe the given handlers

        Each handler is called as ``handler(attempt, payload)``.
        """
        factory = await self.ensure_loaded()
        options = self.build_options(order, estimate, name, contact, now)
        widget = factory(options)
        attempt = PaymentAttempt(estimate.quote_id, order, widget)

        for event in PAYMENT_EVENTS:
            handler = handlers.get(event)
            if handler is not None:
                widget.on(event, functools.partial(handler, attempt))

        self._attempts[attempt.attempt_id] = attempt
        widget.open()
        logger.info(
            f"[Payment] Widget opened for order {order.order_id} "
            f"(attempt {attempt.attempt_id}, amount {options['amount']})"
        )
        return attempt

    def get_attempt(self, attempt_id: str) -> Optional[PaymentAttempt]:
        return self._attempts.get(attempt_id)

    def forget(self, attempt_id: str) -> None:
        self._attempts.pop(attempt_id, None)

    async def dispatch(self, attempt_id: str, event: str,
                       payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Deliver a widget callback relayed by the browser

        Returns:
            False for unknown attempts, unknown events or widgets that
            cannot receive relayed events
        """
        if event not in PAYMENT_EVENTS:
            logger.warning(f"[Payment] Ignoring unknown event '{event}'")
            return False

        attempt = self._attempts.get(attempt_id)
        if attempt is None:
            logger.warning(f"[Payment] Event '{event}' for unknown attempt {attempt_id}")
            return False

        emit = getattr(attempt.widget, "emit", None)
        if emit is None:
            return False
        return await emit(event, payload)


_payment_gateway: Optional[PaymentGatewayAdapter] = None


def get_payment_gateway() -> PaymentGatewayAdapter:
    """Get singleton PaymentGatewayAdapter (the script is loaded once per process)"""
    global _payment_gateway
    if _payment_gateway is None:
        _payment_gateway = PaymentGatewayAdapter()
    return _payment_gateway
