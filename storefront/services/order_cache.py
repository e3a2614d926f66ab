"""
Order cache

Maps quote ids to the payment order created for them so a retried "pay"
reuses the existing order instead of creating a duplicate. At most one live
order is held per quote id.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..backend_client import NaarBackendClient
from ..errors import OrderExpired, StorefrontError
from ..models import Order
from ..utils.logger import get_logger
from .auth_service import AuthSession

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderCache:
    """Per-device quote id -> Order cache with expiry and best-effort cancel"""

    def __init__(self, backend: NaarBackendClient, auth: AuthSession,
                 clock: Optional[Clock] = None):
        self.backend = backend
        self.auth = auth
        self.clock = clock or utc_now
        self._orders: Dict[str, Order] = {}

    def __contains__(self, quote_id: str) -> bool:
        return quote_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def get(self, quote_id: str) -> Optional[Order]:
        """Cached order for a quote, live or not"""
        return self._orders.get(quote_id)

    def holds(self, quote_id: str, order_id: str) -> bool:
        """True while ``order_id`` is still the cached order for ``quote_id``"""
        order = self._orders.get(quote_id)
        return order is not None and order.order_id == order_id

    async def get_or_create_order(self, quote_id: str) -> Order:
        """
        Return the live cached order for a quote, creating one if needed

        Raises:
            Unauthorized: token rejected
            OrderCreationFailed: upstream could not create the order
        """
        cached = self._orders.get(quote_id)
        if cached and cached.is_live(self.clock()):
            logger.info(f"[OrderCache] Reusing order {cached.order_id} for quote {quote_id}")
            return cached

        order = await self.backend.create_order(self.auth.token, quote_id)
        self._orders[quote_id] = order
        logger.info(
            f"[OrderCache] Created order {order.order_id} for quote {quote_id}, "
            f"expires {order.expires_at.isoformat()}"
        )
        return order

    async def acquire_for_payment(self, quote_id: str) -> Order:
        """
        Get the order to hand to the payment widget

        A cached order that has already lapsed is evicted and cancelled
        rather than silently replaced, so the user learns the order expired.

        Raises:
            OrderExpired: the order has no remaining time
        """
        cached = self._orders.get(quote_id)
        if cached is not None and not cached.is_live(self.clock()):
            await self.release(quote_id, reason="expired")
            raise OrderExpired(cached.order_id)

        order = await self.get_or_create_order(quote_id)
        if order.remaining_seconds(self.clock()) <= 0:
            await self.release(quote_id, reason="expired")
            raise OrderExpired(order.order_id)
        return order

    def consume(self, quote_id: str) -> Optional[Order]:
        """Evict a paid order; it must never be reused"""
        order = self._orders.pop(quote_id, None)
        if order:
            logger.info(f"[OrderCache] Order {order.order_id} consumed")
        return order

    async def release(self, quote_id: str, reason: str = "cancelled") -> Optional[Order]:
        """
        Evict an order and cancel it upstream

        Cancel failures are logged and swallowed.
        """
        order = self._orders.pop(quote_id, None)
        if order is None:
            return None

        logger.info(f"[OrderCache] Releasing order {order.order_id} ({reason})")
        try:
            await self.backend.cancel_order(self.auth.token, order.order_id)
        except StorefrontError as e:
            logger.warning(f"[OrderCache] Cancel failed for order {order.order_id}: {e.message}")
        return order

    async def invalidate_except(self, quote_id: str) -> None:
        """Release every order tied to a quote other than ``quote_id``"""
        for stale in [q for q in self._orders if q != quote_id]:
            await self.release(stale, reason="superseded")

    def clear(self) -> None:
        """Drop all entries without cancelling (session lost its login)"""
        if self._orders:
            logger.info(f"[OrderCache] Clearing {len(self._orders)} cached order(s)")
        self._orders.clear()
