"""Storefront services"""

from .auth_service import (
    AuthService,
    AuthSession,
    TokenProvider,
    MemoryTokenProvider,
    RedisTokenProvider,
    create_token_provider
)
from .order_cache import OrderCache
from .payment_gateway import (
    PaymentGatewayAdapter,
    PaymentAttempt,
    HostedCheckoutWidget,
    HttpScriptLoader,
    get_payment_gateway
)
from .address_service import AddressDraft, build_address_payload, pick_default_address
from .checkout_service import CheckoutSession

__all__ = [
    'AuthService',
    'AuthSession',
    'TokenProvider',
    'MemoryTokenProvider',
    'RedisTokenProvider',
    'create_token_provider',
    'OrderCache',
    'PaymentGatewayAdapter',
    'PaymentAttempt',
    'HostedCheckoutWidget',
    'HttpScriptLoader',
    'get_payment_gateway',
    'AddressDraft',
    'build_address_payload',
    'pick_default_address',
    'CheckoutSession'
]
