"""Data models for the Naar storefront"""

from .checkout import (
    CheckoutStep,
    UserDetails,
    Address,
    CartLine,
    Estimate,
    LogisticsOption,
    Order,
    parse_timestamp
)
from .product import Product, ProductVariant

__all__ = [
    'CheckoutStep',
    'UserDetails',
    'Address',
    'CartLine',
    'Estimate',
    'LogisticsOption',
    'Order',
    'parse_timestamp',
    'Product',
    'ProductVariant'
]
