"""Data models for the checkout flow"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any


class CheckoutStep(Enum):
    """Checkout state machine states"""
    IDLE = "idle"
    LOGIN = "login"
    ADDRESS = "address"
    ADDRESS_MAP = "address-map"
    CONFIRM = "confirm"
    PAYMENT = "payment"          # Widget open, waiting for gateway callback
    SUCCESS = "success"


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an upstream timestamp into an aware UTC datetime

    Accepts ISO-8601 strings (with or without a trailing ``Z``), epoch
    seconds/milliseconds and datetime objects. Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class UserDetails:
    """Social API user record"""
    user_id: str
    user_name: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    categories: List[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.user_name or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'userName': self.user_name,
            'name': self.name,
            'phoneNumber': self.phone_number,
            'email': self.email,
            'categories': self.categories
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserDetails':
        return cls(
            user_id=data['userId'],
            user_name=data.get('userName'),
            name=data.get('name'),
            phone_number=data.get('phoneNumber'),
            email=data.get('email'),
            categories=list(data.get('categories') or [])
        )


@dataclass
class Address:
    """Delivery address as stored by the Commerce API"""
    id: str
    nickname: str
    full_name: str
    line1: str
    city: str
    state: str
    pincode: str
    phone: str
    line2: Optional[str] = None
    coordinates: Optional[List[float]] = None   # [lng, lat], GeoJSON order
    plus_code: Optional[str] = None
    is_default: bool = False

    @property
    def latitude(self) -> Optional[float]:
        return self.coordinates[1] if self.coordinates else None

    @property
    def longitude(self) -> Optional[float]:
        return self.coordinates[0] if self.coordinates else None

    @property
    def summary(self) -> str:
        """One-line label used in address pickers"""
        first = f"{self.line1}, {self.line2}" if self.line2 else self.line1
        return f"{first} - {self.city}, {self.state} {self.pincode}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to Commerce API wire format"""
        data = {
            '_id': self.id,
            'addressNickName': self.nickname,
            'fullName': self.full_name,
            'addressLine1': self.line1,
            'city': self.city,
            'state': self.state,
            'pincode': self.pincode,
            'phone': self.phone,
            'isDefault': self.is_default
        }
        if self.line2:
            data['addressLine2'] = self.line2
        if self.coordinates:
            data['location'] = {'type': 'Point', 'coordinates': list(self.coordinates)}
        if self.plus_code:
            data['plusCode'] = self.plus_code
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Address':
        """Create Address from Commerce API wire format"""
        location = data.get('location') or {}
        coordinates = location.get('coordinates') if isinstance(location, dict) else None
        return cls(
            id=str(data.get('_id') or data.get('id') or ''),
            nickname=data.get('addressNickName', ''),
            full_name=data.get('fullName', ''),
            line1=data.get('addressLine1', ''),
            line2=data.get('addressLine2') or None,
            city=data.get('city', ''),
            state=data.get('state', ''),
            pincode=str(data.get('pincode', '')),
            phone=data.get('phone', ''),
            coordinates=[float(c) for c in coordinates] if coordinates else None,
            plus_code=data.get('plusCode'),
            is_default=bool(data.get('isDefault', False))
        )


@dataclass
class CartLine:
    """Single product line being checked out"""
    product_id: str
    variant_id: str
    quantity: int = 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to estimate API ``productDetails`` entry"""
        return {
            'productId': self.product_id,
            'productVariantId': self.variant_id,
            'quantity': self.quantity
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CartLine':
        return cls(
            product_id=data['productId'],
            variant_id=data.get('productVariantId') or data.get('variantId', ''),
            quantity=int(data.get('quantity', 1))
        )

    @classmethod
    def for_variant(cls, product_id: str, variant: 'ProductVariant', quantity: int) -> 'CartLine':
        """Build a cart line with quantity clamped to the variant's stock"""
        upper = max(variant.max_quantity, 1)
        return cls(
            product_id=product_id,
            variant_id=variant.key,
            quantity=min(max(int(quantity), 1), upper)
        )


@dataclass
class LogisticsOption:
    label: str
    logistics_choice: str
    delivery_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'logisticsChoice': self.logistics_choice,
            'deliveryText': self.delivery_text
        }


# Numeric estimate fields that make up the price breakdown
BREAKDOWN_FIELDS = {
    'productPrice': 'product_price',
    'shipping': 'shipping',
    'gst': 'gst',
    'platformFees': 'platform_fees',
    'discount': 'discount',
    'estimateLogisticsPrice': 'estimate_logistics_price',
}


@dataclass
class Estimate:
    """Priced, time-bounded quote for a cart line + address + logistics choice"""
    quote_id: str
    total: float
    price_breakdown: Dict[str, float] = field(default_factory=dict)
    logistics_options: List[LogisticsOption] = field(default_factory=list)
    applied_coupon: Optional[Dict[str, Any]] = None
    coupon_error: Optional[str] = None
    is_logistics_free: bool = False
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def total_minor_units(self) -> int:
        """Total in the gateway's integer minor unit (paise)"""
        return int(round(self.total * 100))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'quoteId': self.quote_id,
            'total': self.total,
            'isLogisticsFree': self.is_logistics_free,
            'labels': self.labels,
            'logisticsOptions': [option.to_dict() for option in self.logistics_options],
            'appliedCoupon': self.applied_coupon,
            'couponError': self.coupon_error
        }
        for wire_name, key in BREAKDOWN_FIELDS.items():
            if key in self.price_breakdown:
                data[wire_name] = self.price_breakdown[key]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Estimate':
        """Create Estimate from the estimate API response"""
        if 'quoteId' not in data or 'total' not in data:
            raise ValueError("Estimate response is missing quoteId or total")

        breakdown = {}
        for wire_name, key in BREAKDOWN_FIELDS.items():
            value = data.get(wire_name)
            if value is not None:
                breakdown[key] = float(value)

        options = [
            LogisticsOption(
                label=option.get('label', ''),
                logistics_choice=option.get('logisticsChoice', ''),
                delivery_text=option.get('deliveryText')
            )
            for option in data.get('logisticsOptions') or []
        ]

        return cls(
            quote_id=str(data['quoteId']),
            total=float(data['total']),
            price_breakdown=breakdown,
            logistics_options=options,
            applied_coupon=data.get('appliedCoupon'),
            coupon_error=data.get('couponError'),
            is_logistics_free=bool(data.get('isLogisticsFree', False)),
            labels=dict(data.get('labels') or {})
        )


@dataclass
class Order:
    """Payment-gateway-linked reservation against a quote"""
    order_id: str
    gateway_order_id: str
    expires_at: datetime

    def remaining_seconds(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'orderId': self.order_id,
            'razorpayOrderId': self.gateway_order_id,
            'expiryTime': self.expires_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Order':
        """Create Order from the createOrder response"""
        return cls(
            order_id=str(data['orderId']),
            gateway_order_id=str(data['razorpayOrderId']),
            expires_at=parse_timestamp(data['expiryTime'])
        )
