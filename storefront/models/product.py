"""Product catalogue models"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

# Upper bound for the quantity picker when the variant reports no stock count
DEFAULT_MAX_QUANTITY = 99


@dataclass
class ProductVariant:
    variant_option: str
    price: float
    id: Optional[str] = None
    variant_name: Optional[str] = None
    variant_type: Optional[str] = None
    variant_value: Optional[str] = None
    original_price_with_tax: Optional[float] = None
    currency: Optional[str] = None
    in_stock: Optional[bool] = None
    quantity: Optional[int] = None

    @property
    def key(self) -> str:
        """Identifier sent as productVariantId"""
        return self.id or self.variant_option

    @property
    def max_quantity(self) -> int:
        if self.quantity is not None:
            return self.quantity
        return DEFAULT_MAX_QUANTITY if self.in_stock is not False else 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProductVariant':
        return cls(
            variant_option=data.get('variantOption', ''),
            price=float(data.get('price', 0)),
            id=data.get('_id'),
            variant_name=data.get('variantName'),
            variant_type=data.get('variantType'),
            variant_value=data.get('variantValue'),
            original_price_with_tax=data.get('originalPriceWithTax'),
            currency=data.get('currency'),
            in_stock=data.get('inStock'),
            quantity=data.get('quantity')
        )


@dataclass
class Product:
    title: str
    id: Optional[str] = None
    description: Optional[str] = None
    content: List[str] = field(default_factory=list)   # image file names
    variants: List[ProductVariant] = field(default_factory=list)
    currency: Optional[str] = None
    price: Optional[float] = None
    original_price_with_tax: Optional[float] = None

    def find_variant(self, variant_id: str) -> Optional[ProductVariant]:
        """Find variant by id or by option label"""
        for variant in self.variants:
            if variant_id in (variant.id, variant.variant_option):
                return variant
        return None

    def default_variant(self) -> Optional[ProductVariant]:
        """First in-stock variant, else the first one listed"""
        for variant in self.variants:
            if variant.max_quantity > 0:
                return variant
        return self.variants[0] if self.variants else None

    def image_url(self, image_base: str, index: int = 0) -> str:
        """Public URL of a product image, or "" if unavailable"""
        if not image_base or index >= len(self.content):
            return ""
        separator = "" if image_base.endswith("/") else "/uploads/products/"
        return f"{image_base}{separator}{self.content[index]}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Product':
        return cls(
            title=data.get('title', ''),
            id=data.get('_id'),
            description=data.get('description'),
            content=[c['fileName'] for c in data.get('content') or [] if c.get('fileName')],
            variants=[ProductVariant.from_dict(v) for v in data.get('variants') or []],
            currency=data.get('currency'),
            price=data.get('price'),
            original_price_with_tax=data.get('originalPriceWithTax')
        )
