"""Address capture: map marker + house/street input -> Commerce API address payload"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..config import config, CheckoutConfig
from ..errors import UpstreamError, ValidationError
from ..geocode_client import GeocodeClient, ReverseGeocode
from ..models import Address
from ..utils.logger import get_logger

logger = get_logger(__name__)

MISSING = "N/A"


@dataclass
class AddressDraft:
    """Address being entered on the map, before it is saved"""
    house_number: str = ""
    street: str = ""
    marker: Optional[Tuple[float, float]] = None    # (lat, lng)
    geo: Optional[ReverseGeocode] = None
    full_name: Optional[str] = None

    @property
    def line1(self) -> str:
        parts = [self.house_number.strip(), self.street.strip()]
        return ", ".join(p for p in parts if p)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AddressDraft':
        marker = None
        if data.get('lat') is not None and data.get('lng') is not None:
            marker = (float(data['lat']), float(data['lng']))

        geo = None
        if any(key in data for key in ('city', 'state', 'pincode')):
            geo = ReverseGeocode(
                city=data.get('city') or "",
                state=data.get('state') or "",
                pincode=str(data.get('pincode') or "")
            )

        return cls(
            house_number=data.get('houseNumber') or "",
            street=data.get('street') or "",
            marker=marker,
            geo=geo,
            full_name=data.get('fullName')
        )


def _has_digit(value: str) -> bool:
    return bool(re.search(r"\d", value or ""))


def validate_draft(draft: AddressDraft, has_user_record: bool) -> None:
    """
    Check a draft in the order the form reports problems

    Raises:
        ValidationError: first failed rule, with the offending field
    """
    if not draft.line1.strip():
        raise ValidationError("Enter house/flat number and street", field="house_number")
    if not _has_digit(draft.house_number):
        raise ValidationError(
            "House/flat number must contain a number (e.g. 12, A-101, Flat 5)",
            field="house_number"
        )
    if draft.marker is None or draft.geo is None:
        raise ValidationError("Please select a location on the map", field="location")
    if not has_user_record and not (draft.full_name or "").strip():
        raise ValidationError("Enter your full name", field="full_name")


def build_address_payload(
    draft: AddressDraft,
    user_name: Optional[str],
    phone: str,
    has_user_record: bool,
    checkout_config: Optional[CheckoutConfig] = None
) -> Dict[str, Any]:
    """
    Validate a draft and build the create-address request body

    Args:
        draft: Map + form input
        user_name: Name on the user record, if any
        phone: Contact phone for the address
        has_user_record: Whether the Social API already has a user record

    Returns:
        Commerce API address payload
    """
    validate_draft(draft, has_user_record)
    settings = checkout_config or config.checkout

    lat, lng = draft.marker
    full_name = user_name or (draft.full_name or "").strip() or settings.default_full_name
    return {
        'addressNickName': settings.default_address_nickname,
        'fullName': full_name,
        'addressLine1': draft.line1,
        'city': draft.geo.city or MISSING,
        'state': draft.geo.state or MISSING,
        'pincode': draft.geo.pincode or MISSING,
        'location': {'type': 'Point', 'coordinates': [lng, lat]},
        'plusCode': MISSING,
        'isDefault': True,
        'phone': phone
    }


def address_from_created(record: Any, payload: Dict[str, Any]) -> Address:
    """Merge the create response (at least ``_id``) with what was sent"""
    merged = dict(payload)
    if isinstance(record, dict):
        merged.update({k: v for k, v in record.items() if v is not None})
    # Fields we sent win over whatever shape the upstream echoes back
    for key in ('addressLine1', 'city', 'state', 'pincode', 'fullName', 'addressNickName', 'phone'):
        merged[key] = payload[key]
    address = Address.from_dict(merged)
    if not address.id:
        raise UpstreamError("Address was not saved", status_code=502, endpoint="/addresses")
    return address


def pick_default_address(addresses: List[Address]) -> Optional[Address]:
    """The address flagged default, else the first one"""
    for address in addresses:
        if address.is_default:
            return address
    return addresses[0] if addresses else None


async def drop_marker(draft: AddressDraft, lat: float, lng: float,
                      geocode: GeocodeClient) -> AddressDraft:
    """Place the marker and fill city/state/pincode from a reverse lookup"""
    draft.marker = (lat, lng)
    try:
        draft.geo = await geocode.reverse(lat, lng)
    except UpstreamError as e:
        logger.warning(f"[Address] Reverse geocode failed for ({lat}, {lng}): {e.message}")
        draft.geo = ReverseGeocode()
    return draft
