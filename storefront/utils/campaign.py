"""
Campaign attribution and device id helpers

Campaign parameters arrive either directly on the landing URL or wrapped in a
``referrer`` query parameter (Play Store style install referrers).
"""

import uuid
from typing import Dict, Optional
from urllib.parse import urlsplit, parse_qs

from .logger import get_logger

logger = get_logger(__name__)

CAMPAIGN_KEYS = [
    "source",
    "medium",
    "campaignId",
    "campaignName",
    "platform",
    "deepLink",
    "attributionType",
]

_BASE_URL = "https://naar.io"


def _params_from_url(url: str) -> Dict[str, list]:
    try:
        if url.startswith("/"):
            url = f"{_BASE_URL}{url}"
        params = parse_qs(urlsplit(url).query)
    except ValueError:
        return {}

    referrer = params.get("referrer")
    if referrer and referrer[0]:
        return parse_qs(referrer[0])
    return params


def get_campaign_from_url(url: str) -> Dict[str, str]:
    """
    Extract campaign attribution fields from a landing URL

    Args:
        url: Absolute URL or path with query string

    Returns:
        Mapping of every campaign key to its value ("" when absent)
    """
    params = _params_from_url(url or "")
    return {key: params.get(key, [""])[0] for key in CAMPAIGN_KEYS}


def has_campaign_info(campaign: Dict[str, str]) -> bool:
    """True if any campaign field is populated"""
    return any(value != "" for value in campaign.values())


def get_or_create_device_id(device_id: Optional[str] = None) -> str:
    """
    Return the caller's device id, generating a new one when missing

    Args:
        device_id: Device id previously issued to the client

    Returns:
        Device id string
    """
    if device_id:
        return device_id

    device_id = str(uuid.uuid4())
    logger.info(f"[DeviceID] Generated new device ID: {device_id}")
    return device_id


def build_link_click_payload(url: str, device_id: str) -> Optional[Dict[str, str]]:
    """
    Build the ``/linkClick`` body for a landing URL

    Returns:
        Payload with the device id and campaign fields, or None when the URL
        carries no campaign information
    """
    campaign = get_campaign_from_url(url)
    if not has_campaign_info(campaign):
        return None
    return {"deviceId": device_id, "url": url, **campaign}
