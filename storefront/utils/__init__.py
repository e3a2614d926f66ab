"""Utility helpers for the storefront backend"""

from .logger import get_logger, setup_logging, mask_token
from .campaign import (
    build_link_click_payload,
    get_campaign_from_url,
    has_campaign_info,
    get_or_create_device_id,
)

__all__ = [
    'get_logger',
    'setup_logging',
    'mask_token',
    'build_link_click_payload',
    'get_campaign_from_url',
    'has_campaign_info',
    'get_or_create_device_id',
]
