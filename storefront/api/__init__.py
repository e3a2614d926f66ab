"""HTTP API for the Naar storefront"""

from .server import create_app

__all__ = ['create_app']
