"""Configuration management for the Naar storefront backend"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from dotenv import load_dotenv
import logging

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class APIConfig:
    """Commerce / Social backend configuration"""
    commerce_url: str
    social_url: str
    timeout: int = 30
    platform: str = "web"
    debug_curl: bool = False

    @property
    def platform_headers(self) -> Dict[str, str]:
        """Extra headers the Commerce API expects on address calls"""
        return {
            "x-platform": self.platform,
            "x-client": "naar-storefront",
        }


@dataclass
class GeocodeConfig:
    """Google geocoding configuration"""
    google_maps_api_key: str = ""
    base_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    timeout: int = 10

    @property
    def enabled(self) -> bool:
        return bool(self.google_maps_api_key)


@dataclass
class PaymentConfig:
    """Payment gateway (Razorpay checkout widget) configuration"""
    razorpay_key: str = ""
    script_url: str = "https://checkout.razorpay.com/v1/checkout.js"
    currency: str = "INR"
    theme_color: str = "#3ff0ff"
    script_timeout: int = 15


@dataclass
class CheckoutConfig:
    """Checkout flow defaults"""
    default_logistics_choice: str = "hyperlocal"
    country_code: str = "+91"
    otp_length: int = 4
    default_address_nickname: str = "Home"
    default_full_name: str = "Customer"


@dataclass
class SessionConfig:
    """Auth token storage configuration"""
    store_type: str = "memory"  # memory, redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    token_ttl_seconds: int = 3600


@dataclass
class ServerConfig:
    """HTTP server configuration"""
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    otp_rate_limit: str = "5/minute"
    checkout_idle_seconds: int = 1800


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Config:
    """Main configuration class"""

    def __init__(self):
        # Commerce / Social backends, NEXT_PUBLIC_* names kept for shared .env files
        self.api = APIConfig(
            commerce_url=os.getenv(
                "API_URL_COMMERCIAL",
                os.getenv("NEXT_PUBLIC_API_URL_COMMERCIAL", "https://devapi-commerce.naar.io/v1"),
            ).rstrip("/"),
            social_url=os.getenv(
                "API_URL_SOCIAL",
                os.getenv("NEXT_PUBLIC_API_URL_SOCIAL", "https://devapi-social.naar.io/v1"),
            ).rstrip("/"),
            timeout=int(os.getenv("API_TIMEOUT", "30")),
            platform=os.getenv("NAAR_PLATFORM", "web"),
            debug_curl=_env_bool("DEBUG_CURL_LOGGING"),
        )

        self.geocode = GeocodeConfig(
            google_maps_api_key=os.getenv(
                "GOOGLE_MAPS_API_KEY", os.getenv("NEXT_PUBLIC_GOOGLE_MAPS_API_KEY", "")
            ),
            timeout=int(os.getenv("GEOCODE_TIMEOUT", "10")),
        )

        self.payment = PaymentConfig(
            razorpay_key=os.getenv("RAZORPAY_KEY", os.getenv("NEXT_PUBLIC_RAZORPAY_KEY", "")),
            script_url=os.getenv("RAZORPAY_SCRIPT_URL", "https://checkout.razorpay.com/v1/checkout.js"),
            currency=os.getenv("PAYMENT_CURRENCY", "INR"),
            theme_color=os.getenv("PAYMENT_THEME_COLOR", "#3ff0ff"),
            script_timeout=int(os.getenv("PAYMENT_SCRIPT_TIMEOUT", "15")),
        )

        self.checkout = CheckoutConfig(
            default_logistics_choice=os.getenv("DEFAULT_LOGISTICS_CHOICE", "hyperlocal"),
            country_code=os.getenv("PHONE_COUNTRY_CODE", "+91"),
            otp_length=int(os.getenv("OTP_LENGTH", "4")),
        )

        self.session = SessionConfig(
            store_type=os.getenv("SESSION_STORE", "memory"),
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_db=int(os.getenv("REDIS_DB", "0")),
            token_ttl_seconds=int(os.getenv("TOKEN_TTL_SECONDS", "3600")),
        )

        self.server = ServerConfig(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            allowed_origins=[o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()],
            otp_rate_limit=os.getenv("OTP_RATE_LIMIT", "5/minute"),
            checkout_idle_seconds=int(os.getenv("CHECKOUT_IDLE_SECONDS", "1800")),
        )

        self.logging = LoggingConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            file=os.getenv("LOG_FILE"),
        )

    def validate(self, payments_enabled: bool = True) -> bool:
        """Validate configuration"""
        errors = []

        if not self.api.commerce_url:
            errors.append("API_URL_COMMERCIAL is required")
        if not self.api.social_url:
            errors.append("API_URL_SOCIAL is required")
        if payments_enabled and not self.payment.razorpay_key:
            errors.append("RAZORPAY_KEY is required when payments are enabled")
        if self.session.store_type not in ("memory", "redis"):
            errors.append(f"SESSION_STORE must be 'memory' or 'redis', got '{self.session.store_type}'")

        if errors:
            for error in errors:
                logging.error(f"Configuration error: {error}")
            return False

        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (secrets omitted)"""
        return {
            "api": {
                "commerce_url": self.api.commerce_url,
                "social_url": self.api.social_url,
                "timeout": self.api.timeout,
                "platform": self.api.platform,
            },
            "geocode": {
                "enabled": self.geocode.enabled,
            },
            "payment": {
                "configured": bool(self.payment.razorpay_key),
                "script_url": self.payment.script_url,
                "currency": self.payment.currency,
            },
            "checkout": {
                "default_logistics_choice": self.checkout.default_logistics_choice,
                "country_code": self.checkout.country_code,
                "otp_length": self.checkout.otp_length,
            },
            "session": {
                "store_type": self.session.store_type,
                "token_ttl_seconds": self.session.token_ttl_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


# Global configuration instance
config = Config()
