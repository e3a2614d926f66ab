"""
Authentication service

OTP login against the Social API. Login state lives in an explicit
``AuthSession`` object; where the token is persisted is decided by an
injected ``TokenProvider``.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any

from ..backend_client import NaarBackendClient, get_backend_client
from ..config import config, CheckoutConfig
from ..errors import StorefrontError, Unauthorized, ValidationError
from ..models import UserDetails
from ..redis_service import RedisTokenStore, get_token_store
from ..utils.logger import get_logger, mask_token

logger = get_logger(__name__)


class TokenProvider(ABC):
    """Where the session token and login phone are kept between requests"""

    @abstractmethod
    def get_token(self) -> Optional[str]:
        ...

    @abstractmethod
    def get_login_phone(self) -> Optional[str]:
        ...

    @abstractmethod
    def set_token(self, token: str, login_phone: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryTokenProvider(TokenProvider):
    """Process-local token storage"""

    def __init__(self, token: Optional[str] = None, login_phone: Optional[str] = None):
        self._token = token
        self._login_phone = login_phone

    def get_token(self) -> Optional[str]:
        return self._token

    def get_login_phone(self) -> Optional[str]:
        return self._login_phone

    def set_token(self, token: str, login_phone: Optional[str] = None) -> None:
        self._token = token
        self._login_phone = login_phone

    def clear(self) -> None:
        self._token = None
        self._login_phone = None


class RedisTokenProvider(TokenProvider):
    """Token storage in Redis, keyed by device id, expiring after ``ttl`` seconds"""

    def __init__(self, device_id: str, store: Optional[RedisTokenStore] = None,
                 ttl: Optional[int] = None):
        self.device_id = device_id
        self.store = store or get_token_store()
        self.ttl = ttl or config.session.token_ttl_seconds

    def _record(self) -> Dict[str, Any]:
        return self.store.get_record(self.device_id) or {}

    def get_token(self) -> Optional[str]:
        return self._record().get('token')

    def get_login_phone(self) -> Optional[str]:
        return self._record().get('login_phone')

    def set_token(self, token: str, login_phone: Optional[str] = None) -> None:
        self.store.set_record(
            self.device_id,
            {
                'token': token,
                'login_phone': login_phone,
                'stored_at': datetime.now(timezone.utc)
            },
            ex=self.ttl
        )

    def clear(self) -> None:
        self.store.delete_record(self.device_id)


def create_token_provider(device_id: str) -> TokenProvider:
    """Build the token provider selected by ``SESSION_STORE``"""
    if config.session.store_type == "redis":
        return RedisTokenProvider(device_id)
    return MemoryTokenProvider()


class AuthSession:
    """Login state for one device: token, user record and the phone used to log in"""

    def __init__(self, device_id: Optional[str] = None):
        self.device_id = device_id
        self.token: Optional[str] = None
        self.user: Optional[UserDetails] = None
        self.login_phone: Optional[str] = None
        self._logout_listeners: List[Callable[[], None]] = []

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    @property
    def phone(self) -> str:
        """Contact phone: the user record's, else the one used to log in"""
        if self.user and self.user.phone_number:
            return self.user.phone_number
        return self.login_phone or ""

    @property
    def has_user_record(self) -> bool:
        return self.user is not None

    def add_logout_listener(self, listener: Callable[[], None]) -> None:
        if listener not in self._logout_listeners:
            self._logout_listeners.append(listener)

    def remove_logout_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._logout_listeners:
            self._logout_listeners.remove(listener)

    def end(self) -> None:
        """Drop all login state and notify listeners"""
        self.token = None
        self.user = None
        self.login_phone = None
        for listener in list(self._logout_listeners):
            listener()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_authenticated': self.is_authenticated,
            'phone': self.phone or None,
            'user': self.user.to_dict() if self.user else None
        }


class AuthService:
    """OTP login, user record management and logout"""

    def __init__(
        self,
        session: AuthSession,
        token_provider: Optional[TokenProvider] = None,
        backend: Optional[NaarBackendClient] = None,
        checkout_config: Optional[CheckoutConfig] = None
    ):
        self.session = session
        self.token_provider = token_provider or MemoryTokenProvider()
        self.backend = backend or get_backend_client()
        self.settings = checkout_config or config.checkout

    def normalize_phone(self, phone: str) -> str:
        """
        Turn user input into an E.164 phone number

        ``9876543210`` and ``09876543210`` both become ``+919876543210``;
        numbers that already carry a ``+`` keep their own country code.

        Raises:
            ValidationError: fewer than 10 digits
        """
        raw = (phone or "").strip()
        digits = re.sub(r"\D", "", raw)
        if raw.startswith("+"):
            if len(digits) < 10:
                raise ValidationError("Enter a valid 10-digit number", field="phone")
            return f"+{digits}"

        digits = digits.lstrip("0")
        if len(digits) < 10:
            raise ValidationError("Enter a valid 10-digit number", field="phone")
        return f"{self.settings.country_code}{digits}"

    async def request_otp(self, phone: str) -> str:
        """
        Send an OTP to the given phone

        Returns:
            The normalized phone number the OTP was sent to
        """
        full_phone = self.normalize_phone(phone)
        await self.backend.generate_otp(full_phone)
        logger.info(f"[Auth] OTP requested for {full_phone[:-4]}****")
        return full_phone

    async def login(self, phone: str, otp: str) -> AuthSession:
        """
        Verify an OTP and start a session

        Args:
            phone: Phone number as typed or already normalized
            otp: The code the user received

        Returns:
            The updated AuthSession

        Raises:
            ValidationError: malformed OTP, or the upstream returned no token
        """
        full_phone = self.normalize_phone(phone)
        code = (otp or "").strip()
        if len(code) != self.settings.otp_length or not code.isdigit():
            raise ValidationError(f"Enter all {self.settings.otp_length} digits", field="otp")

        result = await self.backend.verify_otp(full_phone, code)
        token = result.get("token") if isinstance(result, dict) else None
        if not token:
            raise ValidationError("Invalid OTP", field="otp")

        self.session.token = token
        self.session.login_phone = full_phone
        self.token_provider.set_token(token, full_phone)
        logger.info(f"[Auth] Logged in, token {mask_token(token)}")

        has_user = await self.refresh_user()
        if has_user and self.session.device_id:
            await self._link_device()
        return self.session

    async def _link_device(self) -> None:
        try:
            await self.backend.link_device_to_user(self.session.token, self.session.device_id)
        except StorefrontError as e:
            logger.warning(f"[Auth] Could not link device {self.session.device_id}: {e.message}")

    async def refresh_user(self) -> bool:
        """
        Reload the user record for the current token

        Returns:
            True if a user record exists

        Raises:
            Unauthorized: the token was rejected
        """
        if not self.session.token:
            self.session.user = None
            return False
        try:
            user = await self.backend.get_user_details(self.session.token)
        except Unauthorized:
            raise
        except StorefrontError as e:
            logger.warning(f"[Auth] Could not load user details: {e.message}")
            user = None
        self.session.user = user
        return user is not None

    async def ensure_user(self, name: Optional[str]) -> UserDetails:
        """Return the user record, creating it with ``name`` when missing"""
        if self.session.user:
            return self.session.user

        full_name = (name or "").strip()
        if not full_name:
            raise ValidationError("Enter your full name", field="full_name")

        await self.backend.create_user(self.session.token, full_name)
        if not await self.refresh_user():
            # Upstream accepted the name but has not indexed the record yet
            self.session.user = UserDetails(
                user_id="", name=full_name, phone_number=self.session.login_phone
            )
        if self.session.device_id:
            await self._link_device()
        logger.info("[Auth] User record created")
        return self.session.user

    def logout(self) -> None:
        """Forget the token and notify listeners (order caches clear themselves)"""
        self.token_provider.clear()
        self.session.end()
        logger.info("[Auth] Logged out")

    async def restore(self) -> bool:
        """
        Rehydrate the session from the token provider

        Returns:
            True if a stored token is still accepted
        """
        token = self.token_provider.get_token()
        if not token:
            return False

        self.session.token = token
        self.session.login_phone = self.token_provider.get_login_phone()
        try:
            await self.refresh_user()
        except Unauthorized:
            logger.info("[Auth] Stored token rejected, logging out")
            self.logout()
            return False
        return True
