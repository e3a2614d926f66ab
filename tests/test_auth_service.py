"""Tests for OTP login, session restore and token providers."""

import json

import pytest

from conftest import PHONE, VALID_OTP
from storefront.errors import Unauthorized, ValidationError
from storefront.redis_service import KEY_PREFIX, RedisTokenStore
from storefront.services import AuthService, AuthSession, MemoryTokenProvider
from storefront.services.auth_service import RedisTokenProvider


class FakeRedis:
    """Just enough of redis.Redis for the token store"""

    def __init__(self):
        self.data = {}
        self.expiry = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    def delete(self, key):
        self.data.pop(key, None)

    def exists(self, key):
        return int(key in self.data)


@pytest.mark.parametrize("raw, expected", [
    ("9876543210", PHONE),
    ("09876543210", PHONE),
    ("98765 43210", PHONE),
    ("+919876543210", PHONE),
    ("+1 415 555 0100", "+14155550100"),
])
def test_normalize_phone(auth, raw, expected):
    assert auth.normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", "12345", "+91123", "0000000000"])
def test_normalize_phone_rejects_short_numbers(auth, raw):
    with pytest.raises(ValidationError) as exc:
        auth.normalize_phone(raw)
    assert exc.value.message == "Enter a valid 10-digit number"
    assert exc.value.field == "phone"


async def test_request_otp_returns_normalized_phone(auth, upstream):
    assert await auth.request_otp("9876543210") == PHONE
    assert upstream.otp_requests == [PHONE]


async def test_login_for_existing_user_links_device(auth, upstream):
    upstream.users["tok-1"] = {"userId": "user-1", "name": "Asha", "phoneNumber": PHONE}

    session = await auth.login("9876543210", VALID_OTP)

    assert session.token == "tok-1"
    assert session.login_phone == PHONE
    assert session.user.name == "Asha"
    assert auth.token_provider.get_token() == "tok-1"
    assert upstream.count("POST", "/linkDevice") == 1


async def test_login_for_new_user_has_no_record(auth, upstream):
    session = await auth.login("9876543210", VALID_OTP)

    assert session.is_authenticated
    assert session.user is None
    assert session.phone == PHONE
    assert upstream.count("POST", "/linkDevice") == 0


@pytest.mark.parametrize("otp", ["123", "12345", "12a4", ""])
async def test_login_rejects_malformed_otp(auth, upstream, otp):
    with pytest.raises(ValidationError) as exc:
        await auth.login("9876543210", otp)

    assert exc.value.message == "Enter all 4 digits"
    assert upstream.calls == []


async def test_login_without_token_is_invalid_otp(auth, backend, monkeypatch):
    async def no_token(phone, otp):
        return {"status": "success"}

    monkeypatch.setattr(backend, "verify_otp", no_token)

    with pytest.raises(ValidationError) as exc:
        await auth.login("9876543210", VALID_OTP)

    assert exc.value.message == "Invalid OTP"
    assert not auth.session.is_authenticated


async def test_ensure_user_creates_record(auth, upstream):
    await auth.login("9876543210", VALID_OTP)

    user = await auth.ensure_user("  Asha Rao ")

    assert user.user_id == "user-1"
    assert user.name == "Asha Rao"
    assert auth.session.has_user_record
    assert upstream.count("POST", "/userDetails") == 1


async def test_ensure_user_requires_name(auth, upstream):
    await auth.login("9876543210", VALID_OTP)

    with pytest.raises(ValidationError) as exc:
        await auth.ensure_user("   ")

    assert exc.value.message == "Enter your full name"


async def test_ensure_user_is_noop_with_record(logged_in, upstream):
    user = await logged_in.ensure_user(None)

    assert user.name == "Asha"
    assert upstream.count("POST", "/userDetails") == 0


async def test_logout_clears_state_and_notifies(logged_in):
    notified = []
    logged_in.session.add_logout_listener(lambda: notified.append(True))

    logged_in.logout()

    assert notified == [True]
    assert not logged_in.session.is_authenticated
    assert logged_in.session.user is None
    assert logged_in.token_provider.get_token() is None


async def test_restore_with_valid_token(backend, checkout_config, upstream):
    upstream.tokens.add("tok-9")
    upstream.users["tok-9"] = {"userId": "user-9", "name": "Ravi"}
    auth = AuthService(AuthSession("device-9"), MemoryTokenProvider("tok-9", PHONE), backend, checkout_config)

    assert await auth.restore()

    assert auth.session.token == "tok-9"
    assert auth.session.user.user_id == "user-9"
    assert auth.session.phone == PHONE


async def test_restore_with_rejected_token_logs_out(backend, checkout_config, upstream):
    provider = MemoryTokenProvider("tok-stale", PHONE)
    auth = AuthService(AuthSession("device-9"), provider, backend, checkout_config)

    assert await auth.restore() is False

    assert not auth.session.is_authenticated
    assert provider.get_token() is None


async def test_restore_without_token(auth):
    assert await auth.restore() is False


async def test_refresh_user_propagates_unauthorized(logged_in, upstream):
    upstream.tokens.clear()

    with pytest.raises(Unauthorized):
        await logged_in.refresh_user()


def test_redis_provider_round_trip():
    redis_client = FakeRedis()
    provider = RedisTokenProvider("device-7", RedisTokenStore(client=redis_client), ttl=120)

    provider.set_token("tok-7", PHONE)

    key = f"{KEY_PREFIX}device-7"
    stored = json.loads(redis_client.data[key])
    assert stored["token"] == "tok-7"
    assert redis_client.expiry[key] == 120
    assert provider.get_token() == "tok-7"
    assert provider.get_login_phone() == PHONE
    assert provider.store.exists_record("device-7")

    provider.clear()
    assert provider.get_token() is None
    assert not provider.store.exists_record("device-7")


def test_redis_store_without_connection_is_inert():
    store = RedisTokenStore(client=FakeRedis())
    store.client = None

    store.set_record("device-1", {"token": "x"})
    assert store.get_record("device-1") is None
    assert store.exists_record("device-1") is False
