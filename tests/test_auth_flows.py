"""Tests for account flows: registration, login, lockout, verification and reset."""

from dataclasses import dataclass

import pytest

from authgate.resilience.circuit_breaker import BreakerSet
from authgate.service.auth import AuthService
from authgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from authgate.service.events import EventPublisher, MemoryEventBroker
from authgate.service.passwords import Argon2PasswordHasher
from authgate.service.tokens import TokenService
from authgate.storage.cache import MemoryCacheAdapter
from authgate.storage.credentials import CredentialStore
from authgate.storage.users import MemoryUserStore

PASSWORD = "Str0ng!Pass"


@dataclass
class Harness:
    auth: AuthService
    users: MemoryUserStore
    credentials: CredentialStore
    broker: MemoryEventBroker
    events: EventPublisher


@pytest.fixture
def harness(settings, clock):
    users = MemoryUserStore(clock=clock)
    credentials = CredentialStore(MemoryCacheAdapter(clock=clock.monotonic), settings, clock=clock)
    tokens = TokenService(credentials, users, settings, clock=clock)
    broker = MemoryEventBroker()
    events = EventPublisher(broker, BreakerSet.from_settings(settings).broker, settings)
    # Cheap parameters keep the suite fast; production defaults are covered separately
    hasher = Argon2PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)
    auth = AuthService(users, tokens, credentials, hasher, events, settings, clock=clock)
    return Harness(auth=auth, users=users, credentials=credentials, broker=broker, events=events)


async def _register(harness, email="buyer@example.com", phone=None, role="household"):
    return await harness.auth.register(email, PASSWORD, role, phone=phone)


class TestRegistration:
    async def test_register_returns_usable_tokens(self, harness):
        user, pair = await _register(harness)
        context = await harness.auth.authenticate(f"Bearer {pair.access_token}")
        assert context.user_id == user.id
        assert context.role == "household"
        await harness.events.drain()
        assert harness.broker.events("user.created")[0]["data"]["user_id"] == user.id

    async def test_email_is_normalized(self, harness):
        user, _ = await harness.auth.register("  Buyer@Example.COM ", PASSWORD, "artisan")
        assert user.email == "buyer@example.com"

    async def test_duplicate_email_conflicts(self, harness):
        await _register(harness)
        with pytest.raises(ConflictError) as excinfo:
            await _register(harness)
        assert excinfo.value.detail["field"] == "email"

    async def test_duplicate_phone_conflicts(self, harness):
        await _register(harness, phone="+2348012345678")
        with pytest.raises(ConflictError) as excinfo:
            await _register(harness, email="other@example.com", phone="+2348012345678")
        assert excinfo.value.detail["field"] == "phone"

    async def test_platform_admin_cannot_self_register(self, harness):
        with pytest.raises(ValidationError):
            await _register(harness, role="platform_admin")

    async def test_weak_password_rejected(self, harness):
        with pytest.raises(ValidationError) as excinfo:
            await harness.auth.register("a@example.com", "password", "household")
        assert "must contain an uppercase letter" in excinfo.value.detail["password"]

    async def test_phone_must_be_e164(self, harness):
        with pytest.raises(ValidationError):
            await _register(harness, phone="08012345678")


class TestLogin:
    async def test_login_by_email_and_phone(self, harness):
        await _register(harness, phone="+2348012345678")
        user, _ = await harness.auth.login("buyer@example.com", PASSWORD)
        assert user.last_login_at is not None
        same, _ = await harness.auth.login("+2348012345678", PASSWORD)
        assert same.id == user.id
        await harness.events.drain()
        assert len(harness.broker.events("user.login")) == 2

    async def test_unknown_identifier_and_wrong_password_look_alike(self, harness):
        await _register(harness)
        with pytest.raises(AuthenticationError) as unknown:
            await harness.auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await harness.auth.login("buyer@example.com", "Wr0ng!Pass")
        assert unknown.value.message == wrong.value.message

    async def test_rate_limit(self, harness, settings):
        await _register(harness)
        for _ in range(settings.login_rate_limit):
            await harness.auth.login("buyer@example.com", PASSWORD)
        with pytest.raises(RateLimitedError):
            await harness.auth.login("buyer@example.com", PASSWORD)

    async def test_unverified_login_can_be_refused(self, harness):
        await _register(harness)
        harness.auth.settings = harness.auth.settings.model_copy(update={"allow_unverified_login": False})
        with pytest.raises(AuthorizationError):
            await harness.auth.login("buyer@example.com", PASSWORD)

    async def test_deactivated_user_cannot_login(self, harness):
        user, _ = await _register(harness)
        await harness.auth.deactivate_user(user.id)
        with pytest.raises(AuthenticationError):
            await harness.auth.login("buyer@example.com", PASSWORD)


class TestLockout:
    async def test_five_failures_lock_even_correct_password(self, harness):
        user, _ = await _register(harness)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await harness.auth.login("buyer@example.com", "Wr0ng!Pass")
        stored = await harness.users.get_user(user.id)
        assert stored.failed_login_attempts == 5
        assert stored.locked_until is not None
        with pytest.raises(AccountLockedError):
            await harness.auth.login("buyer@example.com", PASSWORD)

    async def test_lock_expires(self, harness, clock, settings):
        user, _ = await _register(harness)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await harness.auth.login("buyer@example.com", "Wr0ng!Pass")
        clock.advance(settings.lockout_duration_minutes * 60)
        logged_in, _ = await harness.auth.login("buyer@example.com", PASSWORD)
        assert logged_in.failed_login_attempts == 0
        stored = await harness.users.get_user(user.id)
        assert stored.locked_until is None

    async def test_success_resets_counter(self, harness):
        user, _ = await _register(harness)
        for _ in range(4):
            with pytest.raises(AuthenticationError):
                await harness.auth.login("buyer@example.com", "Wr0ng!Pass")
        await harness.auth.login("buyer@example.com", PASSWORD)
        assert (await harness.users.get_user(user.id)).failed_login_attempts == 0
        with pytest.raises(AuthenticationError):
            await harness.auth.login("buyer@example.com", "Wr0ng!Pass")
        assert (await harness.users.get_user(user.id)).locked_until is None


class TestTokenLifecycle:
    async def test_register_login_refresh_replay(self, harness):
        await _register(harness)
        _, pair = await harness.auth.login("buyer@example.com", PASSWORD)
        _, rotated = await harness.auth.refresh(pair.refresh_token)
        with pytest.raises(AuthenticationError):
            await harness.auth.refresh(pair.refresh_token)
        context = await harness.auth.authenticate(f"Bearer {rotated.access_token}")
        assert context.token_id

    async def test_logout_is_idempotent(self, harness):
        user, pair = await _register(harness)
        await harness.auth.logout(user.id, pair.refresh_token)
        await harness.auth.logout(user.id, pair.refresh_token)
        with pytest.raises(AuthenticationError):
            await harness.auth.authenticate(f"Bearer {pair.access_token}")
        await harness.events.drain()
        assert len(harness.broker.events("user.logout")) == 2

    async def test_logout_all(self, harness):
        user, first = await _register(harness)
        _, second = await harness.auth.login("buyer@example.com", PASSWORD)
        await harness.auth.logout_all(user.id)
        for pair in (first, second):
            with pytest.raises(AuthenticationError):
                await harness.auth.refresh(pair.refresh_token)

    async def test_missing_bearer(self, harness):
        with pytest.raises(AuthenticationError):
            await harness.auth.authenticate(None)

    async def test_authorize_roles(self, harness):
        _, pair = await _register(harness, role="supplier")
        context = await harness.auth.authenticate(f"Bearer {pair.access_token}")
        assert harness.auth.authorize(context, "supplier", "platform_admin") is context
        assert harness.auth.authorize(context) is context
        with pytest.raises(AuthorizationError):
            harness.auth.authorize(context, "platform_admin")


class TestVerification:
    async def test_email_verification(self, harness):
        user, _ = await _register(harness)
        token = await harness.auth.request_email_verification(user.id)
        with pytest.raises(ValidationError):
            await harness.auth.verify_email(user.id, "not-the-token")
        verified = await harness.auth.verify_email(user.id, token)
        assert verified.is_verified is True
        assert verified.email_verified_at is not None
        with pytest.raises(ValidationError):
            await harness.auth.verify_email(user.id, token)
        await harness.events.drain()
        assert harness.broker.events("user.verified")[0]["data"]["channel"] == "email"

    async def test_phone_verification(self, harness):
        user, _ = await _register(harness, phone="+2348012345678")
        otp = await harness.auth.request_phone_verification(user.id)
        assert len(otp) == 6 and otp.isdigit()
        verified = await harness.auth.verify_phone(user.id, otp)
        assert verified.phone_verified_at is not None

    async def test_phone_otp_attempts_are_bounded(self, harness):
        user, _ = await _register(harness, phone="+2348012345678")
        otp = await harness.auth.request_phone_verification(user.id)
        wrong = "000000" if otp != "000000" else "111111"
        for expected_left in (2, 1, 0):
            with pytest.raises(ValidationError) as excinfo:
                await harness.auth.verify_phone(user.id, wrong)
            assert excinfo.value.detail["attempts_left"] == expected_left
        with pytest.raises(NotFoundError):
            await harness.auth.verify_phone(user.id, otp)

    async def test_phone_verification_requires_phone(self, harness):
        user, _ = await _register(harness)
        with pytest.raises(ValidationError):
            await harness.auth.request_phone_verification(user.id)


class TestPasswordReset:
    async def test_reset_flow_revokes_tokens(self, harness):
        user, pair = await _register(harness)
        token = await harness.auth.request_password_reset("buyer@example.com")
        await harness.auth.reset_password(token, "N3w!Password")
        with pytest.raises(AuthenticationError):
            await harness.auth.refresh(pair.refresh_token)
        with pytest.raises(AuthenticationError):
            await harness.auth.login("buyer@example.com", PASSWORD)
        await harness.auth.login("buyer@example.com", "N3w!Password")
        await harness.events.drain()
        assert harness.broker.events("user.password_reset")[0]["data"]["user_id"] == user.id

    async def test_reset_token_is_single_use(self, harness):
        await _register(harness)
        token = await harness.auth.request_password_reset("buyer@example.com")
        await harness.auth.reset_password(token, "N3w!Password")
        with pytest.raises(ValidationError):
            await harness.auth.reset_password(token, "An0ther!Pass")

    async def test_reset_token_expires(self, harness, clock, settings):
        await _register(harness)
        token = await harness.auth.request_password_reset("buyer@example.com")
        clock.advance(settings.password_reset_ttl_minutes * 60)
        with pytest.raises(ValidationError):
            await harness.auth.reset_password(token, "N3w!Password")

    async def test_newer_request_supersedes_older(self, harness):
        await _register(harness)
        old = await harness.auth.request_password_reset("buyer@example.com")
        await harness.auth.request_password_reset("buyer@example.com")
        with pytest.raises(ValidationError):
            await harness.auth.reset_password(old, "N3w!Password")

    async def test_unknown_identifier_returns_none(self, harness):
        assert await harness.auth.request_password_reset("ghost@example.com") is None

    async def test_change_password(self, harness):
        user, pair = await _register(harness)
        with pytest.raises(AuthenticationError):
            await harness.auth.change_password(user.id, "Wr0ng!Pass", "N3w!Password")
        await harness.auth.change_password(user.id, PASSWORD, "N3w!Password")
        with pytest.raises(AuthenticationError):
            await harness.auth.authenticate(f"Bearer {pair.access_token}")
        await harness.auth.login("buyer@example.com", "N3w!Password")


class TestDeactivation:
    async def test_deactivate_invalidates_everything(self, harness):
        user, pair = await _register(harness)
        await harness.auth.deactivate_user(user.id)
        with pytest.raises(AuthenticationError):
            await harness.auth.authenticate(f"Bearer {pair.access_token}")
        with pytest.raises(AuthenticationError):
            await harness.auth.refresh(pair.refresh_token)
        assert await harness.credentials.get_user_profile(user.id) is None

    async def test_deactivate_unknown_user(self, harness):
        with pytest.raises(NotFoundError):
            await harness.auth.deactivate_user("missing")
