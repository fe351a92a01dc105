"""Tests for the credential store: sessions, refresh tokens, OTPs, counters."""

import asyncio
from datetime import timedelta

import pytest

from authgate.service.errors import DependencyUnavailableError, NotFoundError
from authgate.storage.cache import MemoryCacheAdapter
from authgate.storage.credentials import CredentialStore
from authgate.storage.models import SessionRecord


class FailingCache(MemoryCacheAdapter):
    async def get(self, key):
        raise DependencyUnavailableError("cache is temporarily unavailable")

    async def getdel(self, key):
        raise DependencyUnavailableError("cache is temporarily unavailable")

    async def incr(self, key, amount=1):
        raise DependencyUnavailableError("cache is temporarily unavailable")

    async def incr_with_ttl(self, key, ttl):
        raise DependencyUnavailableError("cache is temporarily unavailable")

    async def record_attempt(self, key, max_attempts):
        raise DependencyUnavailableError("cache is temporarily unavailable")

    async def delete(self, *keys):
        raise DependencyUnavailableError("cache is temporarily unavailable")

    async def delete_pattern(self, pattern):
        raise ConnectionResetError("connection reset by peer")


@pytest.fixture
def cache(clock):
    return MemoryCacheAdapter(clock=clock.monotonic)


@pytest.fixture
def store(cache, settings, clock):
    return CredentialStore(cache, settings, clock=clock)


@pytest.fixture
def broken_store(settings, clock):
    return CredentialStore(FailingCache(clock=clock.monotonic), settings, clock=clock)


class TestKeys:
    def test_generate_key_layout(self, store):
        assert store.generate_key("sessions", "u1") == "gasconnect:auth:sessions:u1"
        assert store.generate_key("refresh_tokens", "u1", "abc") == "gasconnect:auth:refresh_tokens:u1:abc"


class TestSessions:
    async def test_get_session_slides_last_accessed(self, store, clock):
        await store.set_session(SessionRecord(user_id="u1", token_id="jti-1", login_at=clock(), last_accessed=clock()))
        clock.advance(120)
        session = await store.get_session("u1")
        assert session.token_id == "jti-1"
        assert session.last_accessed == clock()

    async def test_session_expires_after_idle_ttl(self, store, clock, settings):
        await store.set_session(SessionRecord(user_id="u1", token_id="jti-1"))
        clock.advance(settings.session_ttl_seconds)
        assert await store.get_session("u1") is None

    async def test_read_refreshes_session_ttl(self, store, clock, settings):
        await store.set_session(SessionRecord(user_id="u1", token_id="jti-1"))
        clock.advance(settings.session_ttl_seconds - 10)
        assert await store.get_session("u1") is not None
        clock.advance(60)
        assert await store.get_session("u1") is not None

    async def test_extend_session(self, store, cache, settings):
        await store.set_session(SessionRecord(user_id="u1", token_id="jti-1"))
        assert await store.extend_session("u1", 600) is True
        key = store.generate_key(store.SESSIONS, "u1")
        assert await cache.ttl(key) == settings.session_ttl_seconds + 600

    async def test_extend_missing_session(self, store):
        assert await store.extend_session("nobody") is False

    async def test_delete_session(self, store):
        await store.set_session(SessionRecord(user_id="u1", token_id="jti-1"))
        assert await store.delete_session("u1") is True
        assert await store.delete_session("u1") is False


class TestRefreshTokens:
    async def test_consume_is_single_use(self, store, clock):
        await store.store_refresh_token("u1", "h1", clock() + timedelta(days=7), client_ip="10.0.0.1")
        record = await store.consume_refresh_token("u1", "h1")
        assert record.client_ip == "10.0.0.1"
        assert await store.consume_refresh_token("u1", "h1") is None

    async def test_validate_rejects_other_user(self, store, clock):
        await store.store_refresh_token("u1", "h1", clock() + timedelta(days=7))
        assert await store.validate_refresh_token("u1", "h1") is not None
        assert await store.validate_refresh_token("u2", "h1") is None

    async def test_record_ttl_tracks_expiry(self, store, clock):
        await store.store_refresh_token("u1", "h1", clock() + timedelta(seconds=30))
        clock.advance(30)
        assert await store.validate_refresh_token("u1", "h1") is None

    async def test_revoke_all(self, store, clock):
        for token_hash in ("h1", "h2", "h3"):
            await store.store_refresh_token("u1", token_hash, clock() + timedelta(days=1))
        await store.store_refresh_token("u2", "h1", clock() + timedelta(days=1))
        assert await store.revoke_all_refresh_tokens("u1") == 3
        assert await store.validate_refresh_token("u1", "h2") is None
        assert await store.validate_refresh_token("u2", "h1") is not None

    async def test_revoke_all_is_idempotent(self, store):
        assert await store.revoke_all_refresh_tokens("u1") == 0
        assert await store.revoke_all_refresh_tokens("u1") == 0

    async def test_lookup_fails_closed_when_cache_down(self, broken_store):
        assert await broken_store.consume_refresh_token("u1", "h1") is None
        assert await broken_store.validate_refresh_token("u1", "h1") is None

    async def test_revoke_all_surfaces_cache_failure(self, broken_store):
        with pytest.raises(DependencyUnavailableError):
            await broken_store.revoke_all_refresh_tokens("u1")


class TestOTP:
    async def test_correct_code_is_single_use(self, store):
        await store.set_otp("+2348000000000", "123456", "phone_verification")
        result = await store.verify_otp("+2348000000000", "123456", "phone_verification")
        assert result.valid is True
        with pytest.raises(NotFoundError):
            await store.verify_otp("+2348000000000", "123456", "phone_verification")

    async def test_wrong_code_reports_attempts_left(self, store):
        await store.set_otp("a@b.co", "123456")
        result = await store.verify_otp("a@b.co", "000000")
        assert result.valid is False
        assert result.attempts_left == 2

    async def test_attempt_budget_is_enforced(self, store):
        await store.set_otp("a@b.co", "123456")
        for _ in range(3):
            assert (await store.verify_otp("a@b.co", "000000")).valid is False
        # The fourth call is refused even with the right code
        with pytest.raises(NotFoundError) as excinfo:
            await store.verify_otp("a@b.co", "123456")
        assert excinfo.value.detail["reason"] == "too_many_attempts"
        with pytest.raises(NotFoundError):
            await store.verify_otp("a@b.co", "123456")

    async def test_wrong_guess_keeps_original_expiry(self, store, clock, settings):
        await store.set_otp("a@b.co", "123456")
        clock.advance(settings.otp_ttl_seconds - 5)
        await store.verify_otp("a@b.co", "000000")
        clock.advance(5)
        with pytest.raises(NotFoundError):
            await store.verify_otp("a@b.co", "123456")

    async def test_missing_when_cache_down(self, broken_store):
        with pytest.raises(NotFoundError):
            await broken_store.verify_otp("a@b.co", "123456")

    async def test_non_ascii_guess_is_a_wrong_code(self, store):
        await store.set_otp("a@b.co", "123456")
        for guess in ("12345é", "\ud800"):
            assert (await store.verify_otp("a@b.co", guess)).valid is False
        assert (await store.verify_otp("a@b.co", "123456")).valid is True

    async def test_concurrent_guesses_share_one_budget(self, yielding_cache, settings, clock):
        store = CredentialStore(yielding_cache, settings, clock=clock)
        await store.set_otp("a@b.co", "123456")
        guesses = ["000000"] * 9 + ["123456"]
        results = await asyncio.gather(
            *(store.verify_otp("a@b.co", guess) for guess in guesses),
            return_exceptions=True,
        )
        answered = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, NotFoundError)]
        assert len(answered) == settings.otp_max_attempts
        assert all(r.valid is False for r in answered)
        assert sorted(r.attempts_left for r in answered) == [0, 1, 2]
        assert len(refused) == len(guesses) - settings.otp_max_attempts
        with pytest.raises(NotFoundError):
            await store.verify_otp("a@b.co", "123456")

    async def test_concurrent_correct_codes_verify_once(self, yielding_cache, settings, clock):
        store = CredentialStore(yielding_cache, settings, clock=clock)
        await store.set_otp("a@b.co", "123456")
        results = await asyncio.gather(
            *(store.verify_otp("a@b.co", "123456") for _ in range(3)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception) and r.valid) == 1
        assert sum(1 for r in results if isinstance(r, NotFoundError)) == 2


class TestCounters:
    async def test_rate_limit_window_starts_at_first_hit(self, store, clock):
        first = await store.check_rate_limit("login:a@b.co", 2, 60)
        assert first.attempts == 1 and first.remaining == 1 and not first.blocked
        clock.advance(30)
        await store.check_rate_limit("login:a@b.co", 2, 60)
        third = await store.check_rate_limit("login:a@b.co", 2, 60)
        assert third.blocked is True
        assert third.reset_time == clock() + timedelta(seconds=30)
        clock.advance(30)
        fresh = await store.check_rate_limit("login:a@b.co", 2, 60)
        assert fresh.attempts == 1

    async def test_concurrent_hits_are_all_counted(self, yielding_cache, settings, clock):
        store = CredentialStore(yielding_cache, settings, clock=clock)
        statuses = await asyncio.gather(*(store.check_rate_limit("login:a@b.co", 2, 60) for _ in range(5)))
        assert sorted(s.attempts for s in statuses) == [1, 2, 3, 4, 5]
        assert sum(1 for s in statuses if s.blocked) == 3
        key = store.generate_key(store.RATE_LIMIT, "login:a@b.co")
        assert await yielding_cache.ttl(key) == 60

    async def test_rate_limit_fails_open(self, broken_store):
        status = await broken_store.check_rate_limit("login:a@b.co", 2, 60)
        assert status.blocked is False
        assert status.remaining == 2

    async def test_active_users_window(self, store, clock, settings):
        await store.track_active_user("u1")
        clock.advance(settings.active_user_window_seconds + 1)
        await store.track_active_user("u2")
        assert await store.get_active_users_count() == 1


class TestInvalidation:
    async def test_invalidate_user_cache_removes_all_families(self, store, clock):
        await store.set_session(SessionRecord(user_id="u1", token_id="j"))
        await store.cache_user_profile("u1", {"id": "u1"})
        await store.cache_user_permissions("u1", ["orders:read"])
        await store.store_refresh_token("u1", "h1", clock() + timedelta(days=1))
        assert await store.invalidate_user_cache("u1") == 4
        assert await store.get_session("u1") is None
        assert await store.get_user_profile("u1") is None
        assert await store.get_user_permissions("u1") is None
        assert await store.validate_refresh_token("u1", "h1") is None

    async def test_invalidate_surfaces_cache_failure(self, broken_store):
        with pytest.raises(DependencyUnavailableError):
            await broken_store.invalidate_user_cache("u1")

    async def test_health_check(self, store, broken_store):
        assert await store.health_check() == {"status": "healthy"}
        assert (await broken_store.health_check())["status"] == "unhealthy"
