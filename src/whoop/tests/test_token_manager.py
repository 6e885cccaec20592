"""Tests for the OAuth token lifecycle: code exchange, refresh, single-flight."""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from src.whoop.base import ApiError, AuthRequired
from src.whoop.token_manager import MAX_PENDING_STATES, SCOPES, OAuthStateRegistry, TokenManager
from src.whoop.token_store import TokenStore
from src.whoop.tests.conftest import T0, FakeClock, FakeWhoop, token_response


# ---------------------------------------------------------------------------
# Authorization code exchange
# ---------------------------------------------------------------------------


class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_stores_initial_credential(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        fake_whoop.on_token(token_response("A1", "R1", 3600))

        credential = await manager.exchange_code("abc")

        assert credential.access_token == "A1"
        assert credential.refresh_token == "R1"
        assert credential.expires_at == int(T0 * 1000) + 3_600_000
        assert store.load() == credential

    @pytest.mark.asyncio
    async def test_posts_authorization_code_grant(
        self, manager: TokenManager, fake_whoop: FakeWhoop
    ) -> None:
        fake_whoop.on_token(token_response("A1", "R1", 3600))

        await manager.exchange_code("abc")

        (request,) = fake_whoop.token_requests
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert FakeWhoop.form(request) == {
            "grant_type": "authorization_code",
            "code": "abc",
            "client_id": "test_client_id",
            "client_secret": "test_client_secret",
            "redirect_uri": "http://testserver/auth/callback",
        }

    @pytest.mark.asyncio
    async def test_rejected_code_raises_api_error_and_leaves_store_alone(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        existing = store.save("A0", "R0", 3600)
        fake_whoop.on_token(
            httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "The authorization code is invalid"},
            )
        )

        with pytest.raises(ApiError) as exc_info:
            await manager.exchange_code("bad")

        assert exc_info.value.status == 400
        assert exc_info.value.message == "The authorization code is invalid"
        assert store.load() == existing

    @pytest.mark.asyncio
    async def test_null_access_token_in_exchange_is_rejected(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        fake_whoop.on_token(
            httpx.Response(200, json={"access_token": None, "refresh_token": "R1", "expires_in": 3600})
        )

        with pytest.raises(ApiError):
            await manager.exchange_code("abc")

        assert store.load() is None

    @pytest.mark.asyncio
    async def test_unreachable_token_endpoint_raises_api_error(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        fake_whoop.on_token(httpx.ConnectError("connection refused"))

        with pytest.raises(ApiError) as exc_info:
            await manager.exchange_code("abc")

        assert exc_info.value.status is None
        assert store.load() is None


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_replaces_credential(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop, clock: FakeClock
    ) -> None:
        store.save("A1", "R1", 3600)
        clock.advance(3500)
        fake_whoop.on_token(token_response("A2", "R2", 3600))

        credential = await manager.refresh()

        assert credential.access_token == "A2"
        assert credential.refresh_token == "R2"
        assert credential.expires_at == int((T0 + 3500) * 1000) + 3_600_000
        assert store.load() == credential

    @pytest.mark.asyncio
    async def test_refresh_posts_refresh_grant(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        store.save("A1", "R1", 3600)
        fake_whoop.on_token(token_response())

        await manager.refresh()

        form = FakeWhoop.form(fake_whoop.token_requests[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "R1"
        assert form["client_id"] == "test_client_id"
        assert form["client_secret"] == "test_client_secret"

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token_when_not_rotated(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        store.save("A1", "R1", 3600)
        fake_whoop.on_token(token_response("A2", refresh_token=None))

        credential = await manager.refresh()

        assert credential.refresh_token == "R1"

    @pytest.mark.asyncio
    async def test_refresh_without_credential_requires_auth(
        self, manager: TokenManager, fake_whoop: FakeWhoop
    ) -> None:
        with pytest.raises(AuthRequired):
            await manager.refresh()
        assert fake_whoop.requests == []

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_clears_store(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        store.save("A1", "R1", 3600)
        fake_whoop.on_token(httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(AuthRequired):
            await manager.refresh()

        assert store.load() is None

    @pytest.mark.asyncio
    async def test_network_failure_during_refresh_clears_store(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        store.save("A1", "R1", 3600)
        fake_whoop.on_token(httpx.ConnectError("connection reset"))

        with pytest.raises(AuthRequired):
            await manager.refresh()

        assert store.load() is None

    @pytest.mark.asyncio
    async def test_token_response_without_expires_in_is_a_failure(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        store.save("A1", "R1", 3600)
        fake_whoop.on_token(token_response("A2", "R2", expires_in=None))

        with pytest.raises(AuthRequired):
            await manager.refresh()

        assert store.load() is None

    @pytest.mark.asyncio
    async def test_token_response_with_null_access_token_is_a_failure(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        store.save("A1", "R1", 3600)
        fake_whoop.on_token(
            httpx.Response(200, json={"access_token": None, "refresh_token": "R2", "expires_in": 3600})
        )

        with pytest.raises(AuthRequired):
            await manager.refresh()

        assert store.load() is None

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_retried(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        store.save("A1", "R1", 3600)
        fake_whoop.on_token(httpx.Response(401, json={"error": "invalid_client"}))

        with pytest.raises(AuthRequired):
            await manager.refresh()
        with pytest.raises(AuthRequired):
            await manager.refresh()

        assert len(fake_whoop.token_requests) == 1

    @pytest.mark.asyncio
    async def test_stale_caller_reuses_newer_credential(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        stale = store.save("A1", "R1", 3600)
        store.save("A2", "R2", 3600)

        credential = await manager.refresh(stale=stale)

        assert credential.access_token == "A2"
        assert fake_whoop.token_requests == []

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_hit_token_endpoint_once(
        self, manager: TokenManager, store: TokenStore, fake_whoop: FakeWhoop
    ) -> None:
        stale = store.save("A1", "R1", 3600)
        fake_whoop.on_token(token_response("A2", "R2", 3600), httpx.Response(400))

        first, second = await asyncio.gather(
            manager.refresh(stale=stale), manager.refresh(stale=stale)
        )

        assert len(fake_whoop.token_requests) == 1
        assert first == second
        assert first.access_token == "A2"


# ---------------------------------------------------------------------------
# Authorization URL and state
# ---------------------------------------------------------------------------


class TestAuthorizationUrl:
    def test_url_carries_client_scopes_and_state(self, manager: TokenManager) -> None:
        url = urlparse(manager.authorization_url("s3cr3t"))
        query = {k: v[0] for k, v in parse_qs(url.query).items()}

        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://whoop.test/oauth/oauth2/auth"
        assert query["client_id"] == "test_client_id"
        assert query["response_type"] == "code"
        assert query["redirect_uri"] == "http://testserver/auth/callback"
        assert query["state"] == "s3cr3t"
        assert query["scope"] == "offline read:recovery read:sleep read:workout read:cycles read:profile"
        assert query["scope"].split() == SCOPES


class TestOAuthStateRegistry:
    def test_issued_state_is_redeemable_once(self) -> None:
        registry = OAuthStateRegistry()
        state = registry.issue()

        assert len(state) == 32
        assert registry.consume(state) is True
        assert registry.consume(state) is False

    def test_unknown_or_missing_state_is_rejected(self) -> None:
        registry = OAuthStateRegistry()
        assert registry.consume("forged") is False
        assert registry.consume(None) is False

    def test_state_expires_after_ttl(self) -> None:
        clock = FakeClock(0.0)
        registry = OAuthStateRegistry(ttl_seconds=600, clock=clock)
        state = registry.issue()

        clock.advance(601)

        assert registry.consume(state) is False

    def test_states_are_unique(self) -> None:
        registry = OAuthStateRegistry()
        assert len({registry.issue() for _ in range(50)}) == 50

    def test_oldest_state_is_evicted_past_the_cap(self) -> None:
        registry = OAuthStateRegistry(max_pending=3)
        first, second, third, fourth = (registry.issue() for _ in range(4))

        assert registry.consume(first) is False
        assert registry.consume(second) is True
        assert registry.consume(third) is True
        assert registry.consume(fourth) is True

    def test_default_cap_bounds_outstanding_states(self) -> None:
        registry = OAuthStateRegistry()
        states = [registry.issue() for _ in range(MAX_PENDING_STATES + 50)]

        assert sum(registry.consume(s) for s in states) == MAX_PENDING_STATES
        assert registry.consume(states[-1]) is False
