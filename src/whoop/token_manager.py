"""WHOOP OAuth2 token lifecycle.

The stored credential moves through four implicit states:

    Absent      — nothing stored (never authorized, or cleared)
    Valid       — stored and outside the expiry buffer
    NearExpiry  — stored but inside the buffer; refresh proactively
    Invalid     — rejected upstream (401); refresh reactively

``TokenManager.refresh()`` is the only path from Valid/NearExpiry/Invalid
back to Valid, and a failed refresh is the only path to Absent.  The
authorization-code exchange (``exchange_code``) is the only path out of
Absent.

Refreshes are serialized behind an ``asyncio.Lock``: WHOOP rotates refresh
tokens, so two overlapping refresh grants would make the second one fail and
wipe a perfectly good credential.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from src.whoop.base import ApiError, AuthRequired, Credential
from src.whoop.token_store import TokenStore

logger = logging.getLogger("whoop_bridge.token_manager")

SCOPES: list[str] = [
    "offline",
    "read:recovery",
    "read:sleep",
    "read:workout",
    "read:cycles",
    "read:profile",
]

# How long an issued OAuth state value stays redeemable (seconds)
STATE_TTL_SECONDS = 600

# Outstanding state values kept at once; the oldest is evicted beyond this
MAX_PENDING_STATES = 256


class TokenManager:
    """Performs the authorization-code and refresh-token grants.

    Args:
        store:         Credential store updated on every successful grant.
        http_client:   Shared httpx client (carries the request timeout).
        client_id:     WHOOP OAuth2 client ID.
        client_secret: WHOOP OAuth2 client secret.
        redirect_uri:  Registered callback URL.
        token_url:     WHOOP token endpoint.
        auth_url:      WHOOP authorize endpoint.
    """

    def __init__(
        self,
        store: TokenStore,
        http_client: httpx.AsyncClient,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        token_url: str,
        auth_url: str,
    ) -> None:
        self._store = store
        self._http = http_client
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._token_url = token_url
        self._auth_url = auth_url
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        """Return the WHOOP authorize URL the user is redirected to."""
        params = {
            "client_id": self._client_id,
            "response_type": "code",
            "redirect_uri": self._redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{self._auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Credential:
        """Exchange an authorization code for the initial credential.

        Args:
            code: Authorization code from the WHOOP callback.

        Returns:
            The stored Credential.

        Raises:
            ApiError: If the token endpoint rejects the code or is unreachable.
        """
        logger.info("Exchanging authorization code for tokens")
        try:
            data = await self._post_grant(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "redirect_uri": self._redirect_uri,
                }
            )
        except _GrantFailed as exc:
            logger.error("Token exchange failed: %s", exc.message)
            raise ApiError(exc.status, exc.message) from exc

        credential = self._store.save(
            data["access_token"], data["refresh_token"], data["expires_in"]
        )
        logger.info("Authorization complete; token valid until %s", credential.expires_at_iso)
        return credential

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, stale: Credential | None = None) -> Credential:
        """Exchange the stored refresh token for a new credential.

        Args:
            stale: The credential the caller found unusable.  If the store
                   already holds a different one (a concurrent caller refreshed
                   while this one waited), that one is returned as-is.

        Returns:
            The new stored Credential.

        Raises:
            AuthRequired: If nothing is stored, or the refresh grant fails.  In
                          the latter case the store is cleared first.
        """
        async with self._refresh_lock:
            current = self._store.load()
            if current is None or not current.refresh_token:
                raise AuthRequired()
            if stale is not None and current != stale:
                logger.info("Token already refreshed by a concurrent request")
                return current
            return await self._refresh_locked(current)

    async def _refresh_locked(self, current: Credential) -> Credential:
        try:
            data = await self._post_grant(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": current.refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "scope": "offline",
                },
                fallback_refresh_token=current.refresh_token,
            )
        except _GrantFailed as exc:
            logger.error("Failed to refresh token: %s", exc.message)
            self._store.clear()
            raise AuthRequired() from exc

        credential = self._store.save(
            data["access_token"], data["refresh_token"], data["expires_in"]
        )
        logger.info("Token refreshed successfully")
        return credential

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _post_grant(
        self, form: dict[str, str], fallback_refresh_token: str | None = None
    ) -> dict[str, Any]:
        """POST a form-encoded grant and validate the token response.

        Raises:
            _GrantFailed: On network errors, non-2xx replies or a token
                          response without the required fields.
        """
        try:
            response = await self._http.post(
                self._token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise _GrantFailed(None, f"token endpoint unreachable: {exc}") from exc

        if response.is_error:
            raise _GrantFailed(response.status_code, _grant_error_message(response))

        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            raise _GrantFailed(
                response.status_code, f"malformed token response: {exc}"
            ) from exc
        if not isinstance(access_token, str) or not access_token:
            raise _GrantFailed(response.status_code, "token response has no access_token")

        refresh_token = data.get("refresh_token") or fallback_refresh_token
        if not isinstance(refresh_token, str) or not refresh_token:
            raise _GrantFailed(response.status_code, "token response has no refresh_token")

        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": expires_in,
        }


class _GrantFailed(Exception):
    def __init__(self, status: int | None, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def _grant_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(
            body.get("error_description")
            or body.get("message")
            or body.get("error")
            or response.reason_phrase
        )
    return response.reason_phrase


# ---------------------------------------------------------------------------
# Anti-forgery state
# ---------------------------------------------------------------------------


class OAuthStateRegistry:
    """Issues one-time ``state`` values for the authorization redirect.

    Values are kept in memory for ``ttl_seconds`` and can be redeemed once.
    At most ``max_pending`` are outstanding; issuing more evicts the oldest.
    A restart forgets outstanding values; the user simply starts over.
    """

    def __init__(
        self,
        ttl_seconds: int = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_pending: int = MAX_PENDING_STATES,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_pending = max_pending
        self._clock = clock
        self._issued: dict[str, float] = {}

    def issue(self) -> str:
        self._prune()
        while self._issued and len(self._issued) >= self._max_pending:
            del self._issued[next(iter(self._issued))]
        state = secrets.token_hex(16)
        self._issued[state] = self._clock()
        return state

    def consume(self, state: str | None) -> bool:
        """Redeem a state value.  Returns False if unknown, expired or reused."""
        self._prune()
        if not state:
            return False
        return self._issued.pop(state, None) is not None

    def _prune(self) -> None:
        cutoff = self._clock() - self._ttl
        for state, issued_at in list(self._issued.items()):
            if issued_at < cutoff:
                del self._issued[state]
