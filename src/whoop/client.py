"""Authenticated GET access to the WHOOP developer API (v2).

Every call runs through a small, bounded state machine::

    FIRST_ATTEMPT ──401──▶ REFRESH ──▶ RETRY_ATTEMPT ──▶ DONE
          │                                  │
          └──────────── any other ──────────▶┘

Before the first attempt the credential is refreshed proactively if it is
inside the expiry buffer.  A 401 on the first attempt triggers exactly one
refresh and one retry; whatever the retry returns is final.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import httpx

from src.whoop.base import ApiError, AuthRequired, Credential
from src.whoop.token_manager import TokenManager
from src.whoop.token_store import TokenStore

logger = logging.getLogger("whoop_bridge.client")

# Refresh-and-retry budget after an upstream 401
MAX_REFRESH_RETRIES = 1


class FetchState(str, Enum):
    FIRST_ATTEMPT = "first_attempt"
    REFRESH = "refresh"
    RETRY_ATTEMPT = "retry_attempt"
    DONE = "done"


class WhoopClient:
    """Bearer-authenticated GETs against the WHOOP API.

    Args:
        store:       Credential store (read on every call, never cached).
        manager:     Token lifecycle manager used for refreshes.
        http_client: Shared httpx client (carries the request timeout).
        api_base:    WHOOP API base URL, e.g. ``https://api.prod.whoop.com/developer/v2``.
    """

    def __init__(
        self,
        store: TokenStore,
        manager: TokenManager,
        http_client: httpx.AsyncClient,
        api_base: str,
    ) -> None:
        self._store = store
        self._manager = manager
        self._http = http_client
        self._api_base = api_base.rstrip("/")

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``endpoint`` (relative to the API base) and return the JSON body.

        Args:
            endpoint: Path such as ``/activity/sleep``.
            params:   Optional query parameters.

        Returns:
            Parsed JSON payload.

        Raises:
            AuthRequired: No credential, or the refresh grant failed.
            ApiError:     Any other upstream or network failure.
        """
        credential = await self._current_credential()

        trace: list[FetchState] = []
        state = FetchState.FIRST_ATTEMPT
        retries_left = MAX_REFRESH_RETRIES

        while True:
            trace.append(state)
            if state is FetchState.REFRESH:
                retries_left -= 1
                logger.info("WHOOP returned 401 for %s; refreshing token", endpoint)
                credential = await self._manager.refresh(stale=credential)
                state = FetchState.RETRY_ATTEMPT
                continue

            response = await self._send(endpoint, params, credential)
            if (
                state is FetchState.FIRST_ATTEMPT
                and response.status_code == 401
                and retries_left > 0
            ):
                state = FetchState.REFRESH
                continue

            trace.append(FetchState.DONE)
            logger.debug("GET %s: %s", endpoint, " -> ".join(s.value for s in trace))
            return _decode(endpoint, response)

    async def _current_credential(self) -> Credential:
        credential = self._store.load()
        if credential is None:
            raise AuthRequired()
        if self._store.needs_refresh(credential):
            logger.info("Access token near expiry; refreshing proactively")
            credential = await self._manager.refresh(stale=credential)
        return credential

    async def _send(
        self, endpoint: str, params: dict[str, Any] | None, credential: Credential
    ) -> httpx.Response:
        try:
            return await self._http.get(
                f"{self._api_base}{endpoint}",
                params=params,
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise ApiError(None, f"WHOOP API timed out: {endpoint}") from exc
        except httpx.HTTPError as exc:
            raise ApiError(None, f"WHOOP API unreachable: {exc}") from exc


def _decode(endpoint: str, response: httpx.Response) -> Any:
    if response.is_error:
        message = _error_message(response)
        logger.warning("WHOOP API error %s on %s: %s", response.status_code, endpoint, message)
        raise ApiError(response.status_code, message)
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise ApiError(response.status_code, f"invalid JSON from {endpoint}") from exc


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase
