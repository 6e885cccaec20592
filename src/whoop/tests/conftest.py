"""Shared fixtures and a scripted WHOOP stand-in for the bridge tests."""

from __future__ import annotations

import json
import os
from typing import Any, Callable
from urllib.parse import parse_qs

import httpx
import pytest

# src.main builds an app from the environment at import time
os.environ.setdefault("WHOOP_CLIENT_ID", "test_client_id")
os.environ.setdefault("WHOOP_CLIENT_SECRET", "test_client_secret")
os.environ.setdefault("WHOOP_REDIRECT_URI", "http://testserver/auth/callback")
os.environ.setdefault("INTERNAL_API_KEY", "test-api-key")

from src.config import Settings  # noqa: E402
from src.whoop.base import ApiError  # noqa: E402
from src.whoop.client import WhoopClient  # noqa: E402
from src.whoop.config_loader import InsightsConfig, load_insights_config  # noqa: E402
from src.whoop.token_manager import TokenManager  # noqa: E402
from src.whoop.token_store import MemoryTokenBackend, TokenStore  # noqa: E402

API_BASE = "https://whoop.test/developer/v2"
TOKEN_URL = "https://whoop.test/oauth/oauth2/token"
AUTH_URL = "https://whoop.test/oauth/oauth2/auth"
TOKEN_PATH = "/oauth/oauth2/token"

# 2025-10-09T08:53:20Z
T0 = 1_760_000_000.0

HOUR_MS = 3_600_000
MINUTE_MS = 60_000


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock returning epoch seconds; moved explicitly by tests."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Scripted WHOOP server
# ---------------------------------------------------------------------------


Responder = Callable[[httpx.Request], httpx.Response]


def token_response(
    access_token: str = "A2",
    refresh_token: str | None = "R2",
    expires_in: int | None = 3600,
) -> httpx.Response:
    body: dict[str, Any] = {"access_token": access_token, "token_type": "bearer"}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if expires_in is not None:
        body["expires_in"] = expires_in
    return httpx.Response(200, json=body)


class FakeWhoop:
    """In-process WHOOP token endpoint + API behind ``httpx.MockTransport``.

    Responses are queued per path.  The last queued response for a path is
    reused once the queue runs dry.  Unknown paths answer 404.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[str, list[httpx.Response | Responder | Exception]] = {}

    def on(self, path: str, *responses: httpx.Response | Responder | Exception) -> None:
        self._routes.setdefault(path, []).extend(responses)

    def on_token(self, *responses: httpx.Response | Responder | Exception) -> None:
        self.on(TOKEN_PATH, *responses)

    def on_api(self, endpoint: str, *responses: httpx.Response | Responder | Exception) -> None:
        self.on(httpx.URL(API_BASE).path + endpoint, *responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"message": "Not Found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        # fresh copy; a Response object is bound to one request
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- Inspection --

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == TOKEN_PATH]

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path != TOKEN_PATH]

    @staticmethod
    def form(request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


@pytest.fixture
def fake_whoop() -> FakeWhoop:
    return FakeWhoop()


@pytest.fixture
def http_client(fake_whoop: FakeWhoop) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=fake_whoop.transport, timeout=httpx.Timeout(5.0))


# ---------------------------------------------------------------------------
# Core objects
# ---------------------------------------------------------------------------


@pytest.fixture
def store(clock: FakeClock) -> TokenStore:
    return TokenStore(MemoryTokenBackend(), clock=clock)


@pytest.fixture
def manager(store: TokenStore, http_client: httpx.AsyncClient) -> TokenManager:
    return TokenManager(
        store,
        http_client,
        client_id="test_client_id",
        client_secret="test_client_secret",
        redirect_uri="http://testserver/auth/callback",
        token_url=TOKEN_URL,
        auth_url=AUTH_URL,
    )


@pytest.fixture
def whoop_client(
    store: TokenStore, manager: TokenManager, http_client: httpx.AsyncClient
) -> WhoopClient:
    return WhoopClient(store, manager, http_client, API_BASE)


@pytest.fixture
def insights_config() -> InsightsConfig:
    """Load the bundled insights config."""
    return load_insights_config()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        whoop_client_id="test_client_id",
        whoop_client_secret="test_client_secret",
        whoop_redirect_uri="http://testserver/auth/callback",
        internal_api_key="test-api-key",
        whoop_api_base=API_BASE,
        whoop_auth_url=AUTH_URL,
        whoop_token_url=TOKEN_URL,
        token_file=str(tmp_path / "token.json"),
    )


# ---------------------------------------------------------------------------
# Fake fetcher for aggregation tests
# ---------------------------------------------------------------------------


class FakeFetcher:
    """Stands in for WhoopClient: endpoint → payload or exception."""

    def __init__(self, routes: dict[str, Any] | None = None) -> None:
        self.routes: dict[str, Any] = dict(routes or {})
        self.calls: list[tuple[str, dict | None]] = []

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        self.calls.append((endpoint, params))
        if endpoint not in self.routes:
            raise ApiError(404, "Not Found")
        result = self.routes[endpoint]
        if isinstance(result, Exception):
            raise result
        return json.loads(json.dumps(result))

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _ in self.calls]


# ---------------------------------------------------------------------------
# Realistic WHOOP v2 payloads
# ---------------------------------------------------------------------------


def sleep_record(
    in_bed_ms: int | None = int(7.5 * HOUR_MS),
    slow_wave_ms: int | None = 95 * MINUTE_MS,
    rem_ms: int | None = 105 * MINUTE_MS,
    performance: float | None = 88,
    start: str = "2025-10-08T22:41:00.000Z",
) -> dict:
    stage_summary = {
        "total_awake_time_milli": 1_800_000,
        "total_light_sleep_time_milli": 14_400_000,
        "sleep_cycle_count": 4,
        "disturbance_count": 9,
    }
    if in_bed_ms is not None:
        stage_summary["total_in_bed_time_milli"] = in_bed_ms
    if slow_wave_ms is not None:
        stage_summary["total_slow_wave_sleep_time_milli"] = slow_wave_ms
    if rem_ms is not None:
        stage_summary["total_rem_sleep_time_milli"] = rem_ms
    score: dict[str, Any] = {
        "stage_summary": stage_summary,
        "respiratory_rate": 15.2,
        "sleep_efficiency_percentage": 91.4,
    }
    if performance is not None:
        score["sleep_performance_percentage"] = performance
    return {
        "id": "ecfc6a15-4661-442f-a9a4-f160dd7afae8",
        "start": start,
        "end": "2025-10-09T06:11:00.000Z",
        "score_state": "SCORED",
        "score": score,
    }


def cycle_record(cycle_id: Any = 93845, strain: float | None = 11.4, start: str = "2025-10-09T06:11:00.000Z") -> dict:
    score: dict[str, Any] = {"kilojoule": 8288.3, "average_heart_rate": 68, "max_heart_rate": 141}
    if strain is not None:
        score["strain"] = strain
    return {"id": cycle_id, "user_id": 10129, "start": start, "end": None, "score_state": "SCORED", "score": score}


def recovery_record(
    cycle_id: int = 93845,
    recovery_score: float | None = 72,
    hrv: float | None = 61.2,
    rhr: float = 52,
) -> dict:
    score: dict[str, Any] = {"resting_heart_rate": rhr, "spo2_percentage": 96.8, "skin_temp_celsius": 33.7}
    if recovery_score is not None:
        score["recovery_score"] = recovery_score
    if hrv is not None:
        score["hrv_rmssd_milli"] = hrv
    return {
        "cycle_id": cycle_id,
        "sleep_id": "ecfc6a15-4661-442f-a9a4-f160dd7afae8",
        "user_id": 10129,
        "created_at": "2025-10-09T06:25:41.000Z",
        "score_state": "SCORED",
        "score": score,
    }
